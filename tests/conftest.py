"""Shared fixtures for payment gate tests."""
from __future__ import annotations

import pytest

from paymentauth.config import PaymentAuthSettings
from paymentauth.gate import PaymentGate

from payment_helpers import FakeBroadcaster, FakeVerifier, make_settings


@pytest.fixture
def settings() -> PaymentAuthSettings:
    return make_settings()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def broadcaster() -> FakeBroadcaster:
    return FakeBroadcaster()


@pytest.fixture
def gate(settings, verifier, broadcaster) -> PaymentGate:
    return PaymentGate(settings, verifier, broadcaster)
