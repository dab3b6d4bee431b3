"""Fakes and helpers shared by the payment gate tests."""
from __future__ import annotations

import asyncio
from typing import Optional

from paymentauth.config import PaymentAuthSettings
from paymentauth.encoding import format_authorization, parse_www_authenticate
from paymentauth.gate import GateDecision
from paymentauth.types import (
    BroadcastResult,
    ChargeRequest,
    ConfirmationResult,
    PaymentCredential,
    PaymentPayload,
    VerificationResult,
)

DESTINATION = "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb0"
ASSET = "0x20c0000000000000000000000000000000000001"
AMOUNT = "1000000"

# 32 bytes of signed payload; its keccak-256 is the transaction reference
SIGNATURE = "0x" + "ab" * 32
OTHER_SIGNATURE = "0x" + "cd" * 32


def make_settings(**overrides) -> PaymentAuthSettings:
    defaults = {
        "destination": DESTINATION,
        "asset": ASSET,
        "amount": AMOUNT,
        "realm": "api.example.com",
        "method": "tempo",
        "_env_file": None,
    }
    defaults.update(overrides)
    return PaymentAuthSettings(**defaults)


def credential_header(
    challenge_id: str,
    signature: str = SIGNATURE,
    payload_type: str = "transaction",
    source: Optional[str] = None,
) -> str:
    return format_authorization(
        PaymentCredential(
            id=challenge_id,
            payload=PaymentPayload(type=payload_type, signature=signature),
            source=source,
        )
    )


def challenge_id_of(decision: GateDecision) -> str:
    return parse_www_authenticate(decision.headers["WWW-Authenticate"]).id


class FakeVerifier:
    """Records calls; returns ``result`` or raises ``exc``."""

    def __init__(
        self,
        result: Optional[VerificationResult] = None,
        exc: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.result = result or VerificationResult(valid=True, payer="0xpayer")
        self.exc = exc
        self.delay = delay
        self.calls: list[tuple[str, ChargeRequest, Optional[int]]] = []

    async def __call__(self, signed_proof, request, *, max_age_seconds=None):
        self.calls.append((signed_proof, request, max_age_seconds))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return self.result


class FakeBroadcaster:
    def __init__(self, result: Optional[BroadcastResult] = None, exc: Optional[Exception] = None):
        self.result = result or BroadcastResult(success=True, transaction_hash="0xabc")
        self.exc = exc
        self.calls: list[str] = []

    async def __call__(self, signed_proof):
        self.calls.append(signed_proof)
        if self.exc is not None:
            raise self.exc
        return self.result


class FakeConfirmer:
    def __init__(self, block_number: Optional[int] = 12345, exc: Optional[Exception] = None):
        self.block_number = block_number
        self.exc = exc
        self.calls: list[str] = []

    async def __call__(self, tx_hash):
        self.calls.append(tx_hash)
        if self.exc is not None:
            raise self.exc
        return ConfirmationResult(block_number=self.block_number)
