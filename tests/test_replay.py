"""Tests for time-windowed replay protection."""
import asyncio
import time
from unittest.mock import patch

import pytest

from paymentauth.replay import STATE_PENDING, STATE_VERIFIED, ReplayProtection
from paymentauth.storage import InMemoryKeyValueStore

REF = "0x" + "1f" * 32


class TestMarkUsed:
    @pytest.mark.asyncio
    async def test_first_accepted(self):
        replay = ReplayProtection()
        assert await replay.mark_used(REF) is True

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self):
        replay = ReplayProtection()
        await replay.mark_used(REF)
        assert await replay.mark_used(REF) is False

    @pytest.mark.asyncio
    async def test_case_insensitive(self):
        replay = ReplayProtection()
        await replay.mark_used(REF.lower())
        assert await replay.mark_used(REF.upper().replace("0X", "0x")) is False

    @pytest.mark.asyncio
    async def test_accepted_again_after_window(self):
        replay = ReplayProtection(window_ms=1000)
        await replay.mark_used(REF)
        with patch("paymentauth.storage.time.monotonic", return_value=time.monotonic() + 2):
            assert await replay.mark_used(REF) is True

    @pytest.mark.asyncio
    async def test_concurrent_single_winner(self):
        replay = ReplayProtection()
        results = await asyncio.gather(*(replay.mark_used(REF) for _ in range(25)))
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_max_entries_bounds_size(self):
        replay = ReplayProtection(max_entries=3)
        for i in range(5):
            await replay.mark_used(f"ref-{i}")
        assert await replay.size() == 3
        assert await replay.is_used("ref-0") is False
        assert await replay.is_used("ref-4") is True


class TestTwoPhase:
    @pytest.mark.asyncio
    async def test_begin_blocks_second_begin(self):
        replay = ReplayProtection()
        assert await replay.begin_verification(REF) is True
        assert await replay.begin_verification(REF) is False
        assert await replay.mark_used(REF) is False

    @pytest.mark.asyncio
    async def test_rollback_releases_reservation(self):
        replay = ReplayProtection()
        await replay.begin_verification(REF)
        await replay.rollback_verification(REF)
        assert await replay.is_used(REF) is False
        assert await replay.begin_verification(REF) is True

    @pytest.mark.asyncio
    async def test_commit_keeps_reference_blocked(self):
        replay = ReplayProtection()
        await replay.begin_verification(REF)
        await replay.commit_verification(REF)
        await replay.rollback_verification(REF)
        assert await replay.begin_verification(REF) is False

    @pytest.mark.asyncio
    async def test_record_states(self):
        store = InMemoryKeyValueStore()
        replay = ReplayProtection(store=store)
        await replay.begin_verification(REF)
        assert (await store.get(f"replay:{REF}"))["state"] == STATE_PENDING
        await replay.commit_verification(REF)
        assert (await store.get(f"replay:{REF}"))["state"] == STATE_VERIFIED

    @pytest.mark.asyncio
    async def test_rollback_unknown_is_noop(self):
        replay = ReplayProtection()
        await replay.rollback_verification(REF)
        assert await replay.size() == 0
