"""
Tests for per-key serialization
"""
import asyncio

import pytest

from meeting_scheduler.locks import KeyedLocks


class TestKeyedLocks:
    """Test KeyedLocks"""

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = KeyedLocks()
        events = []

        async def worker(name):
            async with locks.hold("req-1"):
                events.append(f"{name} start")
                await asyncio.sleep(0.01)
                events.append(f"{name} end")

        await asyncio.gather(worker("a"), worker("b"))

        assert events == ["a start", "a end", "b start", "b end"]

    @pytest.mark.asyncio
    async def test_different_keys_interleave(self):
        locks = KeyedLocks()
        events = []

        async def worker(key):
            async with locks.hold(key):
                events.append(f"{key} start")
                await asyncio.sleep(0.01)
                events.append(f"{key} end")

        await asyncio.gather(worker("req-1"), worker("req-2"))

        assert events[:2] == ["req-1 start", "req-2 start"]

    @pytest.mark.asyncio
    async def test_released_after_error(self):
        locks = KeyedLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold("req-1"):
                assert locks.is_held("req-1")
                raise RuntimeError("boom")

        assert not locks.is_held("req-1")
        assert locks._locks == {}

        async with locks.hold("req-1"):
            assert locks.is_held("req-1")
