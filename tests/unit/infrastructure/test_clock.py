"""Tests for SystemClock."""

import asyncio
import time

import pytest

from pandorabox.infrastructure.clock import SystemClock


class TestSystemClock:
    """Test the production clock against the real loop."""

    def test_time_is_epoch_seconds(self) -> None:
        before = time.time()
        now = SystemClock().time()

        assert before <= now <= time.time()

    @pytest.mark.asyncio
    async def test_call_later_fires(self) -> None:
        fired = asyncio.Event()

        SystemClock().call_later(0.01, fired.set)

        await asyncio.wait_for(fired.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_cancelled_timer_never_fires(self) -> None:
        calls = []

        handle = SystemClock().call_later(0.01, lambda: calls.append(1))
        handle.cancel()
        await asyncio.sleep(0.05)

        assert calls == []

    def test_call_later_needs_running_loop(self) -> None:
        with pytest.raises(RuntimeError):
            SystemClock().call_later(1, lambda: None)
