"""
Unit Tests for CancellationToken
"""
import asyncio

import pytest

from buildloop.core.cancellation import CancellationToken
from buildloop.core.exceptions import GenerationCancelledError


class TestCancellationToken:
    """Test the one-shot cancellation handle"""

    def test_cancel_once(self):
        """Test cancel fires once and keeps the first reason"""
        token = CancellationToken()
        assert token.cancelled is False
        assert token.cancel("Stop button") is True
        assert token.cancel("again") is False
        assert token.cancelled
        assert token.reason == "Stop button"

    def test_raise_if_cancelled(self):
        """Test the checkpoint raises only after cancel"""
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(GenerationCancelledError):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        """Test guarded work completes normally"""
        token = CancellationToken()

        async def work():
            return 42

        assert await token.guard(work()) == 42

    @pytest.mark.asyncio
    async def test_guard_propagates_errors(self):
        """Test errors from guarded work are raised unchanged"""
        token = CancellationToken()

        async def work():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await token.guard(work())

    @pytest.mark.asyncio
    async def test_guard_interrupts_slow_work(self):
        """Test a cancel unblocks the waiter before the work finishes"""
        token = CancellationToken()
        finished = []

        async def slow():
            await asyncio.sleep(10)
            finished.append(True)

        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(GenerationCancelledError):
            await asyncio.wait_for(token.guard(slow()), timeout=1.0)
        assert finished == []

    @pytest.mark.asyncio
    async def test_guard_when_already_cancelled(self):
        """Test guarded work never starts after cancel"""
        token = CancellationToken()
        token.cancel()
        started = []

        async def work():
            started.append(True)

        with pytest.raises(GenerationCancelledError):
            await token.guard(work())
        assert started == []

    @pytest.mark.asyncio
    async def test_sleep_completes(self):
        """Test sleep returns normally without cancel"""
        token = CancellationToken()
        await token.sleep(0.01)
        await token.sleep(0)

    @pytest.mark.asyncio
    async def test_sleep_interrupted(self):
        """Test sleep ends early on cancel"""
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(GenerationCancelledError):
            await asyncio.wait_for(token.sleep(10), timeout=1.0)
