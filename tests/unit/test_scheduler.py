"""
Unit tests for periodic background tasks.
"""
import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from trustlayer.core.scheduler import PeriodicTask


class TestPeriodicTask:
    """Test cases for PeriodicTask."""

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            PeriodicTask("broken", timedelta(0), AsyncMock())

    @pytest.mark.asyncio
    async def test_run_once(self):
        callback = AsyncMock()
        task = PeriodicTask("tick", timedelta(seconds=1), callback)

        await task.run_once()

        callback.assert_awaited_once()
        assert task.ticks == 1

    @pytest.mark.asyncio
    async def test_run_once_logs_errors(self, caplog):
        """Test a failing tick is logged and does not propagate."""
        task = PeriodicTask("tick", timedelta(seconds=1), AsyncMock(side_effect=RuntimeError("boom")))

        with caplog.at_level(logging.ERROR):
            await task.run_once()

        assert "Periodic task 'tick' failed: boom" in caplog.text

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        """Test the loop keeps ticking until stopped."""
        callback = AsyncMock()
        task = PeriodicTask("tick", timedelta(milliseconds=10), callback)

        task.start()
        assert task.running is True
        await asyncio.sleep(0.05)
        await task.stop()

        assert task.running is False
        assert callback.await_count >= 2

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        task = PeriodicTask("tick", timedelta(seconds=60), AsyncMock())

        task.start()
        first = task._task
        task.start()

        assert task._task is first
        await task.stop()

    @pytest.mark.asyncio
    async def test_delayed_first_tick(self):
        callback = AsyncMock()
        task = PeriodicTask("tick", timedelta(seconds=60), callback, run_immediately=False)

        task.start()
        await asyncio.sleep(0.01)
        await task.stop()

        callback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await PeriodicTask("tick", timedelta(seconds=1), AsyncMock()).stop()
