"""Tests for the polling scheduler."""

import asyncio

import pytest

from tenant_payments.models import IntentState
from tenant_payments.reconciliation import PollingScheduler, ReconciliationEngine


class CheckRecorder:
    """Status check that counts calls and can be held open."""

    def __init__(self, result=None):
        self.calls = 0
        self.release = asyncio.Event()
        self.release.set()
        self.result = result

    async def __call__(self):
        self.calls += 1
        await self.release.wait()
        if isinstance(self.result, Exception):
            raise self.result


def make_scheduler(check, terminal=None, expired=None, **kwargs):
    state = terminal if terminal is not None else {"done": False}
    expired = expired if expired is not None else []
    params = dict(poll_interval=3600, countdown_seconds=None, tick_interval=3600)
    params.update(kwargs)
    return PollingScheduler(
        check=check,
        on_expire=lambda: expired.append(True),
        is_terminal=lambda: state["done"],
        **params,
    )


class TestStatusTicks:
    """Test the status-check timer."""

    async def test_tick_issues_check(self):
        check = CheckRecorder()
        scheduler = make_scheduler(check)

        assert scheduler.status_tick() is True
        await asyncio.sleep(0)
        assert check.calls == 1
        assert scheduler.checks_issued == 1

    async def test_overlapping_ticks_are_skipped(self):
        check = CheckRecorder()
        check.release.clear()
        scheduler = make_scheduler(check)

        assert scheduler.status_tick() is True
        await asyncio.sleep(0)
        assert scheduler.is_checking
        assert scheduler.status_tick() is False
        assert await scheduler.check_now() is False

        check.release.set()
        await scheduler.wait_stopped()
        assert check.calls == 1
        assert not scheduler.is_checking

    async def test_no_checks_after_stop(self):
        """Once stopped, further ticks never issue a check."""
        check = CheckRecorder()
        scheduler = make_scheduler(check, countdown_seconds=300)
        scheduler.stop()

        assert scheduler.status_tick() is False
        assert await scheduler.check_now() is False
        assert scheduler.countdown_tick() is None
        assert check.calls == 0
        assert scheduler.seconds_remaining == 300

    async def test_stop_cancels_in_flight_check(self):
        check = CheckRecorder()
        check.release.clear()
        scheduler = make_scheduler(check)
        scheduler.status_tick()
        await asyncio.sleep(0)

        scheduler.stop()
        await scheduler.wait_stopped()
        assert scheduler.stopped
        assert not scheduler.is_checking

    async def test_terminal_intent_stops_scheduler(self):
        terminal = {"done": False}
        check = CheckRecorder()
        scheduler = make_scheduler(check, terminal=terminal)

        terminal["done"] = True
        assert scheduler.status_tick() is False
        assert await scheduler.check_now() is False
        assert check.calls == 0

    async def test_failing_background_check_is_logged(self, caplog):
        check = CheckRecorder(result=RuntimeError("boom"))
        scheduler = make_scheduler(check)

        scheduler.status_tick()
        await scheduler.wait_stopped()
        assert "Scheduled status check failed" in caplog.text
        assert not scheduler.is_checking

    async def test_check_now_propagates_errors(self):
        check = CheckRecorder(result=RuntimeError("boom"))
        scheduler = make_scheduler(check)

        with pytest.raises(RuntimeError):
            await scheduler.check_now()
        assert not scheduler.is_checking

    async def test_timer_loop_polls(self):
        check = CheckRecorder()
        scheduler = make_scheduler(check, poll_interval=0.01)
        scheduler.start()
        assert scheduler.polling

        await asyncio.sleep(0.1)
        scheduler.stop()
        await scheduler.wait_stopped()
        assert check.calls >= 2


class TestCountdown:
    """Test the countdown timer."""

    async def test_countdown_decrements(self):
        remaining = []
        scheduler = make_scheduler(CheckRecorder(), countdown_seconds=3, on_countdown=remaining.append)

        scheduler.countdown_tick()
        scheduler.countdown_tick()
        assert remaining == [2, 1]
        assert scheduler.seconds_remaining == 1

    async def test_countdown_expiry_stops_polling(self, online_intent):
        """A ten second countdown expires the intent and stops polling."""
        engine = ReconciliationEngine(online_intent)
        engine.start()
        engine.report_redirect_ready("INV-42-1")
        check = CheckRecorder()
        scheduler = PollingScheduler(
            check=check,
            on_expire=engine.expire,
            is_terminal=lambda: engine.is_terminal,
            poll_interval=3600,
            countdown_seconds=10,
            tick_interval=3600,
        )

        for _ in range(10):
            scheduler.countdown_tick()

        assert scheduler.seconds_remaining == 0
        assert engine.state == IntentState.EXPIRED
        assert scheduler.stopped
        assert not scheduler.polling
        assert scheduler.status_tick() is False
        assert check.calls == 0

    async def test_expire_not_called_when_already_terminal(self):
        terminal = {"done": False}
        expired = []
        scheduler = make_scheduler(CheckRecorder(), terminal=terminal, expired=expired, countdown_seconds=1)

        terminal["done"] = True
        scheduler.countdown_tick()
        assert expired == []
        assert scheduler.stopped

    async def test_countdown_disabled(self):
        scheduler = make_scheduler(CheckRecorder(), countdown_seconds=None)
        assert scheduler.countdown_tick() is None
        assert scheduler.seconds_remaining is None

    async def test_countdown_loop_expires(self):
        expired = []
        scheduler = make_scheduler(CheckRecorder(), expired=expired, countdown_seconds=3, tick_interval=0.01)
        scheduler.start()

        await asyncio.wait_for(scheduler.wait_stopped(), timeout=2)
        assert expired == [True]
        assert scheduler.seconds_remaining == 0

    def test_from_settings(self, settings):
        scheduler = PollingScheduler.from_settings(
            settings,
            check=CheckRecorder(),
            on_expire=lambda: None,
            is_terminal=lambda: False,
            with_countdown=False,
        )
        assert scheduler.poll_interval == settings.poll_interval_seconds
        assert scheduler.seconds_remaining is None
