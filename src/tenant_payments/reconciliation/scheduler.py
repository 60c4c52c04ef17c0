"""Status-check and countdown timers for a payment session."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

from ..config import Settings

logger = logging.getLogger(__name__)


class PollingScheduler:
    """Two independently cancellable timers sharing one ``stop()``.

    The status-check timer fires every ``poll_interval`` seconds and runs the
    supplied check only when no other check is in flight, so ticks and
    ``check_now()`` never overlap. The countdown timer decrements a fixed
    budget once per ``tick_interval`` and calls ``on_expire`` when it reaches
    zero. Both stop as soon as ``is_terminal()`` reports a terminal intent.

    After ``stop()`` every tick is a no-op: no check is issued and the
    countdown no longer moves.
    """

    def __init__(
        self,
        check: Callable[[], Awaitable[Any]],
        on_expire: Callable[[], Any],
        is_terminal: Callable[[], bool],
        poll_interval: float = 5.0,
        countdown_seconds: Optional[int] = 300,
        tick_interval: float = 1.0,
        on_countdown: Optional[Callable[[int], None]] = None,
    ):
        """Initialize the scheduler.

        Args:
            check: Coroutine function performing one status check.
            on_expire: Called once when the countdown reaches zero.
            is_terminal: Reports whether the intent reached a terminal state.
            poll_interval: Seconds between status checks.
            countdown_seconds: Countdown budget; None disables the countdown.
            tick_interval: Seconds per countdown tick.
            on_countdown: Optional callback receiving the remaining seconds.
        """
        self._check = check
        self._on_expire = on_expire
        self._is_terminal = is_terminal
        self.poll_interval = poll_interval
        self.countdown_seconds = countdown_seconds
        self.tick_interval = tick_interval
        self._on_countdown = on_countdown

        self._seconds_remaining: Optional[int] = countdown_seconds
        self._stopped = False
        self._polling_stopped = False
        self._countdown_stopped = countdown_seconds is None
        self._checking = False
        self._checks_issued = 0

        self._status_task: Optional[asyncio.Task] = None
        self._countdown_task: Optional[asyncio.Task] = None
        self._check_tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        check: Callable[[], Awaitable[Any]],
        on_expire: Callable[[], Any],
        is_terminal: Callable[[], bool],
        on_countdown: Optional[Callable[[int], None]] = None,
        with_countdown: bool = True,
    ) -> "PollingScheduler":
        return cls(
            check=check,
            on_expire=on_expire,
            is_terminal=is_terminal,
            poll_interval=settings.poll_interval_seconds,
            countdown_seconds=settings.countdown_seconds if with_countdown else None,
            tick_interval=settings.countdown_tick_seconds,
            on_countdown=on_countdown,
        )

    @property
    def seconds_remaining(self) -> Optional[int]:
        return self._seconds_remaining

    @property
    def is_checking(self) -> bool:
        return self._checking

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def polling(self) -> bool:
        return self._status_task is not None and not self._polling_stopped and not self._stopped

    @property
    def checks_issued(self) -> int:
        return self._checks_issued

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start both timers. Must be called from a running event loop."""
        self.start_polling()
        self.start_countdown()

    def start_polling(self) -> None:
        if self._stopped or self._polling_stopped or self._status_task is not None:
            return
        self._status_task = asyncio.ensure_future(self._status_loop())

    def start_countdown(self) -> None:
        if self._stopped or self._countdown_stopped or self._countdown_task is not None:
            return
        self._countdown_task = asyncio.ensure_future(self._countdown_loop())

    def stop_polling(self) -> None:
        """Stop only the status-check timer."""
        self._polling_stopped = True
        _cancel(self._status_task)

    def stop(self) -> None:
        """Cancel both timers and any in-flight check."""
        if self._stopped:
            return
        self._stopped = True
        self._polling_stopped = True
        self._countdown_stopped = True
        _cancel(self._status_task)
        _cancel(self._countdown_task)
        for task in list(self._check_tasks):
            _cancel(task)
        logger.debug("Polling scheduler stopped")

    async def wait_stopped(self) -> None:
        """Wait until both timer loops have finished."""
        tasks = [t for t in (self._status_task, self._countdown_task) if t is not None]
        tasks.extend(self._check_tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def status_tick(self) -> bool:
        """Issue a background check unless one is already running.

        Returns:
            True if a check was issued.
        """
        if self._polling_stopped or not self._can_check():
            return False
        self._checking = True
        self._checks_issued += 1
        task = asyncio.ensure_future(self._guarded_check(raise_errors=False))
        self._check_tasks.add(task)
        task.add_done_callback(self._check_tasks.discard)
        return True

    async def check_now(self) -> bool:
        """Run a check immediately, sharing the in-flight guard with ticks.

        Returns:
            True if the check ran, False if skipped.
        """
        if not self._can_check():
            return False
        self._checking = True
        self._checks_issued += 1
        await self._guarded_check(raise_errors=True)
        return True

    def countdown_tick(self) -> Optional[int]:
        """Advance the countdown by one tick.

        Returns:
            Remaining seconds, or None if the countdown is not running.
        """
        if self._stopped or self._countdown_stopped or self._seconds_remaining is None:
            return None
        if self._is_terminal():
            self.stop()
            return self._seconds_remaining

        self._seconds_remaining = max(self._seconds_remaining - 1, 0)
        if self._on_countdown is not None:
            self._on_countdown(self._seconds_remaining)

        if self._seconds_remaining == 0:
            logger.info("Payment countdown reached zero")
            self.stop_polling()
            if not self._is_terminal():
                self._on_expire()
            self.stop()
        return self._seconds_remaining

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _can_check(self) -> bool:
        return not self._stopped and not self._checking and not self._is_terminal()

    async def _guarded_check(self, raise_errors: bool) -> None:
        try:
            await self._check()
        except asyncio.CancelledError:
            raise
        except Exception:
            if raise_errors:
                raise
            logger.exception("Scheduled status check failed")
        finally:
            self._checking = False
        if self._is_terminal():
            self.stop()

    async def _status_loop(self) -> None:
        while not self._stopped and not self._polling_stopped:
            await asyncio.sleep(self.poll_interval)
            if self._stopped or self._polling_stopped:
                break
            if self._is_terminal():
                self.stop()
                break
            self.status_tick()

    async def _countdown_loop(self) -> None:
        while not self._stopped and not self._countdown_stopped:
            await asyncio.sleep(self.tick_interval)
            remaining = self.countdown_tick()
            if remaining is None or remaining <= 0:
                break


def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    if task is asyncio.current_task():
        return
    task.cancel()
