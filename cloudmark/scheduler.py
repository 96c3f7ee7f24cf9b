"""
Backup scheduling.

Two timer kinds drive automatic backups:

- a debounce registry that collapses a burst of local edits into one
  backup a few seconds after the last edit, and
- a named recurring timer for periodic backups, re-armed whenever the
  settings change.

Both run on the asyncio event loop; nothing here needs locks.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

from cloudmark.backup import BackupOrchestrator, BackupReason
from cloudmark.config import Settings
from cloudmark.constants import (
    DEBOUNCE_DELAY_MS,
    DEBOUNCE_KEY,
    DEFAULT_FREQUENCY_HOURS,
    MIN_PERIOD_MINUTES,
    PERIODIC_TIMER_NAME,
    WARMUP_SECONDS,
)
from cloudmark.storage import LocalStore, is_data_empty

logger = logging.getLogger(__name__)


class _TimerBase:
    """Shared plumbing: lazy loop lookup and tracking of spawned tasks."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self.timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Future] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _invoke(self, key: str, fn: Callable[[], Any]):
        try:
            result = fn()
        except Exception as e:
            logger.error(f"Timer {key} callback failed: {e}")
            return
        if asyncio.iscoroutine(result):
            task = self.loop.create_task(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def pending(self, key: str) -> bool:
        return key in self.timers

    def cancel(self, key: str) -> bool:
        """Cancel a timer; returns whether one was pending."""
        handle = self.timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self):
        for key in list(self.timers):
            self.cancel(key)


class DebounceScheduler(_TimerBase):
    """
    Registry of named debounce timers.

    Scheduling a key that is already pending replaces its timer, so only
    the last call in a burst fires.
    """

    def schedule(self, key: str, fn: Callable[[], Any], delay: float):
        """
        (Re)start the timer for ``key``.

        Args:
            key: Operation name
            fn: Callable (or coroutine function) to run
            delay: Seconds to wait after the last call
        """
        self.cancel(key)

        def fire():
            self.timers.pop(key, None)
            self._invoke(key, fn)

        self.timers[key] = self.loop.call_later(delay, fire)


class AlarmScheduler(_TimerBase):
    """Named recurring timers: first fire after ``delay``, then every ``period``."""

    def create(self, name: str, fn: Callable[[], Any], delay: float, period: float):
        self.cancel(name)

        def fire():
            self.timers[name] = self.loop.call_later(period, fire)
            self._invoke(name, fn)

        self.timers[name] = self.loop.call_later(delay, fire)

    def clear(self, name: str) -> bool:
        return self.cancel(name)


def period_seconds(frequency_hours: Optional[float]) -> float:
    """Backup period with a 15 minute floor."""
    hours = DEFAULT_FREQUENCY_HOURS if frequency_hours is None else float(frequency_hours)
    return max(MIN_PERIOD_MINUTES, hours * 60) * 60


class ScheduleController:
    """
    Turns store events into backups.

    Register ``handle_store_change`` as a ``LocalStore`` listener, call
    ``ensure_periodic`` at startup and ``shutdown`` on exit.
    """

    def __init__(self, store: LocalStore, orchestrator: BackupOrchestrator,
                 debouncer: Optional[DebounceScheduler] = None,
                 alarms: Optional[AlarmScheduler] = None,
                 debounce_delay: float = DEBOUNCE_DELAY_MS / 1000,
                 warmup: float = WARMUP_SECONDS):
        self.store = store
        self.orchestrator = orchestrator
        self.debouncer = debouncer or DebounceScheduler()
        self.alarms = alarms or AlarmScheduler()
        self.debounce_delay = debounce_delay
        self.warmup = warmup

    def on_data_changed(self, new_data: Any) -> bool:
        """
        Debounce a mutation-triggered backup.

        Returns:
            False when the new data is empty and nothing was scheduled
        """
        if is_data_empty(new_data):
            logger.info("Data changed to empty, not scheduling a backup")
            return False
        self.debouncer.schedule(
            DEBOUNCE_KEY,
            lambda: self.run_backup(BackupReason.MUTATION),
            self.debounce_delay,
        )
        return True

    def on_settings_changed(self, settings: Optional[Settings] = None) -> Optional[float]:
        return self.ensure_periodic(settings)

    def ensure_periodic(self, settings: Optional[Settings] = None) -> Optional[float]:
        """
        Reconcile the periodic backup timer with the settings.

        Returns:
            The period in seconds, or None when periodic backups are off
        """
        if settings is None:
            settings = self.store.read_settings()
        self.alarms.clear(PERIODIC_TIMER_NAME)
        if not settings.backup.enabled:
            logger.info("Periodic backups disabled")
            return None

        period = period_seconds(settings.backup.frequency_hours)
        self.alarms.create(
            PERIODIC_TIMER_NAME,
            lambda: self.run_backup(BackupReason.SCHEDULED),
            delay=self.warmup,
            period=period,
        )
        logger.info(f"Periodic backup every {period / 60:.0f} minutes, first in {self.warmup:.0f}s")
        return period

    def handle_store_change(self, area: str, value: Any):
        if area == "data":
            self.on_data_changed(value)
        elif area == "settings":
            self.on_settings_changed(value if isinstance(value, Settings) else None)

    async def run_backup(self, reason: BackupReason):
        """Background backup: failures are logged, never raised."""
        try:
            await self.orchestrator.backup(reason)
        except Exception as e:
            logger.warning(f"Background {reason.value} backup failed: {e}")

    def shutdown(self):
        self.debouncer.cancel_all()
        self.alarms.cancel_all()
