"""
ScheduleLoop - fires due scheduled tests.

Each tick:
1. Launch every due item through the TestLauncher (each run of a
   recurring series but the last gets its own test id)
2. Advance it (one-shot items are removed, recurring ones rescheduled)
3. Record the launch against its queue and seed a Created record
4. Optionally prune old historical entries once a day

A failed launch is logged and the item is left due, so the next tick
retries it. The loop sleeps until the next poll or the next start,
whichever comes first.
"""

import logging
import os
import threading
from dataclasses import replace
from typing import Callable, Optional

from .cache import TestStateCache
from .collaborators import RemoteStatus, RemoteStatusStore, TestLauncher
from .dispatcher import BackgroundLoop, LoopState
from .entities import CacheTier, ScheduleItem, TestRecord, TestStatus, ONE_DAY, ONE_MINUTE, now_ms
from .errors import TransientIOError
from .health import HealthState
from .schedule import ScheduleEngine, run_test_id


logger = logging.getLogger(__name__)

TEST_SCHEDULER_POLL_INTERVAL_MS = int(os.getenv("TEST_SCHEDULER_POLL_INTERVAL_MS", "60000"))
RUN_HISTORICAL_DELETE = os.getenv("RUN_HISTORICAL_DELETE", "false").lower() == "true"
DELETE_OLD_FILES_DAYS = int(os.getenv("DELETE_OLD_FILES_DAYS", "365"))

# Minimum sleep between ticks, even when an item is already due
MIN_SLEEP_MS = 1000


class ScheduleLoop:
    """Periodic dispatch tick for the ScheduleEngine."""

    def __init__(
        self,
        engine: ScheduleEngine,
        launcher: TestLauncher,
        cache: TestStateCache,
        store: Optional[RemoteStatusStore] = None,
        health: Optional[HealthState] = None,
        clock: Callable[[], int] = now_ms,
        poll_interval_ms: int = TEST_SCHEDULER_POLL_INTERVAL_MS,
        run_historical_delete: bool = RUN_HISTORICAL_DELETE,
        history_max_age_days: int = DELETE_OLD_FILES_DAYS,
    ):
        self.engine = engine
        self.launcher = launcher
        self.cache = cache
        self.store = store
        self.health = health or HealthState()
        self._clock = clock
        self._poll_interval_ms = poll_interval_ms
        self._run_historical_delete = run_historical_delete
        self._history_max_age_days = history_max_age_days
        self._last_prune: Optional[int] = None

        self._loop = BackgroundLoop("test-scheduler", self._run, self.health)

    @property
    def state(self) -> LoopState:
        return self._loop.state

    def start(self) -> LoopState:
        return self._loop.start()

    def stop(self, timeout: float = 30.0) -> None:
        self._loop.stop(timeout)

    # =========================================================================
    # Tick
    # =========================================================================

    def fire_due(self, now: Optional[int] = None) -> list[str]:
        """
        Launch every due item.

        A recurring item's runs each get their own test id; only the last
        run of the series reuses the scheduled id.

        Returns:
            Test ids that were launched
        """
        now = self._clock() if now is None else now
        launched = []
        for item in self.engine.due_items(now):
            run_item = item
            if self.engine.following_start(item) is not None:
                run_message = {**item.test_message, "testId": run_test_id(item.test_id, now)}
                run_item = replace(item, test_message=run_message)
            try:
                test_id = self.launcher.launch(run_item)
            except Exception as e:
                logger.error(f"Could not launch scheduled test {item.test_id}, will retry: {e}")
                continue

            self.engine.advance(item)
            self._record_launch(test_id, run_item, now)
            logger.info(f"Launched scheduled test {test_id} on queue {item.queue_name}")
            launched.append(test_id)
        return launched

    def _record_launch(self, test_id: str, item: ScheduleItem, now: int) -> None:
        self.cache.mark_new_test(item.queue_name, now)
        user_id = item.owner_id or item.test_message.get("userId")
        record = TestRecord(
            test_id=test_id,
            status=TestStatus.CREATED,
            start_time=now,
            end_time=now + item.run_time_minutes * ONE_MINUTE,
            version=item.test_message.get("version"),
            queue_name=item.queue_name,
            user_id=user_id,
            last_updated=now,
        )
        self.cache.upsert(record, CacheTier.RUNNING)

        if self.store is None:
            return
        status = RemoteStatus(
            test_id=test_id,
            status=TestStatus.CREATED,
            start_time=record.start_time,
            end_time=record.end_time,
            version=record.version,
            queue_name=record.queue_name,
            user_id=user_id,
        )
        # Runs never carry the recurring tag; the last run clears it from the scheduled id
        try:
            self.store.write(test_id, status, {})
        except TransientIOError as e:
            logger.error(f"Could not write Created status for test {test_id}: {e}")

    def prune_if_due(self, now: Optional[int] = None) -> Optional[int]:
        """Run the daily historical delete when enabled and a day has passed."""
        if not self._run_historical_delete:
            return None
        now = self._clock() if now is None else now
        if self._last_prune is not None and now - self._last_prune < ONE_DAY:
            return None
        self._last_prune = now
        return self.engine.prune_history(self._history_max_age_days, now)

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.fire_due()
                self.prune_if_due()
            except TransientIOError as e:
                logger.error(f"Error in test scheduler loop: {e}")

            delay_ms = self._poll_interval_ms
            next_start = self.engine.next_start()
            if next_start is not None:
                delay_ms = min(delay_ms, next_start - self._clock())
            stop_event.wait(max(delay_ms, MIN_SLEEP_MS) / 1000)
