"""
Control Plane Service - main entry point for the control plane.

Owns and wires:
- TestStateCache (test state tiers)
- ScheduleEngine (pending schedule and history)
- DispatchLoop (communications + queue monitor loops)
- ScheduleLoop (fires due scheduled tests)

Usage:
    service = ControlPlaneService.create(db_path)
    service.start()
    # ... loops run in background ...
    service.stop()
"""

import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional

from .cache import TestStateCache
from .collaborators import FetchOutcome, RemoteStatusStore
from .dispatcher import DispatchLoop
from .entities import (
    CacheTier,
    Principal,
    ScheduleItem,
    TestRecord,
    TestStatus,
    now_ms,
)
from .errors import NotFoundError
from .health import HealthState
from .persistence import (
    PersistenceAdapter,
    QueueTestLauncher,
    SqliteMessageChannel,
    SqliteScheduleRepository,
    SqliteStatusStore,
)
from .schedule import ScheduleEngine
from .schedule_loop import ScheduleLoop


logger = logging.getLogger(__name__)

CONTROL_DB_PATH = os.getenv("CONTROL_DB_PATH", "data/control_plane.db")
COMMUNICATIONS_QUEUE_NAME = os.getenv("COMMUNICATIONS_QUEUE_NAME", "communications")


class ControlPlaneService:
    """
    Coordinates the control plane components.

    Provides:
    - Component construction and wiring (create)
    - Start/stop of the background loops
    - Test state reads for status and listing queries
    - Schedule mutations on behalf of a principal
    """

    def __init__(
        self,
        cache: TestStateCache,
        engine: ScheduleEngine,
        dispatch_loop: DispatchLoop,
        schedule_loop: ScheduleLoop,
        store: Optional[RemoteStatusStore] = None,
        health: Optional[HealthState] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize ControlPlaneService with all components.

        Use ControlPlaneService.create() for convenient construction.
        """
        self.cache = cache
        self.engine = engine
        self.dispatch_loop = dispatch_loop
        self.schedule_loop = schedule_loop
        self.store = store
        self.health = health or dispatch_loop.health
        self._clock = clock
        self._started = False

    @classmethod
    def create(
        cls,
        db_path: str | Path = CONTROL_DB_PATH,
        queue_names: Optional[list[str]] = None,
        communications_queue: str = COMMUNICATIONS_QUEUE_NAME,
        clock: Callable[[], int] = now_ms,
    ) -> "ControlPlaneService":
        """
        Create a fully wired service backed by one SQLite database.

        Args:
            db_path: Path to SQLite database
            queue_names: Test queues to monitor (default: TEST_QUEUE_NAMES)
            communications_queue: Queue agents publish status events to
            clock: Returns current time as epoch ms

        Returns:
            Configured ControlPlaneService instance
        """
        adapter = PersistenceAdapter(db_path)
        store = SqliteStatusStore(adapter, clock=clock)
        channel = SqliteMessageChannel(adapter, communications_queue, clock=clock)
        repository = SqliteScheduleRepository(adapter)
        health = HealthState()

        cache = TestStateCache(store=store, clock=clock)
        engine = ScheduleEngine(store=store, repository=repository, clock=clock)
        dispatch_loop = DispatchLoop(
            channel,
            cache,
            engine=engine,
            health=health,
            queue_names=queue_names,
            clock=clock,
        )
        schedule_loop = ScheduleLoop(
            engine,
            QueueTestLauncher(channel),
            cache,
            store=store,
            health=health,
            clock=clock,
        )
        return cls(
            cache=cache,
            engine=engine,
            dispatch_loop=dispatch_loop,
            schedule_loop=schedule_loop,
            store=store,
            health=health,
            clock=clock,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Load the persisted schedule and start all loops."""
        if self._started:
            logger.warning("Control plane already started")
            return

        logger.info("Starting control plane...")
        self.engine.load()
        self.dispatch_loop.start()
        self.schedule_loop.start()
        self._started = True
        logger.info("Control plane started")

    def stop(self, timeout: float = 30.0) -> None:
        """
        Stop all loops gracefully.

        Args:
            timeout: Maximum seconds to wait per loop
        """
        if not self._started:
            return

        logger.info("Stopping control plane...")
        self.schedule_loop.stop(timeout)
        self.dispatch_loop.stop(timeout)
        self._started = False
        logger.info("Control plane stopped")

    def is_running(self) -> bool:
        return self._started

    def is_healthy(self) -> bool:
        return self.health.healthy

    # =========================================================================
    # Test State
    # =========================================================================

    def get_test(self, test_id: str) -> TestRecord:
        """
        Current state of a test, reconciled with the remote store.

        A cache miss is loaded from the remote store and cached: Scheduled
        tests in SEARCHED, active ones in RUNNING, the rest in REQUESTED.

        Raises:
            NotFoundError: Test is neither cached nor in the remote store
        """
        now = self._clock()
        if self.cache.lookup_with_reconciliation(test_id) is not None:
            requested = self.cache.mark_requested(test_id, now)
            if requested is not None:
                return requested[0]

        if self.store is None:
            raise NotFoundError(test_id)
        fetch = self.store.fetch_if_changed_since(test_id, None)
        if fetch.outcome != FetchOutcome.CHANGED:
            raise NotFoundError(test_id)

        record = self.cache.record_from_remote(fetch.status, now)
        record.last_requested = now
        if record.status == TestStatus.SCHEDULED:
            tier = CacheTier.SEARCHED
        elif record.status.is_active:
            tier = CacheTier.RUNNING
        else:
            tier = CacheTier.REQUESTED
        self.cache.upsert(record, tier)
        logger.debug(f"Test {test_id} loaded from remote store into {tier.value} tier")
        return replace(record)

    def get_test_status(self, test_id: str) -> TestStatus:
        """
        Light status read that never moves a cached entry.

        A miss seeds a SEARCHED entry, which is reconciled once.

        Raises:
            NotFoundError: Status is Unknown and no remote record exists
        """
        found = self.cache.find(test_id)
        if found is None:
            now = self._clock()
            self.cache.upsert(
                TestRecord(test_id=test_id, start_time=now, last_requested=now),
                CacheTier.SEARCHED,
            )
            found = self.cache.find(test_id)
            if found is None:
                raise NotFoundError(test_id)

        record, tier = found
        if tier == CacheTier.SEARCHED and not record.remote_status_snapshot and not record.status_checked:
            reconciled = self.cache.lookup_with_reconciliation(test_id, migrate=False)
            record.status_checked = True
            if reconciled is not None:
                record = reconciled[0]

        if record.status == TestStatus.UNKNOWN and not record.remote_status_snapshot:
            raise NotFoundError(test_id)
        return record.status

    def list_tests(self) -> dict[str, list[dict]]:
        """Running, recent and requested tests, newest first."""
        snapshot = self.cache.snapshot_all()
        return {
            name: [record.to_dict() for record in records]
            for name, records in snapshot.items()
        }

    def record_search_results(self, test_ids: list[str]) -> int:
        """
        Seed SEARCHED entries for tests a search surfaced.

        Returns:
            Number of tests that were not cached before
        """
        now = self._clock()
        added = 0
        for test_id in test_ids:
            if self.cache.find(test_id) is not None:
                continue
            self.cache.upsert(
                TestRecord(test_id=test_id, start_time=now, last_requested=now),
                CacheTier.SEARCHED,
            )
            added += 1
        return added

    # =========================================================================
    # Schedule
    # =========================================================================

    def schedule_test(self, item: ScheduleItem, principal: Principal) -> dict:
        """Add or replace a scheduled test. See ScheduleEngine.add_or_update."""
        return self.engine.add_or_update(item, principal)

    def remove_scheduled(self, test_id: str, principal: Principal) -> None:
        self.engine.remove(test_id, principal)

    def scheduled_test(self, test_id: str) -> Optional[ScheduleItem]:
        return self.engine.get_item(test_id)

    def calendar_events(self) -> list[dict]:
        return self.engine.calendar_events()

    def tests_for_version(self, version: str) -> Optional[list[str]]:
        return self.engine.items_for_worker_version(version)
