"""
TestStateCache - bounded, four-tier in-memory index of test state.

Tiers, in lookup priority order:
- RUNNING: tests with an active status (Created/Running)
- RECENT: tests that recently left RUNNING
- REQUESTED: tests a client asked for directly
- SEARCHED: tests a search surfaced; write-once, never listed

Each tier holds at most `capacity` entries. When an insert pushes a
tier over capacity, the entry with the smallest recency
(max of last_checked, last_updated, last_requested) is evicted, so a
test that started long ago but was viewed recently survives.

Entries are reconciled on demand against the RemoteStatusStore and
migrate between tiers as their status changes.
"""

import logging
import os
import threading
from dataclasses import fields, replace
from typing import Callable, Optional

from .collaborators import FetchOutcome, RemoteStatus, RemoteStatusStore
from .entities import (
    CacheTier,
    TestRecord,
    TestStatus,
    ONE_MINUTE,
    now_ms,
)
from .errors import TransientIOError


logger = logging.getLogger(__name__)

CACHE_TIER_CAPACITY = int(os.getenv("CACHE_TIER_CAPACITY", "1000"))
MAX_LISTED_TESTS = int(os.getenv("MAX_LISTED_TESTS", "100"))
STALE_TEST_MS = int(os.getenv("STALE_TEST_MS", str(15 * ONE_MINUTE)))
RESULTS_BASE_URL = os.getenv("RESULTS_BASE_URL", "").rstrip("/")

TIER_PRIORITY = (
    CacheTier.RUNNING,
    CacheTier.RECENT,
    CacheTier.REQUESTED,
    CacheTier.SEARCHED,
)


def _timestamp(value) -> int:
    """Epoch ms of a recency field; missing or invalid values count as 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value) if value > 0 else 0


def recency(record: TestRecord) -> int:
    """Most recent reference to a record, used to pick eviction victims."""
    return max(
        _timestamp(record.last_checked),
        _timestamp(record.last_updated),
        _timestamp(record.last_requested),
    )


def migration_target(status: TestStatus, tier: CacheTier) -> CacheTier:
    """
    Tier a record belongs in after its status changed remotely.

    Active statuses pull REQUESTED/SEARCHED entries into RUNNING; a
    non-active status pushes a RUNNING entry into RECENT. Every other
    combination keeps the current tier.
    """
    if status.is_active and tier in (CacheTier.REQUESTED, CacheTier.SEARCHED):
        return CacheTier.RUNNING
    if not status.is_active and tier == CacheTier.RUNNING:
        return CacheTier.RECENT
    return tier


class TestStateCache:
    """
    Best available in-process view of every tracked test.

    All tier maps are guarded by one re-entrant lock. The lock is never
    held across a RemoteStatusStore call.
    """

    def __init__(
        self,
        store: Optional[RemoteStatusStore] = None,
        capacity: int = CACHE_TIER_CAPACITY,
        clock: Callable[[], int] = now_ms,
        max_listed: int = MAX_LISTED_TESTS,
        stale_after_ms: int = STALE_TEST_MS,
        results_base_url: str = RESULTS_BASE_URL,
    ):
        """
        Initialize TestStateCache.

        Args:
            store: Remote status store used for reconciliation and stale
                write-back. None disables both.
            capacity: Maximum entries per tier
            clock: Returns current time as epoch ms
            max_listed: Maximum entries per list in snapshot_all()
            stale_after_ms: Age after which an active test counts as stale
            results_base_url: Prefix for results locations ("" keeps file names)
        """
        if capacity < 1:
            raise ValueError(f"Cache tier capacity must be positive, got {capacity}")
        self._store = store
        self._capacity = capacity
        self._clock = clock
        self._max_listed = max_listed
        self._stale_after_ms = stale_after_ms
        self._results_base_url = results_base_url.rstrip("/")

        # dicts keep insertion order, which breaks recency ties on eviction
        self._tiers: dict[CacheTier, dict[str, TestRecord]] = {
            tier: {} for tier in TIER_PRIORITY
        }
        self._last_new_test: dict[str, int] = {}
        self._lock = threading.RLock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def size(self, tier: CacheTier) -> int:
        with self._lock:
            return len(self._tiers[tier])

    # =========================================================================
    # Lookup
    # =========================================================================

    def find(self, test_id: str) -> Optional[tuple[TestRecord, CacheTier]]:
        """Find a test in the first tier (by priority) that holds it."""
        with self._lock:
            return self._locate(test_id)

    def _locate(self, test_id: str) -> Optional[tuple[TestRecord, CacheTier]]:
        for tier in TIER_PRIORITY:
            record = self._tiers[tier].get(test_id)
            if record is not None:
                return record, tier
        return None

    def lookup_with_reconciliation(
        self, test_id: str, migrate: bool = True
    ) -> Optional[tuple[TestRecord, CacheTier]]:
        """
        Find a test and bring it up to date with the remote store.

        NOT_FOUND and UNCHANGED fetches leave the record untouched. A
        CHANGED fetch merges the remote fields and, unless migrate is
        False, applies the tier migration rule. If the store is
        unreachable the cached view is returned as-is.
        """
        found = self.find(test_id)
        if found is None or self._store is None:
            return found
        record, tier = found

        try:
            fetch = self._store.fetch_if_changed_since(test_id, record.remote_status_snapshot)
        except TransientIOError as e:
            logger.warning(f"Could not reconcile test {test_id}, serving cached state: {e}")
            return found

        if fetch.outcome != FetchOutcome.CHANGED:
            logger.debug(f"Test {test_id} remote status {fetch.outcome.value}")
            return found

        now = self._clock()
        with self._lock:
            located = self._locate(test_id)
            if located is None or located[0] is not record:
                # Evicted or replaced while the fetch was in flight
                return located
            tier = located[1]
            self._apply_remote(record, fetch.status, now)
            target = migration_target(record.status, tier) if migrate else tier
            if target != tier:
                del self._tiers[tier][test_id]
                self._tiers[target][test_id] = record
                logger.info(f"Test {test_id} moved from {tier.value} to {target.value} tier")
                self._evict_over_capacity(target)
            return record, target

    # =========================================================================
    # Mutation
    # =========================================================================

    def upsert(self, record: TestRecord, tier: CacheTier) -> Optional[TestRecord]:
        """
        Insert, update or move a record into a tier.

        - Unknown test: inserted into `tier`.
        - Already in `tier`: fields overwritten in place.
        - In another tier: moved into `tier`.
        SEARCHED is write-once: upserting into it is a no-op whenever the
        test is already cached in any tier.

        Returns:
            The record evicted to make room, if any
        """
        test_id = record.test_id
        with self._lock:
            located = self._locate(test_id)
            if located is None:
                self._tiers[tier][test_id] = record
                return self._evict_over_capacity(tier)

            existing, existing_tier = located
            if tier == CacheTier.SEARCHED:
                return None

            if existing_tier == tier:
                if existing is not record:
                    for f in fields(TestRecord):
                        setattr(existing, f.name, getattr(record, f.name))
                return None

            del self._tiers[existing_tier][test_id]
            self._tiers[tier][test_id] = record
            logger.debug(f"Test {test_id} moved from {existing_tier.value} to {tier.value} tier")
            return self._evict_over_capacity(tier)

    def apply_update(
        self,
        test_id: str,
        update: Callable[[TestRecord], None],
        tier: CacheTier,
    ) -> TestRecord:
        """
        Update a test's live record and move it into a tier in one step.

        update receives the cached record (a new one for an unknown test)
        and sets only the fields it owns. Every other field keeps its
        current value. SEARCHED stays write-once: an already cached test
        is left untouched.

        Returns:
            A copy of the record after the update
        """
        with self._lock:
            located = self._locate(test_id)
            if located is None:
                record = TestRecord(test_id=test_id)
                update(record)
                self._tiers[tier][test_id] = record
                self._evict_over_capacity(tier)
                return replace(record)

            record, current_tier = located
            if tier == CacheTier.SEARCHED:
                return replace(record)
            update(record)
            if current_tier != tier:
                del self._tiers[current_tier][test_id]
                self._tiers[tier][test_id] = record
                logger.debug(f"Test {test_id} moved from {current_tier.value} to {tier.value} tier")
                self._evict_over_capacity(tier)
            return replace(record)

    def remove(self, test_id: str, tier: CacheTier) -> Optional[TestRecord]:
        """Delete a test from the given tier."""
        with self._lock:
            return self._tiers[tier].pop(test_id, None)

    def mark_requested(
        self, test_id: str, now: Optional[int] = None
    ) -> Optional[tuple[TestRecord, CacheTier]]:
        """
        Stamp a client request on a cached test.

        A SEARCHED entry is promoted to REQUESTED.

        Returns:
            A copy of the record and its tier, or None if not cached
        """
        now = self._clock() if now is None else now
        with self._lock:
            located = self._locate(test_id)
            if located is None:
                return None
            record, tier = located
            record.last_requested = now
            if tier == CacheTier.SEARCHED:
                self.upsert(record, CacheTier.REQUESTED)
                tier = CacheTier.REQUESTED
            return replace(record), tier

    def evict_oldest(self, tier: CacheTier) -> Optional[TestRecord]:
        """Remove and return the least recently referenced entry of a tier."""
        with self._lock:
            return self._evict_oldest_locked(tier)

    def _evict_oldest_locked(self, tier: CacheTier) -> Optional[TestRecord]:
        entries = self._tiers[tier]
        oldest_id: Optional[str] = None
        oldest_recency = 0
        for test_id, record in entries.items():
            value = recency(record)
            if oldest_id is None or value < oldest_recency:
                oldest_id, oldest_recency = test_id, value
                if value == 0:
                    break
        if oldest_id is None:
            return None
        return entries.pop(oldest_id)

    def _evict_over_capacity(self, tier: CacheTier) -> Optional[TestRecord]:
        if len(self._tiers[tier]) <= self._capacity:
            return None
        evicted = self._evict_oldest_locked(tier)
        if evicted is not None:
            logger.debug(f"Evicted test {evicted.test_id} from {tier.value} tier")
        return evicted

    # =========================================================================
    # Listing
    # =========================================================================

    def snapshot_all(self) -> dict[str, list[TestRecord]]:
        """
        Copies of the listable tiers, newest start time first.

        SEARCHED is never listed.
        """
        with self._lock:
            copies = {
                tier: [replace(record) for record in self._tiers[tier].values()]
                for tier in (CacheTier.RUNNING, CacheTier.RECENT, CacheTier.REQUESTED)
            }

        def newest_first(records: list[TestRecord]) -> list[TestRecord]:
            ordered = sorted(records, key=lambda r: r.start_time, reverse=True)
            return ordered[: self._max_listed]

        return {
            "running": newest_first(copies[CacheTier.RUNNING]),
            "recent": newest_first(copies[CacheTier.RECENT]),
            "requested": newest_first(copies[CacheTier.REQUESTED]),
        }

    # =========================================================================
    # Remote Status Conversion
    # =========================================================================

    def results_locations(self, test_id: str, filenames: list[str]) -> list[str]:
        """Map result file names to their published locations."""
        if not self._results_base_url:
            return list(filenames)
        return [f"{self._results_base_url}/{test_id}/{name}" for name in filenames]

    def record_from_remote(self, remote: RemoteStatus, now: Optional[int] = None) -> TestRecord:
        """Build a fresh TestRecord from a remote status record."""
        now = self._clock() if now is None else now
        record = TestRecord(test_id=remote.test_id)
        self._apply_remote(record, remote, now)
        return record

    def _apply_remote(self, record: TestRecord, remote: RemoteStatus, now: int) -> None:
        record.status = remote.status
        record.start_time = remote.start_time or record.start_time
        record.end_time = remote.end_time
        record.errors = remote.errors
        record.results_locations = self.results_locations(record.test_id, remote.results_filename)
        for name in ("instance_id", "hostname", "ip_address", "version", "queue_name", "user_id"):
            value = getattr(remote, name)
            if value is not None:
                setattr(record, name, value)
        record.remote_status_snapshot = remote.snapshot
        record.last_updated = remote.last_modified or now
        record.last_checked = now

    # =========================================================================
    # Queue Activity
    # =========================================================================

    def mark_new_test(self, queue_name: str, when: Optional[int] = None) -> None:
        """Record that a test was just sent to a queue."""
        with self._lock:
            self._last_new_test[queue_name] = self._clock() if when is None else when

    def last_new_test(self, queue_name: str) -> Optional[int]:
        """When a test was last sent to a queue, if ever."""
        with self._lock:
            return self._last_new_test.get(queue_name)

    # =========================================================================
    # Stale Sweep
    # =========================================================================

    def expire_stale(self, now: Optional[int] = None) -> list[TestRecord]:
        """
        Fail RUNNING-tier tests that stopped reporting.

        A test is stale when its status is still active but both its end
        time and its last update are older than the stale threshold. Stale
        tests are marked Failed, moved to RECENT and written back to the
        remote store.

        Returns:
            Copies of the expired records
        """
        now = self._clock() if now is None else now
        cutoff = now - self._stale_after_ms
        message = (
            f"End time and last status update were more than "
            f"{self._stale_after_ms // ONE_MINUTE} minutes ago, status changed to Failed"
        )
        expired: list[TestRecord] = []
        with self._lock:
            running = self._tiers[CacheTier.RUNNING]
            for test_id, record in list(running.items()):
                if not record.status.is_active or record.end_time is None:
                    continue
                if record.end_time >= cutoff or _timestamp(record.last_updated) >= cutoff:
                    continue
                record.status = TestStatus.FAILED
                record.errors = [*(record.errors or []), message]
                record.last_checked = now
                del running[test_id]
                self._tiers[CacheTier.RECENT][test_id] = record
                self._evict_over_capacity(CacheTier.RECENT)
                expired.append(replace(record))

        for record in expired:
            logger.warning(f"Test {record.test_id} stopped reporting, marked Failed")
            self._write_failed_status(record, message)
        return expired

    def _write_failed_status(self, record: TestRecord, message: str) -> None:
        if self._store is None:
            return
        try:
            fetch = self._store.fetch_if_changed_since(record.test_id, None)
            if fetch.outcome == FetchOutcome.CHANGED:
                remote = fetch.status
                remote.status = TestStatus.FAILED
                remote.errors = [*(remote.errors or []), message]
            else:
                remote = RemoteStatus(
                    test_id=record.test_id,
                    status=TestStatus.FAILED,
                    start_time=record.start_time,
                    end_time=record.end_time,
                    errors=list(record.errors or []),
                )
            self._store.write(record.test_id, remote)
        except TransientIOError as e:
            logger.error(f"Could not write status for test {record.test_id}: {e}")
