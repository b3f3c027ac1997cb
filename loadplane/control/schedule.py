"""
ScheduleEngine - pending future tests and their recurrence.

Item lifecycle:
  PENDING (has next_start) -> FIRED (handed to the launcher)
    one-shot:  deleted after firing
    recurring: next_start recomputed, back to PENDING; deleted once no
               allowed weekday remains before recurrence.end_date

Weekdays follow the 0=Sunday convention and are evaluated in a single
reference timezone (SCHEDULE_TIMEZONE, default: process local time).
Day steps are fixed 24 hour increments.

Only the owner of an item or an admin may overwrite or remove it.
"""

import logging
import os
import re
import threading
from copy import deepcopy
from dataclasses import replace
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from .collaborators import RemoteStatus, RemoteStatusStore, ScheduleRepository
from .entities import (
    HistoricalEntry,
    Principal,
    ScheduleItem,
    TestStatus,
    ONE_DAY,
    ONE_MINUTE,
    now_ms,
)
from .errors import (
    AuthorizationError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)


logger = logging.getLogger(__name__)

SCHEDULE_TIMEZONE = os.getenv("SCHEDULE_TIMEZONE", "")

# Extra time allowed past the expected run length before a test is overdue
END_TIME_GRACE_MS = 10 * ONE_MINUTE

RECURRING_TAG = "recurring"

# <name><YYYYMMDDTHHMMSSmmm>
TEST_ID_PATTERN = re.compile(r"^(.+)(\d{8}T\d{9})$")

HISTORY_COLORS = {
    TestStatus.FAILED: "red",
    TestStatus.FINISHED: "green",
}
DEFAULT_HISTORY_COLOR = "purple"


def resolve_timezone(name: str = SCHEDULE_TIMEZONE) -> Optional[tzinfo]:
    """Reference timezone for weekday arithmetic; None means local time."""
    return ZoneInfo(name) if name else None


def _local_datetime(timestamp: int, tz: Optional[tzinfo]) -> datetime:
    moment = datetime.fromtimestamp(timestamp / 1000, tz=tz)
    return moment if tz is not None else moment.astimezone()


def _is_weekday(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 6


def weekday_of(timestamp: int, tz: Optional[tzinfo] = None) -> int:
    """Day of week of an epoch ms instant, 0=Sunday through 6=Saturday."""
    return (_local_datetime(timestamp, tz).weekday() + 1) % 7


def hour_minute(timestamp: int, tz: Optional[tzinfo] = None) -> str:
    """Wall-clock "HH:MM" of an epoch ms instant."""
    return _local_datetime(timestamp, tz).strftime("%H:%M")


def date_string(timestamp: int) -> str:
    """UTC "YYYYMMDDTHHMMSSmmm" stamp that ends every test id."""
    moment = datetime.fromtimestamp(timestamp // 1000, tz=timezone.utc)
    return moment.strftime("%Y%m%dT%H%M%S") + f"{timestamp % 1000:03d}"


def run_test_id(scheduled_id: str, when: int) -> str:
    """
    Test id for one run of a recurring series.

    The scheduled id's name part is kept and its date stamp replaced by
    the launch time. The result never equals the scheduled id.
    """
    match = TEST_ID_PATTERN.match(scheduled_id)
    name = match.group(1) if match else scheduled_id
    test_id = name + date_string(when)
    if test_id == scheduled_id:
        test_id = name + date_string(when + 1)
    return test_id


def compute_next_start(
    window_start: int,
    window_end: int,
    days_of_week,
    tz: Optional[tzinfo] = None,
) -> Optional[int]:
    """
    Earliest instant in [window_start, window_end] on an allowed weekday.

    The time of day of window_start is kept. Returns None if the window
    is inverted, days_of_week is empty or out of range, or no allowed
    day falls inside the window.
    """
    days = sorted(set(days_of_week or []))
    if window_end < window_start or not days or any(d < 0 or d > 6 for d in days):
        return None

    start_day = weekday_of(window_start, tz)
    if start_day in days:
        return window_start

    later_days = [d for d in days if d > start_day]
    in_days = (later_days[0] if later_days else days[0] + 7) - start_day
    candidate = window_start + in_days * ONE_DAY
    return None if candidate > window_end else candidate


class ScheduleEngine:
    """
    Owns the pending schedule and the history of tests that already ran.

    Every read or write of the item and history maps goes through one
    lock. Remote status writes and repository saves happen outside it.
    """

    def __init__(
        self,
        store: Optional[RemoteStatusStore] = None,
        repository: Optional[ScheduleRepository] = None,
        clock: Callable[[], int] = now_ms,
        timezone: Optional[tzinfo] = None,
    ):
        """
        Initialize ScheduleEngine.

        Args:
            store: Remote status store; receives a Scheduled status per added item
            repository: Durable copy of the schedule; None keeps it in memory only
            clock: Returns current time as epoch ms
            timezone: Reference timezone for weekdays (None = local time)
        """
        self._store = store
        self._repository = repository
        self._clock = clock
        self._tz = timezone if timezone is not None else resolve_timezone()

        self._items: dict[str, ScheduleItem] = {}
        self._history: dict[str, HistoricalEntry] = {}
        self._lock = threading.RLock()

    @property
    def timezone(self) -> Optional[tzinfo]:
        return self._tz

    def load(self) -> None:
        """Replace in-memory state with the repository's copy."""
        if self._repository is None:
            return
        items = self._repository.load_schedule()
        history = self._repository.load_history()
        with self._lock:
            self._items = {item.test_id: item for item in items if item.test_id}
            self._history = {entry.test_id: entry for entry in history}
        logger.info(f"Loaded {len(items)} scheduled tests and {len(history)} historical tests")

    # =========================================================================
    # Add / Remove
    # =========================================================================

    def add_or_update(self, item: ScheduleItem, principal: Principal) -> dict:
        """
        Validate, authorize and store a scheduled test.

        A Scheduled status record is written to the remote store before the
        item is stored (tagged recurring for recurring items).

        Returns:
            Summary {testId, status, startTime, endTime, userId}

        Raises:
            ValidationError: Missing or invalid field
            AuthorizationError: Item exists and principal is neither owner nor admin
        """
        # Stored items never alias the caller's object
        item = deepcopy(item)
        next_start = self._validate(item)
        test_id = item.test_id
        self._check_authorized(test_id, principal)

        item.next_start = next_start
        end_time = item.schedule_date + item.run_time_minutes * ONE_MINUTE + END_TIME_GRACE_MS
        user_id = principal.user_id or item.test_message.get("userId")

        if self._store is not None:
            status = RemoteStatus(
                test_id=test_id,
                status=TestStatus.SCHEDULED,
                start_time=item.schedule_date,
                end_time=end_time,
                version=item.test_message.get("version"),
                queue_name=item.queue_name,
                user_id=user_id,
            )
            tags = {RECURRING_TAG: "true"} if item.is_recurring else {}
            self._store.write(test_id, status, tags)

        with self._lock:
            # Re-checked: the item may have been added while the status was written
            self._check_authorized(test_id, principal)
            existing = self._items.get(test_id)
            if existing is not None and existing.owner_id:
                item.owner_id = existing.owner_id
            else:
                item.owner_id = item.owner_id or user_id
            self._items[test_id] = item

        self._save_schedule()
        logger.info(
            f"Scheduled test {test_id} on queue {item.queue_name} "
            f"(next start {next_start}, recurring={item.is_recurring})"
        )
        return {
            "testId": test_id,
            "status": TestStatus.SCHEDULED.value,
            "startTime": item.schedule_date,
            "endTime": end_time,
            "userId": user_id,
        }

    def remove(self, test_id: str, principal: Principal) -> None:
        """
        Remove a pending item, or (admins only) a historical entry.

        Raises:
            NotFoundError: Neither pending nor historical
            AuthorizationError: Principal may not remove it
        """
        removed_history = False
        with self._lock:
            item = self._items.get(test_id)
            if item is None:
                if test_id not in self._history:
                    raise NotFoundError(test_id)
                if not principal.is_admin:
                    raise AuthorizationError(test_id, principal.user_id)
                del self._history[test_id]
                removed_history = True
            else:
                if not self._may_modify(item, principal):
                    raise AuthorizationError(test_id, principal.user_id)
                del self._items[test_id]

        if removed_history:
            logger.info(f"Removed historical test {test_id}")
            self._save_history()
        else:
            logger.info(f"Removed scheduled test {test_id}")
            self._save_schedule()

    def is_authorized(self, test_id: str, principal: Principal) -> bool:
        """Whether principal may modify test_id (unknown ids are open to anyone)."""
        with self._lock:
            item = self._items.get(test_id)
            return item is None or self._may_modify(item, principal)

    def _check_authorized(self, test_id: str, principal: Principal) -> None:
        if not self.is_authorized(test_id, principal):
            raise AuthorizationError(test_id, principal.user_id)

    @staticmethod
    def _may_modify(item: ScheduleItem, principal: Principal) -> bool:
        if principal.is_admin:
            return True
        return item.owner_id is not None and item.owner_id == principal.user_id

    def _validate(self, item: ScheduleItem) -> int:
        """Validate an item and return its first start instant."""
        if not item.queue_name:
            raise ValidationError("Missing required field: queueName", field="queueName")
        if not item.test_message:
            raise ValidationError("Missing required field: testMessage", field="testMessage")
        if item.schedule_date is None:
            raise ValidationError("Missing required field: scheduleDate", field="scheduleDate")
        if not item.test_id:
            raise ValidationError("Missing required field: testMessage.testId", field="testId")
        if item.schedule_date <= self._clock():
            raise ValidationError("scheduleDate must be in the future", field="scheduleDate")

        if item.recurrence is None:
            return item.schedule_date

        recurrence = item.recurrence
        if recurrence.end_date is None:
            raise ValidationError("Missing required field: recurrence.endDate", field="endDate")
        if recurrence.end_date <= item.schedule_date:
            raise ValidationError("endDate must be after scheduleDate", field="endDate")
        days = recurrence.days_of_week
        if not days or any(not _is_weekday(d) for d in days):
            raise ValidationError(
                f"daysOfWeek must be a non-empty list of values 0-6, got {days}",
                field="daysOfWeek",
            )
        recurrence.days_of_week = sorted(set(days))

        next_start = compute_next_start(
            item.schedule_date, recurrence.end_date, recurrence.days_of_week, self._tz
        )
        if next_start is None:
            raise ValidationError(
                f"No day in {recurrence.days_of_week} falls between scheduleDate and endDate",
                field="daysOfWeek",
            )
        return next_start

    # =========================================================================
    # Firing
    # =========================================================================

    def compute_next_start(
        self, window_start: int, window_end: int, days_of_week
    ) -> Optional[int]:
        """compute_next_start() in this engine's reference timezone."""
        return compute_next_start(window_start, window_end, days_of_week, self._tz)

    def due_items(self, now: Optional[int] = None) -> list[ScheduleItem]:
        """Copies of every pending item whose next_start has arrived, earliest first."""
        now = self._clock() if now is None else now
        with self._lock:
            due = [replace(item) for item in self._items.values() if item.next_start <= now]
        return sorted(due, key=lambda item: item.next_start)

    def following_start(self, item: ScheduleItem) -> Optional[int]:
        """
        Start of the run after item's next_start.

        None for one-shot items and for the last run of a series.
        """
        if not item.is_recurring:
            return None
        return compute_next_start(
            item.next_start + ONE_DAY,
            item.recurrence.end_date,
            item.recurrence.days_of_week,
            self._tz,
        )

    def advance(self, item: ScheduleItem) -> Optional[ScheduleItem]:
        """
        Move an item past the occurrence that just fired.

        One-shot items are deleted. Recurring items get the next allowed
        day after the fired one, or are deleted once none is left.

        Returns:
            A copy of the rescheduled item, or None if it was deleted
        """
        test_id = item.test_id
        with self._lock:
            current = self._items.get(test_id)
            if current is None:
                return None
            if current.next_start != item.next_start:
                logger.info(f"Scheduled test {test_id} was rescheduled while firing, keeping it")
                return replace(current)

            result: Optional[ScheduleItem] = None
            next_start = self.following_start(current)
            if next_start is not None:
                current.next_start = next_start
                # Calendar shows the series from the next occurrence on
                current.schedule_date = next_start
                result = replace(current)
            if result is None:
                del self._items[test_id]

        if result is None:
            logger.info(f"Scheduled test {test_id} finished its schedule, removed")
        else:
            logger.info(f"Scheduled test {test_id} next start {result.next_start}")
        self._save_schedule()
        return result

    def next_start(self) -> Optional[int]:
        """Earliest next_start over all pending items."""
        with self._lock:
            starts = [item.next_start for item in self._items.values()]
        return min(starts) if starts else None

    # =========================================================================
    # Queries
    # =========================================================================

    def get_item(self, test_id: str) -> Optional[ScheduleItem]:
        with self._lock:
            item = self._items.get(test_id)
            return replace(item) if item is not None else None

    def items(self) -> list[ScheduleItem]:
        with self._lock:
            return [replace(item) for item in self._items.values()]

    def items_for_worker_version(self, version: str) -> Optional[list[str]]:
        """
        Test ids of pending items that run on the given worker version.

        Returns None (not an empty list) when no item uses the version.
        """
        with self._lock:
            test_ids = [
                item.test_id
                for item in self._items.values()
                if item.test_message.get("version") == version
            ]
        return test_ids or None

    def calendar_events(self) -> list[dict]:
        """Pending items and historical entries in calendar event form."""
        with self._lock:
            items = list(self._items.values())
            history = list(self._history.values())

        events = []
        for item in items:
            title = item.test_message.get("yamlFile") or item.test_id
            end = item.schedule_date + item.run_time_minutes * ONE_MINUTE
            if item.is_recurring:
                events.append({
                    "id": item.test_id,
                    "title": title,
                    "startRecur": item.schedule_date,
                    "endRecur": item.recurrence.end_date,
                    "startTime": hour_minute(item.schedule_date, self._tz),
                    "endTime": hour_minute(end, self._tz),
                    "daysOfWeek": list(item.recurrence.days_of_week),
                })
            else:
                events.append({
                    "id": item.test_id,
                    "title": title,
                    "start": item.schedule_date,
                    "end": end,
                })
        for entry in history:
            events.append({
                "id": entry.test_id,
                "title": entry.title,
                "start": entry.start,
                "end": entry.end,
                "color": HISTORY_COLORS.get(entry.status, DEFAULT_HISTORY_COLOR),
            })
        return events

    # =========================================================================
    # History
    # =========================================================================

    def add_historical(
        self,
        test_id: str,
        start: int,
        end: int,
        status: TestStatus,
        title: Optional[str] = None,
    ) -> HistoricalEntry:
        """Insert or replace the historical entry for a test."""
        with self._lock:
            existing = self._history.get(test_id)
            entry = HistoricalEntry(
                test_id=test_id,
                title=title or (existing.title if existing else test_id),
                start=start,
                end=end,
                status=status,
            )
            self._history[test_id] = entry

        if existing is None or status in (TestStatus.FINISHED, TestStatus.FAILED):
            logger.info(f"Historical test {test_id} recorded as {status.value}")
        else:
            logger.debug(f"Historical test {test_id} updated to {status.value}")
        self._save_history()
        return entry

    def history(self) -> list[HistoricalEntry]:
        with self._lock:
            return [replace(entry) for entry in self._history.values()]

    def prune_history(self, max_age_days: int, now: Optional[int] = None) -> int:
        """
        Delete historical entries that ended more than max_age_days ago.

        Returns:
            Number of entries removed
        """
        now = self._clock() if now is None else now
        cutoff = now - max_age_days * ONE_DAY
        with self._lock:
            old_ids = [tid for tid, entry in self._history.items() if entry.end < cutoff]
            for test_id in old_ids:
                del self._history[test_id]
            remaining = len(self._history)

        logger.info(
            f"Historical delete removed {len(old_ids)} entries older than "
            f"{max_age_days} days, {remaining} remain"
        )
        if old_ids:
            self._save_history()
        return len(old_ids)

    # =========================================================================
    # Persistence
    # =========================================================================

    def _save_schedule(self) -> None:
        if self._repository is None:
            return
        items = self.items()
        try:
            self._repository.save_schedule(items)
        except TransientIOError as e:
            logger.error(f"Could not save schedule ({len(items)} items): {e}")

    def _save_history(self) -> None:
        if self._repository is None:
            return
        entries = self.history()
        try:
            self._repository.save_history(entries)
        except TransientIOError as e:
            logger.error(f"Could not save history ({len(entries)} entries): {e}")
