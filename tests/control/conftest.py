"""
Control Plane Test Fixtures.

Base fixtures:
  - Mock clock at a fixed instant (Thursday 2026-01-01 12:00 UTC)
  - In-memory status store, message channel, launcher and repository
  - Cache with a small tier capacity so eviction is easy to reach

Factory fixtures:
  - make_item: ScheduleItem scheduled relative to the clock
  - make_record: TestRecord with chosen recency timestamps
"""

import time
from collections import deque
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

import pytest

from loadplane.control import (
    ChannelMessage,
    HealthState,
    HistoricalEntry,
    MessageType,
    Principal,
    PrincipalRole,
    Recurrence,
    RemoteStatus,
    ScheduleEngine,
    ScheduleItem,
    StatusFetch,
    TestRecord,
    TestStateCache,
    TestStatus,
    TransientIOError,
    encode_message,
    ONE_MINUTE,
)


# Thursday (weekday 4 with 0=Sunday)
FIXED_NOW = int(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc).timestamp() * 1000)
THURSDAY = 4

TEST_CAPACITY = 3


class MockClock:
    """
    Mock clock for deterministic time control.

    Callable, returning epoch ms. Advances only when explicitly ticked.
    """

    def __init__(self, start: int = FIXED_NOW):
        self._current = start

    def __call__(self) -> int:
        return self._current

    def tick(self, ms: int = 1000) -> None:
        """Advance time by specified milliseconds."""
        self._current += ms

    def set(self, value: int) -> None:
        self._current = value


class FakeStatusStore:
    """In-memory RemoteStatusStore with a revision counter snapshot."""

    def __init__(self, clock: Callable[[], int]):
        self._clock = clock
        self.records: dict[str, RemoteStatus] = {}
        self.writes: list[tuple[str, RemoteStatus, Optional[dict]]] = []
        self.fetches: list[tuple[str, Optional[str]]] = []
        self.fail = False

    def put(self, status: RemoteStatus) -> RemoteStatus:
        """Store a record directly, bumping its snapshot."""
        previous = self.records.get(status.test_id)
        revision = int(previous.snapshot) + 1 if previous else 1
        stored = replace(status, snapshot=str(revision), last_modified=self._clock())
        self.records[status.test_id] = stored
        return stored

    def fetch_if_changed_since(self, test_id: str, since_snapshot: Optional[str]) -> StatusFetch:
        self.fetches.append((test_id, since_snapshot))
        if self.fail:
            raise TransientIOError("fetch status")
        status = self.records.get(test_id)
        if status is None:
            return StatusFetch.not_found()
        if since_snapshot is not None and since_snapshot == status.snapshot:
            return StatusFetch.unchanged()
        return StatusFetch.changed(
            replace(status, tags=dict(status.tags), errors=list(status.errors or []) or None)
        )

    def write(self, test_id: str, status: RemoteStatus, tags: Optional[dict] = None) -> None:
        self.writes.append((test_id, replace(status), tags))
        if self.fail:
            raise TransientIOError("write status")
        previous = self.records.get(test_id)
        kept_tags = previous.tags if previous else {}
        self.put(replace(status, tags=dict(tags) if tags is not None else dict(kept_tags)))


class FakeMessageChannel:
    """In-memory MessageChannel; unacked messages are simply not redelivered."""

    def __init__(self):
        self.pending: deque[ChannelMessage] = deque()
        self.acked: list[ChannelMessage] = []
        self.depths: dict[str, int] = {}
        self.receive_errors = 0
        self.receive_exception: Optional[Exception] = None
        self._next_receipt = 0

    def push(self, body: str) -> ChannelMessage:
        self._next_receipt += 1
        message = ChannelMessage(receipt=str(self._next_receipt), body=body)
        self.pending.append(message)
        return message

    def push_event(self, test_id: str, message_type: MessageType | str, data=None) -> ChannelMessage:
        return self.push(encode_message(test_id, message_type, data))

    def receive(self, timeout_ms: int) -> Optional[ChannelMessage]:
        if self.receive_exception is not None:
            raise self.receive_exception
        if self.receive_errors > 0:
            self.receive_errors -= 1
            raise TransientIOError("receive")
        if self.pending:
            return self.pending.popleft()
        time.sleep(min(timeout_ms, 10) / 1000)
        return None

    def ack(self, message: ChannelMessage) -> None:
        self.acked.append(message)

    def depth(self, queue_name: str) -> int:
        return self.depths.get(queue_name, 0)


class RecordingLauncher:
    """TestLauncher that records launches and can be told to fail."""

    def __init__(self):
        self.launched: list[ScheduleItem] = []
        self.fail_ids: set[str] = set()

    def launch(self, item: ScheduleItem) -> str:
        if item.test_id in self.fail_ids:
            raise TransientIOError(f"launch {item.test_id}")
        self.launched.append(item)
        return item.test_id


class FakeScheduleRepository:
    """In-memory ScheduleRepository."""

    def __init__(self):
        self.items: list[ScheduleItem] = []
        self.history: list[HistoricalEntry] = []
        self.schedule_saves = 0
        self.history_saves = 0
        self.fail_saves = False

    def load_schedule(self) -> list[ScheduleItem]:
        return [replace(item) for item in self.items]

    def save_schedule(self, items: list[ScheduleItem]) -> None:
        if self.fail_saves:
            raise TransientIOError("save schedule")
        self.items = [replace(item) for item in items]
        self.schedule_saves += 1

    def load_history(self) -> list[HistoricalEntry]:
        return [replace(entry) for entry in self.history]

    def save_history(self, entries: list[HistoricalEntry]) -> None:
        if self.fail_saves:
            raise TransientIOError("save history")
        self.history = [replace(entry) for entry in entries]
        self.history_saves += 1


# =============================================================================
# Collaborator Fixtures
# =============================================================================


@pytest.fixture
def clock() -> MockClock:
    """Create a mock clock at fixed time."""
    return MockClock()


@pytest.fixture
def store(clock: MockClock) -> FakeStatusStore:
    return FakeStatusStore(clock)


@pytest.fixture
def channel() -> FakeMessageChannel:
    return FakeMessageChannel()


@pytest.fixture
def launcher() -> RecordingLauncher:
    return RecordingLauncher()


@pytest.fixture
def repository() -> FakeScheduleRepository:
    return FakeScheduleRepository()


@pytest.fixture
def health() -> HealthState:
    return HealthState()


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def cache(store: FakeStatusStore, clock: MockClock) -> TestStateCache:
    """Cache with capacity 3 per tier and no results URL prefix."""
    return TestStateCache(
        store=store,
        capacity=TEST_CAPACITY,
        clock=clock,
        results_base_url="",
    )


@pytest.fixture
def engine(
    store: FakeStatusStore,
    repository: FakeScheduleRepository,
    clock: MockClock,
) -> ScheduleEngine:
    """Schedule engine evaluating weekdays in UTC."""
    return ScheduleEngine(
        store=store,
        repository=repository,
        clock=clock,
        timezone=timezone.utc,
    )


# =============================================================================
# Principals
# =============================================================================


@pytest.fixture
def alice() -> Principal:
    return Principal(user_id="alice")


@pytest.fixture
def bob() -> Principal:
    return Principal(user_id="bob")


@pytest.fixture
def admin() -> Principal:
    return Principal(user_id="root", role=PrincipalRole.ADMIN)


# =============================================================================
# Factory Fixtures
# =============================================================================


@pytest.fixture
def make_item(clock: MockClock) -> Callable:
    """
    Factory fixture for schedule items.

    offset_ms is relative to the clock's current time.
    """

    def _create(
        test_id: str = "basicwithenv20260101T121000000",
        offset_ms: int = 10 * ONE_MINUTE,
        queue_name: str = "unittests",
        days_of_week: Optional[list[int]] = None,
        end_offset_ms: Optional[int] = None,
        version: str = "0.5.10",
        user_id: Optional[str] = "alice",
        **message,
    ) -> ScheduleItem:
        schedule_date = clock() + offset_ms
        recurrence = None
        if days_of_week is not None:
            end_date = schedule_date + end_offset_ms if end_offset_ms is not None else None
            recurrence = Recurrence(end_date=end_date, days_of_week=list(days_of_week))
        test_message = {
            "testId": test_id,
            "version": version,
            "yamlFile": "basicwithenv.yaml",
            "envVariables": {"SERVICE_URL_AGENT": "127.0.0.1:8080"},
            **message,
        }
        if user_id is not None:
            test_message["userId"] = user_id
        return ScheduleItem(
            queue_name=queue_name,
            test_message=test_message,
            schedule_date=schedule_date,
            recurrence=recurrence,
        )

    return _create


@pytest.fixture
def make_record() -> Callable:
    """Factory fixture for test records with explicit recency timestamps."""

    def _create(
        test_id: str,
        status: TestStatus = TestStatus.RUNNING,
        start_time: int = FIXED_NOW,
        last_checked: Optional[int] = None,
        last_updated: Optional[int] = None,
        last_requested: Optional[int] = None,
        **fields,
    ) -> TestRecord:
        return TestRecord(
            test_id=test_id,
            status=status,
            start_time=start_time,
            last_checked=last_checked,
            last_updated=last_updated,
            last_requested=last_requested,
            **fields,
        )

    return _create


@pytest.fixture
def status_data(clock: MockClock) -> Callable:
    """Factory for status report payloads as agents send them."""

    def _create(status: TestStatus = TestStatus.RUNNING, **overrides) -> dict:
        data = {
            "startTime": clock() - 5 * ONE_MINUTE,
            "endTime": clock() + 55 * ONE_MINUTE,
            "status": status.value if isinstance(status, TestStatus) else status,
            "resultsFilename": ["stats-basicwithenv.json"],
            "instanceId": "i-0123456789",
            "hostname": "agent-1",
            "ipAddress": "10.0.0.12",
        }
        data.update(overrides)
        return data

    return _create


@pytest.fixture
def wait_for() -> Callable:
    """Poll a condition until it holds or the timeout passes."""

    def _wait(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if condition():
                return True
            time.sleep(0.01)
        return condition()

    return _wait
