"""
Contracts for the external collaborators the control plane consumes.

- RemoteStatusStore: durable, eventually-consistent per-test status records
- MessageChannel: inbound status/control events, plus per-queue depth
- TestLauncher: the worker-dispatch path a due ScheduleItem is handed to
- ScheduleRepository: durable copy of the pending schedule and its history

Implementations are injected at construction; the bundled SQLite ones
live in persistence.py and tests provide in-memory fakes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

from .entities import HistoricalEntry, ScheduleItem, TestStatus


class FetchOutcome(str, Enum):
    """Result kinds of a conditional status fetch."""

    NOT_FOUND = "NOT_FOUND"
    UNCHANGED = "UNCHANGED"
    CHANGED = "CHANGED"


@dataclass
class RemoteStatus:
    """
    A test's status record as held by the remote store.

    snapshot is an opaque version token (an ETag, a revision counter);
    last_modified is when the store last accepted a write for this test.
    """

    test_id: str
    status: TestStatus
    start_time: int
    end_time: Optional[int] = None
    results_filename: list[str] = field(default_factory=list)
    instance_id: Optional[str] = None
    hostname: Optional[str] = None
    ip_address: Optional[str] = None
    errors: Optional[list[str]] = None
    version: Optional[str] = None
    queue_name: Optional[str] = None
    user_id: Optional[str] = None
    snapshot: Optional[str] = None
    last_modified: Optional[int] = None
    tags: dict[str, str] = field(default_factory=dict)

    def to_document(self) -> dict:
        """Stored form of the record (snapshot, timestamps and tags live beside it)."""
        return {
            "testId": self.test_id,
            "status": self.status.value,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "resultsFilename": list(self.results_filename),
            "instanceId": self.instance_id,
            "hostname": self.hostname,
            "ipAddress": self.ip_address,
            "errors": self.errors,
            "version": self.version,
            "queueName": self.queue_name,
            "userId": self.user_id,
        }

    @classmethod
    def from_document(cls, data: dict) -> "RemoteStatus":
        return cls(
            test_id=data["testId"],
            status=TestStatus(data.get("status", TestStatus.UNKNOWN.value)),
            start_time=data.get("startTime") or 0,
            end_time=data.get("endTime"),
            results_filename=list(data.get("resultsFilename") or []),
            instance_id=data.get("instanceId"),
            hostname=data.get("hostname"),
            ip_address=data.get("ipAddress"),
            errors=data.get("errors"),
            version=data.get("version"),
            queue_name=data.get("queueName"),
            user_id=data.get("userId"),
        )


@dataclass(frozen=True)
class StatusFetch:
    """Tagged result of RemoteStatusStore.fetch_if_changed_since."""

    outcome: FetchOutcome
    status: Optional[RemoteStatus] = None

    @classmethod
    def not_found(cls) -> "StatusFetch":
        return cls(FetchOutcome.NOT_FOUND)

    @classmethod
    def unchanged(cls) -> "StatusFetch":
        return cls(FetchOutcome.UNCHANGED)

    @classmethod
    def changed(cls, status: RemoteStatus) -> "StatusFetch":
        return cls(FetchOutcome.CHANGED, status)


@dataclass(frozen=True)
class ChannelMessage:
    """A received channel message; receipt identifies it for ack()."""

    receipt: str
    body: str


class RemoteStatusStore(Protocol):
    """Protocol for the remote per-test status store."""

    def fetch_if_changed_since(
        self, test_id: str, since_snapshot: Optional[str]
    ) -> StatusFetch:
        """
        Fetch a test's status if it changed since the given snapshot.

        A None snapshot always yields CHANGED when the record exists.

        Raises:
            TransientIOError: If the store could not be reached
        """
        ...

    def write(
        self,
        test_id: str,
        status: RemoteStatus,
        tags: Optional[dict[str, str]] = None,
    ) -> None:
        """
        Write a test's status record.

        tags=None keeps the record's existing tags; a dict replaces them.
        """
        ...


class MessageChannel(Protocol):
    """Protocol for the inbound event channel."""

    def receive(self, timeout_ms: int) -> Optional[ChannelMessage]:
        """Receive one message, or None once timeout_ms passes without one."""
        ...

    def ack(self, message: ChannelMessage) -> None:
        """Delete a processed message so it is not redelivered."""
        ...

    def depth(self, queue_name: str) -> int:
        """Number of messages waiting on the named test queue."""
        ...


class TestLauncher(Protocol):
    """Protocol for handing a due ScheduleItem to the worker fleet."""

    def launch(self, item: ScheduleItem) -> str:
        """Launch the item's test and return its test id."""
        ...


class ScheduleRepository(Protocol):
    """Protocol for durable storage of pending schedule items and history."""

    def load_schedule(self) -> list[ScheduleItem]:
        ...

    def save_schedule(self, items: list[ScheduleItem]) -> None:
        ...

    def load_history(self) -> list[HistoricalEntry]:
        ...

    def save_history(self, entries: list[HistoricalEntry]) -> None:
        ...
