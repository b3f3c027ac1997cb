"""
Control Plane Domain Entities.

- TestRecord: best known lifecycle state of one test (owned by TestStateCache)
- ScheduleItem: a pending future test, optionally recurring (owned by ScheduleEngine)
- HistoricalEntry: calendar record of a test that already ran
- Principal: the caller on whose behalf a schedule mutation runs

All timestamps are integer epoch milliseconds.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Any


ONE_MINUTE = 60 * 1000
ONE_HOUR = 60 * ONE_MINUTE
ONE_DAY = 24 * ONE_HOUR


def now_ms() -> int:
    """Get current time as epoch milliseconds."""
    return int(time.time() * 1000)


class TestStatus(str, Enum):
    """
    Lifecycle status reported for a test.

    CREATED and RUNNING are the active statuses; everything else is
    either pre-launch (SCHEDULED, UNKNOWN) or terminal.
    """

    UNKNOWN = "Unknown"
    CREATED = "Created"
    RUNNING = "Running"
    SCHEDULED = "Scheduled"
    FINISHED = "Finished"
    FAILED = "Failed"

    @property
    def is_active(self) -> bool:
        return self in (TestStatus.CREATED, TestStatus.RUNNING)


class CacheTier(str, Enum):
    """Cache tiers, declared in lookup priority order (RUNNING first)."""

    RUNNING = "Running"
    RECENT = "Recent"
    REQUESTED = "Requested"
    SEARCHED = "Searched"


class PrincipalRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


@dataclass(frozen=True)
class Principal:
    """Identity and role of a caller modifying the schedule."""

    user_id: Optional[str] = None
    role: PrincipalRole = PrincipalRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == PrincipalRole.ADMIN


@dataclass
class TestRecord:
    """
    One test's known state.

    The three recency timestamps are independent:
    - last_checked: last time the remote status record was consulted
    - last_updated: last time the status itself changed
    - last_requested: last time a client asked for this test
    """

    test_id: str
    status: TestStatus = TestStatus.UNKNOWN
    start_time: int = 0
    end_time: Optional[int] = None
    instance_id: Optional[str] = None
    hostname: Optional[str] = None
    ip_address: Optional[str] = None
    errors: Optional[list[str]] = None
    results_locations: Optional[list[str]] = None
    version: Optional[str] = None
    queue_name: Optional[str] = None
    user_id: Optional[str] = None
    remote_status_snapshot: Optional[str] = None
    last_checked: Optional[int] = None
    last_updated: Optional[int] = None
    last_requested: Optional[int] = None
    # Set once a Searched entry has been reconciled against the remote store
    status_checked: bool = False

    def to_dict(self) -> dict:
        """Public view of the record (internal bookkeeping omitted)."""
        return {
            "testId": self.test_id,
            "status": self.status.value,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "instanceId": self.instance_id,
            "hostname": self.hostname,
            "ipAddress": self.ip_address,
            "errors": self.errors,
            "resultsLocations": self.results_locations,
            "version": self.version,
            "queueName": self.queue_name,
            "userId": self.user_id,
            "lastChecked": self.last_checked,
            "lastUpdated": self.last_updated,
        }


@dataclass
class Recurrence:
    """Recurrence rule: fire on the given weekdays (0=Sunday) until end_date."""

    end_date: Optional[int] = None
    days_of_week: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"endDate": self.end_date, "daysOfWeek": list(self.days_of_week)}

    @classmethod
    def from_dict(cls, data: dict) -> "Recurrence":
        return cls(
            end_date=data.get("endDate"),
            days_of_week=list(data.get("daysOfWeek") or []),
        )


@dataclass
class ScheduleItem:
    """
    A pending future test.

    test_message is the opaque payload handed to workers. Keys read here:
    testId (required), userId, version, yamlFile, testRunTimeMn.
    """

    queue_name: Optional[str]
    test_message: Optional[dict[str, Any]]
    schedule_date: Optional[int]
    recurrence: Optional[Recurrence] = None
    next_start: int = 0
    owner_id: Optional[str] = None

    @property
    def test_id(self) -> Optional[str]:
        if not self.test_message:
            return None
        return self.test_message.get("testId")

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None

    @property
    def run_time_minutes(self) -> int:
        """Expected run length; 60 minutes when the payload doesn't say."""
        value = (self.test_message or {}).get("testRunTimeMn")
        return value if isinstance(value, int) and value > 0 else 60

    def to_dict(self) -> dict:
        return {
            "queueName": self.queue_name,
            "testMessage": self.test_message,
            "scheduleDate": self.schedule_date,
            "recurrence": self.recurrence.to_dict() if self.recurrence else None,
            "nextStart": self.next_start,
            "ownerId": self.owner_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduleItem":
        recurrence = data.get("recurrence")
        return cls(
            queue_name=data.get("queueName"),
            test_message=data.get("testMessage"),
            schedule_date=data.get("scheduleDate"),
            recurrence=Recurrence.from_dict(recurrence) if recurrence else None,
            next_start=data.get("nextStart") or 0,
            owner_id=data.get("ownerId"),
        )


@dataclass
class HistoricalEntry:
    """Calendar-display record of a test that already ran."""

    test_id: str
    title: str
    start: int
    end: int
    status: TestStatus = TestStatus.UNKNOWN

    def to_dict(self) -> dict:
        return {
            "testId": self.test_id,
            "title": self.title,
            "start": self.start,
            "end": self.end,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HistoricalEntry":
        return cls(
            test_id=data["testId"],
            title=data.get("title") or data["testId"],
            start=data["start"],
            end=data["end"],
            status=TestStatus(data.get("status", TestStatus.UNKNOWN.value)),
        )
