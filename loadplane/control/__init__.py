"""
Control plane for the load-test fleet.

Components:
- TestStateCache: four-tier, bounded, reconciling view of test state
- ScheduleEngine: pending scheduled tests, recurrence and history
- DispatchLoop: communications loop and queue monitor loop
- ScheduleLoop: fires due scheduled tests
- ControlPlaneService: wires the above and owns their lifecycle
"""

from .entities import (
    CacheTier,
    HistoricalEntry,
    Principal,
    PrincipalRole,
    Recurrence,
    ScheduleItem,
    TestRecord,
    TestStatus,
    ONE_DAY,
    ONE_HOUR,
    ONE_MINUTE,
    now_ms,
)
from .errors import (
    ControlPlaneError,
    ValidationError,
    AuthorizationError,
    NotFoundError,
    TransientIOError,
    FatalLoopError,
)
from .messages import (
    ControlEvent,
    EventKind,
    MessageType,
    StatusEvent,
    StatusReport,
    decode_message,
    encode_message,
)
from .collaborators import (
    ChannelMessage,
    FetchOutcome,
    MessageChannel,
    RemoteStatus,
    RemoteStatusStore,
    ScheduleRepository,
    StatusFetch,
    TestLauncher,
)
from .cache import TestStateCache, recency, migration_target
from .schedule import (
    ScheduleEngine,
    compute_next_start,
    hour_minute,
    run_test_id,
    weekday_of,
)
from .health import HealthState
from .dispatcher import BackgroundLoop, DispatchLoop, LoopState
from .schedule_loop import ScheduleLoop
from .persistence import (
    PersistenceAdapter,
    QueueTestLauncher,
    SqliteMessageChannel,
    SqliteScheduleRepository,
    SqliteStatusStore,
)
from .service import ControlPlaneService

__all__ = [
    # Entities
    "CacheTier",
    "HistoricalEntry",
    "Principal",
    "PrincipalRole",
    "Recurrence",
    "ScheduleItem",
    "TestRecord",
    "TestStatus",
    "ONE_DAY",
    "ONE_HOUR",
    "ONE_MINUTE",
    "now_ms",
    # Errors
    "ControlPlaneError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "TransientIOError",
    "FatalLoopError",
    # Messages
    "ControlEvent",
    "EventKind",
    "MessageType",
    "StatusEvent",
    "StatusReport",
    "decode_message",
    "encode_message",
    # Collaborators
    "ChannelMessage",
    "FetchOutcome",
    "MessageChannel",
    "RemoteStatus",
    "RemoteStatusStore",
    "ScheduleRepository",
    "StatusFetch",
    "TestLauncher",
    # Components
    "TestStateCache",
    "recency",
    "migration_target",
    "ScheduleEngine",
    "compute_next_start",
    "weekday_of",
    "hour_minute",
    "run_test_id",
    "HealthState",
    "BackgroundLoop",
    "DispatchLoop",
    "LoopState",
    "ScheduleLoop",
    "PersistenceAdapter",
    "QueueTestLauncher",
    "SqliteMessageChannel",
    "SqliteScheduleRepository",
    "SqliteStatusStore",
    "ControlPlaneService",
]
