"""
DispatchLoop - folds worker status events into the TestStateCache.

Two loops run on their own daemon threads:
- communications: receive one message, decode it, apply it, ack it.
  Status kinds update the cache and the historical calendar. Other kinds
  are logged and acked. A handler error leaves the message unacked so the
  channel redelivers it.
- queue-monitor: on an aligned interval, sample each test queue's depth
  and warn when a queue has a backlog but nothing new was sent to it for
  longer than the stall threshold. Also expires stale running tests.

A receive/ack failure (TransientIOError) is retried after a fixed backoff.
Any other exception escaping a loop ends it and marks the process
unhealthy.
"""

import logging
import os
import threading
from enum import Enum
from typing import Callable, Optional

from .cache import TestStateCache
from .collaborators import ChannelMessage, MessageChannel
from .entities import CacheTier, TestRecord, ONE_MINUTE, now_ms
from .errors import FatalLoopError, TransientIOError, ValidationError
from .health import HealthState
from .messages import (
    ControlEvent,
    MessageType,
    StatusEvent,
    TERMINAL_MESSAGE_TYPES,
    decode_message,
)
from .schedule import ScheduleEngine


logger = logging.getLogger(__name__)

COMMUNICATION_RECEIVE_TIMEOUT_MS = int(os.getenv("COMMUNICATION_RECEIVE_TIMEOUT_MS", "20000"))
COMMUNICATION_ERROR_DELAY_MS = int(os.getenv("COMMUNICATION_ERROR_DELAY_MS", "5000"))
QUEUE_MONITOR_INTERVAL_MN = int(os.getenv("QUEUE_MONITOR_INTERVAL_MN", "1"))
QUEUE_STALL_WARN_MS = int(os.getenv("QUEUE_STALL_WARN_MS", str(20 * ONE_MINUTE)))
TEST_QUEUE_NAMES = [
    name.strip()
    for name in os.getenv("TEST_QUEUE_NAMES", "unittests").split(",")
    if name.strip()
]


class LoopState(str, Enum):
    """Background loop lifecycle states."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    FAILED = "FAILED"


class BackgroundLoop:
    """
    Runs one loop body on a daemon thread until stopped.

    The body receives the stop event and must return once it is set.
    Returning while the event is clear, or raising, counts as an
    unexpected exit: the loop goes FAILED and health is marked failed.
    """

    def __init__(
        self,
        name: str,
        body: Callable[[threading.Event], None],
        health: HealthState,
    ):
        self.name = name
        self._body = body
        self._health = health
        self._state = LoopState.STOPPED
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def state(self) -> LoopState:
        return self._state

    def start(self) -> LoopState:
        """Start the loop; a no-op if it is already running."""
        with self._lock:
            if self._state == LoopState.RUNNING:
                logger.debug(f"{self.name} loop already running")
                return self._state
            if self._state == LoopState.STOPPING:
                raise RuntimeError(f"Cannot start {self.name} loop while it is stopping")

            self._stop_event.clear()
            self._state = LoopState.RUNNING
            self._thread = threading.Thread(
                target=self._run, name=f"loadplane-{self.name}", daemon=True
            )
            self._thread.start()
            return self._state

    def stop(self, timeout: float = 30.0) -> None:
        """
        Stop the loop and wait for the current iteration to finish.

        If the thread outlives the timeout the loop stays STOPPING, and
        start() refuses to run a second copy until a later stop() sees
        the thread exit.

        Args:
            timeout: Maximum seconds to wait for the thread
        """
        with self._lock:
            if self._state not in (LoopState.RUNNING, LoopState.STOPPING):
                return
            self._state = LoopState.STOPPING
            self._stop_event.set()
            thread = self._thread

        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"{self.name} loop did not stop within {timeout}s")
                return

        with self._lock:
            self._thread = None
            self._state = LoopState.STOPPED
        logger.info(f"{self.name} loop stopped")

    def _run(self) -> None:
        logger.info(f"{self.name} loop started")
        try:
            self._body(self._stop_event)
        except Exception as e:
            logger.critical(f"{self.name} loop crashed: {e}", exc_info=True)
            self._fail(e)
            return

        if not self._stop_event.is_set():
            self._fail(RuntimeError("loop body returned without a stop request"))
            return
        logger.info(f"{self.name} loop ended")

    def _fail(self, cause: BaseException) -> None:
        with self._lock:
            self._state = LoopState.FAILED
        self._health.fail(FatalLoopError(self.name, cause))


class DispatchLoop:
    """
    Drains the communications channel into the cache and watches queue depth.

    Usage:
        loop = DispatchLoop(channel, cache, engine, health)
        loop.start()
        ...
        loop.stop()
    """

    def __init__(
        self,
        channel: MessageChannel,
        cache: TestStateCache,
        engine: Optional[ScheduleEngine] = None,
        health: Optional[HealthState] = None,
        queue_names: Optional[list[str]] = None,
        clock: Callable[[], int] = now_ms,
        receive_timeout_ms: int = COMMUNICATION_RECEIVE_TIMEOUT_MS,
        error_delay_ms: int = COMMUNICATION_ERROR_DELAY_MS,
        monitor_interval_ms: int = QUEUE_MONITOR_INTERVAL_MN * ONE_MINUTE,
        stall_warn_ms: int = QUEUE_STALL_WARN_MS,
    ):
        """
        Initialize DispatchLoop.

        Args:
            channel: Inbound event channel (also reports queue depth)
            cache: Cache status events are folded into
            engine: Schedule engine receiving historical entries (optional)
            health: Shared health flag
            queue_names: Test queues watched by the monitor loop
            clock: Returns current time as epoch ms
            receive_timeout_ms: Max wait per channel receive
            error_delay_ms: Backoff after a failed receive
            monitor_interval_ms: Monitor loop period
            stall_warn_ms: Backlog age that triggers a stall warning
        """
        self.channel = channel
        self.cache = cache
        self.engine = engine
        self.health = health or HealthState()
        self.queue_names = list(TEST_QUEUE_NAMES if queue_names is None else queue_names)
        self._clock = clock
        self._receive_timeout_ms = receive_timeout_ms
        self._error_delay_ms = error_delay_ms
        self._monitor_interval_ms = monitor_interval_ms
        self._stall_warn_ms = stall_warn_ms

        self._event_loop = BackgroundLoop("communications", self._run_event_loop, self.health)
        self._monitor_loop = BackgroundLoop("queue-monitor", self._run_monitor_loop, self.health)

    @property
    def event_loop_state(self) -> LoopState:
        return self._event_loop.state

    @property
    def monitor_loop_state(self) -> LoopState:
        return self._monitor_loop.state

    def start(self) -> LoopState:
        """Start both loops. Already-running loops are left alone."""
        self._event_loop.start()
        self._monitor_loop.start()
        return self._event_loop.state

    def stop(self, timeout: float = 30.0) -> None:
        self._event_loop.stop(timeout)
        self._monitor_loop.stop(timeout)

    def is_running(self) -> bool:
        return (
            self._event_loop.state == LoopState.RUNNING
            and self._monitor_loop.state == LoopState.RUNNING
        )

    # =========================================================================
    # Communications
    # =========================================================================

    def dispatch_one(self, timeout_ms: Optional[int] = None) -> bool:
        """
        Receive and handle at most one message.

        Returns:
            True if a message was received

        Raises:
            TransientIOError: If the channel receive or ack failed
        """
        timeout_ms = self._receive_timeout_ms if timeout_ms is None else timeout_ms
        message = self.channel.receive(timeout_ms)
        if message is None:
            return False
        self.handle_message(message)
        return True

    def handle_message(self, message: ChannelMessage) -> bool:
        """
        Apply one message and ack it.

        Returns:
            True if the message was acked, False if it was left for redelivery
        """
        try:
            event = decode_message(message.body)
        except ValidationError as e:
            # Malformed bodies are dropped, never redelivered
            logger.warning(f"Discarding undecodable message {message.receipt}: {e}")
            self.channel.ack(message)
            return True

        try:
            if isinstance(event, StatusEvent):
                self._apply_status(event)
            elif isinstance(event, ControlEvent):
                logger.warning(
                    f"Unhandled message type {event.message_type} for test {event.test_id}, deleting it"
                )
            else:
                raise TypeError(f"Unexpected event {type(event).__name__}")
        except Exception as e:
            logger.error(
                f"Error handling message {message.receipt} for test {event.test_id}, "
                f"leaving it for redelivery: {e}",
                exc_info=True,
            )
            return False

        self.channel.ack(message)
        return True

    def _apply_status(self, event: StatusEvent) -> None:
        test_id = event.test_id
        report = event.report
        now = self._clock()

        if event.message_type in TERMINAL_MESSAGE_TYPES or not report.status.is_active:
            tier = CacheTier.RECENT
        else:
            tier = CacheTier.RUNNING

        def merge(record: TestRecord) -> None:
            record.status = report.status
            record.start_time = report.start_time
            record.end_time = report.end_time
            record.instance_id = report.instance_id or record.instance_id
            record.hostname = report.hostname or record.hostname
            record.ip_address = report.ip_address or record.ip_address
            if report.errors is not None:
                record.errors = report.errors
            record.results_locations = self.cache.results_locations(test_id, report.results_filename)
            record.version = report.version or record.version
            record.queue_name = report.queue_name or record.queue_name
            record.user_id = report.user_id or record.user_id
            record.last_updated = now

        self.cache.apply_update(test_id, merge, tier)

        if event.message_type == MessageType.TEST_STATUS:
            logger.debug(f"Test {test_id} status {report.status.value} ({tier.value} tier)")
        else:
            logger.info(
                f"Test {test_id} {event.message_type.value}: {report.status.value} ({tier.value} tier)"
            )

        if self.engine is not None:
            self.engine.add_historical(test_id, report.start_time, report.end_time, report.status)

    def _run_event_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.dispatch_one()
            except TransientIOError as e:
                logger.error(f"Error reading communications channel: {e}")
                stop_event.wait(self._error_delay_ms / 1000)

    # =========================================================================
    # Queue Monitor
    # =========================================================================

    def check_queues(self, now: Optional[int] = None) -> list[str]:
        """
        Sample every test queue and warn about stalled ones.

        A queue is stalled when it holds messages and no test was sent to
        it within the stall threshold (or ever).

        Returns:
            Names of stalled queues
        """
        now = self._clock() if now is None else now
        stalled = []
        for queue_name in self.queue_names:
            depth = self.channel.depth(queue_name)
            if depth <= 0:
                continue
            last_new_test = self.cache.last_new_test(queue_name)
            if last_new_test is not None and last_new_test >= now - self._stall_warn_ms:
                continue
            minutes = (
                f"{(now - last_new_test) / ONE_MINUTE:.2f}" if last_new_test is not None else "unknown"
            )
            logger.warning(f"Test queue {queue_name} has {depth} messages after {minutes} minutes")
            stalled.append(queue_name)
        return stalled

    def next_monitor_time(self, now: int) -> int:
        """First interval boundary at or after now."""
        interval = self._monitor_interval_ms
        return -(-now // interval) * interval

    def _run_monitor_loop(self, stop_event: threading.Event) -> None:
        next_check = self.next_monitor_time(self._clock())
        while not stop_event.is_set():
            delay_ms = max(0, next_check - self._clock())
            if stop_event.wait(delay_ms / 1000):
                break
            try:
                self.check_queues()
            except TransientIOError as e:
                logger.error(f"Error sampling test queues: {e}")
            self.cache.expire_stale()

            next_check += self._monitor_interval_ms
            now = self._clock()
            if next_check <= now:
                # Missed boundaries are skipped rather than replayed
                next_check = self.next_monitor_time(now + 1)
