"""
ControlPlaneService tests.

Verifies:
- get_test / get_test_status read paths and their cache placement
- Listing and search seeding
- Lifecycle of the background loops
- End-to-end flow over the SQLite collaborators
"""

import pytest

from loadplane.control import (
    CacheTier,
    ControlPlaneService,
    DispatchLoop,
    LoopState,
    MessageType,
    NotFoundError,
    RemoteStatus,
    ScheduleLoop,
    TestStatus,
    encode_message,
    ONE_MINUTE,
)


@pytest.fixture
def service(cache, engine, channel, launcher, store, health, clock) -> ControlPlaneService:
    """Service wired to the in-memory fakes."""
    dispatch_loop = DispatchLoop(
        channel,
        cache,
        engine=engine,
        health=health,
        queue_names=["unittests"],
        clock=clock,
        receive_timeout_ms=10,
        error_delay_ms=10,
    )
    schedule_loop = ScheduleLoop(
        engine, launcher, cache, store=store, health=health, clock=clock, poll_interval_ms=1000
    )
    return ControlPlaneService(
        cache=cache,
        engine=engine,
        dispatch_loop=dispatch_loop,
        schedule_loop=schedule_loop,
        store=store,
        health=health,
        clock=clock,
    )


def remote(test_id: str, status: TestStatus) -> RemoteStatus:
    return RemoteStatus(test_id=test_id, status=status, start_time=1000, hostname="agent-1")


class TestGetTest:
    def test_cached_test_is_reconciled_and_stamped(self, service, cache, store, clock, make_record):
        cache.upsert(make_record("t1", status=TestStatus.CREATED), CacheTier.REQUESTED)
        store.put(remote("t1", TestStatus.RUNNING))

        record = service.get_test("t1")

        assert record.status == TestStatus.RUNNING
        assert record.last_requested == clock()
        assert cache.find("t1")[1] == CacheTier.RUNNING

    def test_searched_hit_is_promoted(self, service, cache, make_record):
        cache.upsert(make_record("t1", status=TestStatus.UNKNOWN), CacheTier.SEARCHED)

        service.get_test("t1")

        assert cache.find("t1")[1] == CacheTier.REQUESTED

    @pytest.mark.parametrize(
        "status,tier",
        [
            (TestStatus.SCHEDULED, CacheTier.SEARCHED),
            (TestStatus.RUNNING, CacheTier.RUNNING),
            (TestStatus.CREATED, CacheTier.RUNNING),
            (TestStatus.FINISHED, CacheTier.REQUESTED),
            (TestStatus.FAILED, CacheTier.REQUESTED),
        ],
    )
    def test_miss_loads_from_store(self, service, cache, store, status, tier):
        store.put(remote("t1", status))

        record = service.get_test("t1")

        assert record.status == status
        assert record.hostname == "agent-1"
        assert cache.find("t1")[1] == tier

    def test_unknown_test(self, service, cache):
        with pytest.raises(NotFoundError) as exc_info:
            service.get_test("missing")
        assert exc_info.value.status_code == 404
        assert cache.find("missing") is None

    def test_returns_copy(self, service, cache, store):
        store.put(remote("t1", TestStatus.RUNNING))

        service.get_test("t1").hostname = "changed"

        assert cache.find("t1")[0].hostname == "agent-1"


class TestGetTestStatus:
    def test_miss_seeds_searched_entry(self, service, cache, store):
        store.put(remote("t1", TestStatus.RUNNING))

        assert service.get_test_status("t1") == TestStatus.RUNNING

        record, tier = cache.find("t1")
        assert tier == CacheTier.SEARCHED
        assert record.status_checked

    def test_searched_entry_reconciled_once(self, service, store):
        store.put(remote("t1", TestStatus.RUNNING))
        service.get_test_status("t1")
        fetches = len(store.fetches)

        service.get_test_status("t1")

        assert len(store.fetches) == fetches

    def test_unknown_test(self, service):
        with pytest.raises(NotFoundError):
            service.get_test_status("missing")
        with pytest.raises(NotFoundError):
            service.get_test_status("missing")

    def test_cached_status_without_fetch(self, service, cache, store, make_record):
        cache.upsert(make_record("t1", status=TestStatus.FINISHED), CacheTier.RECENT)

        assert service.get_test_status("t1") == TestStatus.FINISHED
        assert store.fetches == []


class TestListing:
    def test_list_tests(self, service, cache, make_record):
        cache.upsert(make_record("run"), CacheTier.RUNNING)
        cache.upsert(make_record("done", status=TestStatus.FINISHED), CacheTier.RECENT)
        cache.upsert(make_record("asked", status=TestStatus.FINISHED), CacheTier.REQUESTED)
        cache.upsert(make_record("found", status=TestStatus.UNKNOWN), CacheTier.SEARCHED)

        listing = service.list_tests()

        assert [t["testId"] for t in listing["running"]] == ["run"]
        assert [t["testId"] for t in listing["recent"]] == ["done"]
        assert [t["testId"] for t in listing["requested"]] == ["asked"]

    def test_record_search_results(self, service, cache, make_record):
        cache.upsert(make_record("known"), CacheTier.RUNNING)

        assert service.record_search_results(["known", "a", "b"]) == 2

        assert cache.find("known")[1] == CacheTier.RUNNING
        assert cache.find("a")[1] == CacheTier.SEARCHED


class TestScheduleFacade:
    def test_schedule_and_remove(self, service, alice, make_item):
        item = make_item()

        summary = service.schedule_test(item, alice)

        assert summary["status"] == "Scheduled"
        assert service.scheduled_test(item.test_id) is not None
        assert service.tests_for_version("0.5.10") == [item.test_id]
        assert [event["id"] for event in service.calendar_events()] == [item.test_id]

        service.remove_scheduled(item.test_id, alice)
        assert service.scheduled_test(item.test_id) is None
        assert service.tests_for_version("0.5.10") is None


class TestLifecycle:
    def test_start_and_stop(self, service, repository, make_item):
        persisted = make_item("persisted")
        persisted.next_start = persisted.schedule_date
        repository.items = [persisted]

        service.start()
        try:
            assert service.is_running()
            assert service.dispatch_loop.is_running()
            assert service.schedule_loop.state == LoopState.RUNNING
            assert service.scheduled_test("persisted") is not None
            service.start()
        finally:
            service.stop(timeout=5)

        assert not service.is_running()
        assert service.is_healthy()
        assert service.dispatch_loop.event_loop_state == LoopState.STOPPED

    def test_unhealthy_after_loop_failure(self, service, channel, wait_for):
        channel.receive_exception = RuntimeError("broken client")

        service.start()
        try:
            assert wait_for(lambda: not service.is_healthy())
        finally:
            service.stop(timeout=5)


class TestEndToEnd:
    """Schedule, launch and finish a test over one SQLite database."""

    def test_scheduled_test_lifecycle(self, tmp_path, clock, alice, make_item):
        service = ControlPlaneService.create(
            db_path=tmp_path / "control.db", queue_names=["unittests"], clock=clock
        )
        channel = service.dispatch_loop.channel
        item = make_item()

        service.schedule_test(item, alice)
        assert service.get_test(item.test_id).status == TestStatus.SCHEDULED
        assert service.cache.find(item.test_id)[1] == CacheTier.SEARCHED

        clock.tick(10 * ONE_MINUTE)
        assert service.schedule_loop.fire_due() == [item.test_id]
        assert channel.depth("unittests") == 1
        assert service.cache.find(item.test_id)[1] == CacheTier.RUNNING
        assert service.get_test(item.test_id).status == TestStatus.CREATED

        clock.tick(60 * ONE_MINUTE)
        channel.publish(
            "communications",
            encode_message(
                item.test_id,
                MessageType.TEST_FINISHED,
                {
                    "startTime": clock() - 60 * ONE_MINUTE,
                    "endTime": clock(),
                    "status": "Finished",
                    "resultsFilename": ["stats.json"],
                },
            ),
        )
        assert service.dispatch_loop.dispatch_one(timeout_ms=0)

        assert channel.depth("communications") == 0
        listing = service.list_tests()
        assert [t["testId"] for t in listing["recent"]] == [item.test_id]
        assert listing["running"] == []
        history = [event for event in service.calendar_events() if event.get("color")]
        assert history[0]["id"] == item.test_id
        assert history[0]["color"] == "green"
