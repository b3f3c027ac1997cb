"""
Reconciliation of cached tests against the remote status store.

Verifies:
- UNCHANGED / NOT_FOUND fetches leave the record alone
- CHANGED fetches merge fields and migrate tiers
- Store outages fall back to the cached view
"""

from loadplane.control import (
    CacheTier,
    RemoteStatus,
    TestStateCache,
    TestStatus,
    ONE_MINUTE,
)


def remote(test_id: str, status: TestStatus, start_time: int = 1000, **fields) -> RemoteStatus:
    return RemoteStatus(test_id=test_id, status=status, start_time=start_time, **fields)


class TestNoChange:
    def test_unchanged_leaves_record_untouched(self, cache, store, make_record):
        stored = store.put(remote("t1", TestStatus.RUNNING))
        record = make_record(
            "t1",
            remote_status_snapshot=stored.snapshot,
            last_checked=111,
            last_updated=222,
        )
        cache.upsert(record, CacheTier.REQUESTED)

        found = cache.lookup_with_reconciliation("t1")

        assert found == (record, CacheTier.REQUESTED)
        assert record.last_checked == 111
        assert record.last_updated == 222
        assert store.fetches == [("t1", stored.snapshot)]

    def test_not_found_leaves_record_untouched(self, cache, store, make_record):
        record = make_record("t1", status=TestStatus.UNKNOWN)
        cache.upsert(record, CacheTier.SEARCHED)

        found = cache.lookup_with_reconciliation("t1")

        assert found == (record, CacheTier.SEARCHED)
        assert record.status == TestStatus.UNKNOWN
        assert record.last_checked is None

    def test_uncached_test_is_not_fetched(self, cache, store):
        assert cache.lookup_with_reconciliation("missing") is None
        assert store.fetches == []


class TestChanged:
    """CHANGED fetches merge remote fields, then apply the migration rule."""

    def test_requested_moves_to_running(self, cache, store, clock, make_record):
        cache.upsert(make_record("t1", status=TestStatus.CREATED), CacheTier.REQUESTED)
        store.put(remote("t1", TestStatus.RUNNING, hostname="agent-3"))
        clock.tick(ONE_MINUTE)

        record, tier = cache.lookup_with_reconciliation("t1")

        assert tier == CacheTier.RUNNING
        assert record.status == TestStatus.RUNNING
        assert record.hostname == "agent-3"
        assert record.last_checked == clock()
        assert record.remote_status_snapshot == "1"
        assert cache.size(CacheTier.REQUESTED) == 0

    def test_running_moves_to_recent(self, cache, store, make_record):
        cache.upsert(make_record("t1"), CacheTier.RUNNING)
        store.put(remote("t1", TestStatus.FINISHED, end_time=5000))

        record, tier = cache.lookup_with_reconciliation("t1")

        assert tier == CacheTier.RECENT
        assert record.end_time == 5000
        assert cache.size(CacheTier.RUNNING) == 0

    def test_recent_stays_recent(self, cache, store, make_record):
        cache.upsert(make_record("t1", status=TestStatus.FINISHED), CacheTier.RECENT)
        store.put(remote("t1", TestStatus.RUNNING))

        _, tier = cache.lookup_with_reconciliation("t1")

        assert tier == CacheTier.RECENT

    def test_searched_moves_to_running(self, cache, store, make_record):
        cache.upsert(make_record("t1", status=TestStatus.UNKNOWN), CacheTier.SEARCHED)
        store.put(remote("t1", TestStatus.CREATED))

        _, tier = cache.lookup_with_reconciliation("t1")

        assert tier == CacheTier.RUNNING
        assert cache.size(CacheTier.SEARCHED) == 0

    def test_migrate_false_keeps_tier(self, cache, store, make_record):
        cache.upsert(make_record("t1", status=TestStatus.UNKNOWN), CacheTier.SEARCHED)
        store.put(remote("t1", TestStatus.RUNNING))

        record, tier = cache.lookup_with_reconciliation("t1", migrate=False)

        assert tier == CacheTier.SEARCHED
        assert record.status == TestStatus.RUNNING

    def test_last_updated_comes_from_store(self, cache, store, clock, make_record):
        cache.upsert(make_record("t1"), CacheTier.RUNNING)
        stored = store.put(remote("t1", TestStatus.RUNNING))
        clock.tick(5 * ONE_MINUTE)

        record, _ = cache.lookup_with_reconciliation("t1")

        assert record.last_updated == stored.last_modified
        assert record.last_checked == clock()

    def test_missing_identity_fields_are_kept(self, cache, store, make_record):
        cache.upsert(make_record("t1", hostname="agent-1", queue_name="unittests"), CacheTier.RUNNING)
        store.put(remote("t1", TestStatus.RUNNING))

        record, _ = cache.lookup_with_reconciliation("t1")

        assert record.hostname == "agent-1"
        assert record.queue_name == "unittests"

    def test_second_lookup_is_unchanged(self, cache, store, make_record):
        cache.upsert(make_record("t1"), CacheTier.RUNNING)
        store.put(remote("t1", TestStatus.RUNNING))
        record, _ = cache.lookup_with_reconciliation("t1")
        checked = record.last_checked

        cache.lookup_with_reconciliation("t1")

        assert store.fetches[-1] == ("t1", "1")
        assert record.last_checked == checked

    def test_migration_respects_capacity(self, cache, store, make_record):
        for name, checked in (("a", 10), ("b", 20), ("c", 30)):
            cache.upsert(make_record(name, status=TestStatus.FINISHED, last_checked=checked), CacheTier.RECENT)
        cache.upsert(make_record("t1"), CacheTier.RUNNING)
        store.put(remote("t1", TestStatus.FINISHED))

        cache.lookup_with_reconciliation("t1")

        assert cache.size(CacheTier.RECENT) == 3
        assert cache.find("a") is None


class TestStoreFailure:
    def test_serves_cached_view(self, cache, store, make_record, caplog):
        record = make_record("t1", last_checked=111)
        cache.upsert(record, CacheTier.RUNNING)
        store.fail = True

        found = cache.lookup_with_reconciliation("t1")

        assert found == (record, CacheTier.RUNNING)
        assert record.last_checked == 111
        assert "serving cached state" in caplog.text

    def test_cache_without_store(self, clock, make_record):
        cache = TestStateCache(store=None, clock=clock)
        cache.upsert(make_record("t1"), CacheTier.RUNNING)

        assert cache.lookup_with_reconciliation("t1")[1] == CacheTier.RUNNING
