"""Tests for the in-process TTL map backing LocalAuth."""

import threading

from multisession.storage.expiring import (
    NO_EXPIRATION,
    ExpiringStore,
    reset_shared_store_for_tests,
    shared_store,
)


class TestExpiry:
    def test_entry_expires_after_ttl(self, clock):
        store = ExpiringStore(clock=clock)
        store.set("k", "v", 10)

        clock.advance(9)
        assert store.get("k") == ("v", True)
        clock.advance(1)
        assert store.get("k") == (None, False)

    def test_default_ttl_applies(self, clock):
        store = ExpiringStore(default_ttl=5, clock=clock)
        store.set("k", "v")
        clock.advance(5)
        assert not store.contains("k")

    def test_no_expiration_survives(self, clock):
        store = ExpiringStore(clock=clock)
        store.set("k", "v", NO_EXPIRATION)
        clock.advance(10**9)
        assert store.contains("k")
        assert store.ttl("k") == NO_EXPIRATION

    def test_ttl_reports_remaining_seconds(self, clock):
        store = ExpiringStore(clock=clock)
        store.set("k", "v", 30)
        clock.advance(10)
        assert store.ttl("k") == 20
        assert store.ttl("missing") is None

    def test_touch_extends_live_entry_only(self, clock):
        store = ExpiringStore(clock=clock)
        store.set("k", "v", 10)
        clock.advance(8)
        assert store.touch("k", 10)
        clock.advance(8)
        assert store.contains("k")
        assert not store.touch("missing", 10)


class TestMutation:
    def test_add_only_when_absent(self, clock):
        store = ExpiringStore(clock=clock)
        assert store.add("k", 1, 10)
        assert not store.add("k", 2, 10)
        clock.advance(10)
        assert store.add("k", 3, 10)
        assert store.get("k") == (3, True)

    def test_update_none_deletes(self, clock):
        store = ExpiringStore(clock=clock)
        store.set("k", 1, NO_EXPIRATION)
        result = store.update("k", lambda value, found: None)
        assert result is None
        assert not store.contains("k")

    def test_update_sees_absent_entry(self, clock):
        store = ExpiringStore(clock=clock)
        seen = []

        def fn(value, found):
            seen.append((value, found))
            return 1

        store.update("k", fn, NO_EXPIRATION)
        assert seen == [(None, False)]
        assert store.get("k") == (1, True)

    def test_delete_and_flush(self, clock):
        store = ExpiringStore(clock=clock)
        store.set("a", 1)
        store.set("b", 2)
        assert store.delete("a")
        assert not store.delete("a")
        store.flush()
        assert len(store) == 0

    def test_concurrent_updates_are_atomic(self):
        store = ExpiringStore()
        store.set("n", 0, NO_EXPIRATION)

        def worker():
            for _ in range(500):
                store.update("n", lambda value, found: value + 1, NO_EXPIRATION)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get("n") == (4000, True)


class TestSweep:
    def test_delete_expired_removes_dead_entries(self, clock):
        store = ExpiringStore(cleanup_interval=0, clock=clock)
        store.set("dead", 1, 5)
        store.set("alive", 2, NO_EXPIRATION)
        clock.advance(6)

        assert store.delete_expired() == 1
        assert len(store) == 1

    def test_set_sweeps_after_interval(self, clock):
        store = ExpiringStore(cleanup_interval=60, clock=clock)
        store.set("dead", 1, 5)
        clock.advance(61)
        store.set("other", 2, NO_EXPIRATION)
        assert len(store) == 1

    def test_items_skips_expired(self, clock):
        store = ExpiringStore(cleanup_interval=0, clock=clock)
        store.set("dead", 1, 5)
        store.set("alive", 2, 50)
        clock.advance(6)
        assert dict(store.items()) == {"alive": 2}


class TestSharedStore:
    def test_shared_store_is_process_wide(self):
        assert shared_store() is shared_store()

    def test_reset_creates_new_store(self):
        first = shared_store()
        reset_shared_store_for_tests()
        assert shared_store() is not first

    def test_later_interval_applies_to_existing_store(self):
        store = shared_store(60)

        assert shared_store(5) is store
        assert store.cleanup_interval == 5

    def test_omitted_interval_keeps_current(self):
        store = shared_store(30)
        assert shared_store().cleanup_interval == 30
        assert shared_store() is store
