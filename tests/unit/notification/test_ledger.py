import threading
from datetime import timedelta

import pytest

from database.models import DedupLock, SendLogEntry
from notification.dto import SendResult
from notification.ledger import AcquireResult, DedupLedger


class TestDedupKey:
    def test_per_user_keys_differ_by_user(self, catalog):
        ledger = DedupLedger("prod")
        entry = catalog.lookup("goal-scored")
        assert ledger.dedup_key(entry, "goal:1:x:10", "u1") != ledger.dedup_key(entry, "goal:1:x:10", "u2")

    def test_global_key_ignores_user(self, catalog):
        ledger = DedupLedger("prod")
        entry = catalog.lookup("new-gameweek")
        assert ledger.dedup_key(entry, "new_gw:7", "u1") == ledger.dedup_key(entry, "new_gw:7", None)

    def test_environment_is_part_of_the_key(self, catalog):
        entry = catalog.lookup("goal-scored")
        assert DedupLedger("prod").dedup_key(entry, "e", "u") != DedupLedger("dev").dedup_key(entry, "e", "u")


class TestTryAcquire:
    def test_second_acquire_loses(self, catalog, session_factory, clock):
        ledger = DedupLedger("prod")
        entry = catalog.lookup("final-whistle")
        session = session_factory()

        assert ledger.try_acquire(session, entry, "ft:99", "u1", clock()) is AcquireResult.ACQUIRED
        assert ledger.try_acquire(session, entry, "ft:99", "u1", clock()) is AcquireResult.ALREADY_EXISTS
        assert ledger.try_acquire(session, entry, "ft:99", "u2", clock()) is AcquireResult.ACQUIRED
        session.close()

    def test_slot_is_permanent(self, catalog, session_factory, clock):
        ledger = DedupLedger("prod")
        entry = catalog.lookup("final-whistle")
        session = session_factory()
        ledger.try_acquire(session, entry, "ft:99", "u1", clock())

        clock.advance(30 * 24 * 3600)
        assert ledger.try_acquire(session, entry, "ft:99", "u1", clock()) is AcquireResult.ALREADY_EXISTS
        session.close()

    @pytest.mark.concurrency
    def test_concurrent_acquire_has_one_winner(self, catalog, session_factory, clock):
        ledger = DedupLedger("prod")
        entry = catalog.lookup("new-gameweek")
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def attempt():
            session = session_factory()
            try:
                barrier.wait()
                outcome = ledger.try_acquire(session, entry, "new_gw:8", None, clock())
                with lock:
                    results.append(outcome)
            finally:
                session.close()

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(AcquireResult.ACQUIRED) == 1
        assert results.count(AcquireResult.ALREADY_EXISTS) == 7
        session = session_factory()
        assert session.query(DedupLock).count() == 1
        session.close()


class TestStaleness:
    def test_within_ttl(self, catalog, clock):
        entry = catalog.lookup("goal-scored")
        assert not DedupLedger.is_stale(entry, clock() - timedelta(seconds=120), clock())

    def test_past_ttl(self, catalog, clock):
        entry = catalog.lookup("goal-scored")
        assert DedupLedger.is_stale(entry, clock() - timedelta(seconds=121), clock())

    def test_zero_ttl_never_expires(self, catalog, clock):
        entry = catalog.lookup("goal-scored").model_copy(
            update={'dedupe': catalog.lookup("goal-scored").dedupe.model_copy(update={'ttl_seconds': 0})}
        )
        assert not DedupLedger.is_stale(entry, clock() - timedelta(days=3), clock())

    def test_naive_occurred_at_is_utc(self, catalog, clock):
        entry = catalog.lookup("goal-scored")
        naive = (clock() - timedelta(seconds=10)).replace(tzinfo=None)
        assert not DedupLedger.is_stale(entry, naive, clock())


class TestRecord:
    def test_record_appends_row(self, catalog, session_factory, clock):
        ledger = DedupLedger("staging")
        entry = catalog.lookup("kickoff")
        session = session_factory()
        ledger.record(
            session, entry, "kickoff:5:1", "u1", SendResult.FAILED, clock(),
            error={'status': 500}, targeting_summary={'device_count': 1},
        )
        session.close()

        session = session_factory()
        row = session.query(SendLogEntry).one()
        assert row.environment == "staging"
        assert row.result == "failed"
        assert row.error == {'status': 500}
        assert row.targeting_summary == {'device_count': 1}
        assert row.payload_summary == {}
        session.close()
