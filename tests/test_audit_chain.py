"""
Global audit hash chain: linkage, tamper detection, restart recovery and
serialization of concurrent appends.
"""

import contextlib
import sqlite3
import tempfile
import threading
import unittest

from docintegrity import (
    AuditAction,
    AuditChain,
    AuditEventDraft,
    AuditResult,
    ChainBrokenError,
    ChainStateError,
    GENESIS_HASH,
    Severity,
)
from docintegrity.audit_chain import AuditAppender
from docintegrity.hashing import record_hash

from support import open_db


def draft(actor="alice", resource_id="doc-1", action=AuditAction.DOCUMENT_UPDATE, **metadata):
    return AuditEventDraft(action=action, actor=actor, resource_id=resource_id, metadata=metadata)


class AuditChainTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.db = open_db(self._tmp.name)
        self.chain = AuditChain(self.db)

    def tearDown(self):
        self.db.close()
        self._tmp.cleanup()

    def append_n(self, n, chain=None):
        chain = chain or self.chain
        return [chain.append(draft(index=i)) for i in range(1, n + 1)]

    def tamper(self, sql, params):
        with self.db.transaction() as conn:
            conn.execute(sql, params)


class TestAppend(AuditChainTestCase):

    def test_genesis_link(self):
        e1 = self.chain.append(draft())
        self.assertEqual(e1.sequence_number, 1)
        self.assertEqual(e1.previous_hash, GENESIS_HASH)

    def test_entries_link(self):
        events = self.append_n(3)
        self.assertEqual([e.sequence_number for e in events], [1, 2, 3])
        self.assertEqual(events[1].previous_hash, events[0].current_hash)
        self.assertEqual(events[2].previous_hash, events[1].current_hash)
        self.assertEqual(self.chain.head, (3, events[2].current_hash))

    def test_current_hash_is_function_of_fields(self):
        event = self.chain.append(draft(size=12))
        self.assertEqual(event.current_hash, record_hash(event.hashed_fields()))

    def test_hash_covers_severity_and_result(self):
        event = self.chain.append(AuditEventDraft(
            action=AuditAction.SECURITY_VIOLATION, actor="mallory", resource_id="doc-1",
            severity=Severity.MEDIUM, result=AuditResult.BLOCKED,
        ))
        fields = event.hashed_fields()
        self.assertEqual(fields["severity"], "medium")
        self.assertEqual(fields["result"], "blocked")

    def test_failed_transaction_appends_nothing(self):
        with self.assertRaises(RuntimeError):
            with self.chain.transaction() as tx:
                tx.append(draft())
                raise RuntimeError("boom")
        self.assertEqual(self.chain.head, (0, GENESIS_HASH))
        self.assertEqual(self.db.stats()["audit_log_count"], 0)
        self.assertEqual(self.chain.append(draft()).sequence_number, 1)

    def test_multiple_entries_in_one_transaction(self):
        with self.chain.transaction() as tx:
            a = tx.append(draft())
            b = tx.append(draft())
        self.assertEqual(b.previous_hash, a.current_hash)
        self.assertEqual(self.chain.head[0], 2)

    def test_refuses_to_nest_in_open_transaction(self):
        with self.assertRaises(RuntimeError):
            with self.db.transaction():
                self.chain.append(draft())

    def test_query_and_export(self):
        self.chain.append(draft(actor="alice"))
        self.chain.append(draft(actor="bob", action=AuditAction.DOCUMENT_SIGN))
        self.chain.append(draft(actor="bob", resource_id="doc-2"))

        self.assertEqual(len(self.chain.query(actor="bob")), 2)
        self.assertEqual(len(self.chain.query(action=AuditAction.DOCUMENT_SIGN)), 1)
        self.assertEqual(len(self.chain.query(actor="bob", resource_id="doc-2")), 1)

        exported = self.chain.export()
        self.assertEqual([e["sequence_number"] for e in exported], [1, 2, 3])
        self.assertEqual(exported[1]["action"], "document.sign")


class TestVerifyChain(AuditChainTestCase):

    def test_intact_chain(self):
        self.append_n(5)
        result = self.chain.verify_chain()
        self.assertTrue(result.valid)
        self.assertEqual(result.entries, 5)
        self.assertIsNone(result.broken_at)

    def test_empty_chain_is_valid(self):
        self.assertTrue(self.chain.verify_chain().valid)

    def test_corrupt_previous_hash_at_k(self):
        for k in (1, 3, 5):
            with self.subTest(k=k):
                self.db.reset()
                self.chain = AuditChain(self.db)
                self.append_n(5)
                self.tamper("UPDATE audit_log SET previous_hash=? WHERE sequence_number=?", ("a" * 64, k))
                result = self.chain.verify_chain()
                self.assertFalse(result.valid)
                self.assertEqual(result.broken_at, k)

    def test_corrupt_metadata(self):
        self.append_n(4)
        self.tamper("UPDATE audit_log SET metadata_json=? WHERE sequence_number=2", ('{"index": 99}',))
        self.assertEqual(self.chain.verify_chain().broken_at, 2)

    def test_corrupt_severity(self):
        self.append_n(3)
        self.tamper("UPDATE audit_log SET severity='critical' WHERE sequence_number=3", ())
        self.assertEqual(self.chain.verify_chain().broken_at, 3)

    def test_unreadable_columns_reported_as_break(self):
        self.append_n(3)
        self.tamper("UPDATE audit_log SET action='bogus', metadata_json='not json' WHERE sequence_number=2", ())
        self.assertEqual(self.chain.verify_chain().broken_at, 2)

    def test_deleted_entry(self):
        self.append_n(5)
        self.tamper("DELETE FROM audit_log WHERE sequence_number=3", ())
        self.assertEqual(self.chain.verify_chain().broken_at, 3)

    def test_truncated_tail(self):
        self.append_n(5)
        self.tamper("DELETE FROM audit_log WHERE sequence_number=5", ())
        result = self.chain.verify_chain()
        self.assertFalse(result.valid)
        self.assertEqual(result.broken_at, 5)

    def test_partial_range(self):
        self.append_n(6)
        result = self.chain.verify_chain(3, 5)
        self.assertTrue(result.valid)
        self.assertEqual(result.entries, 3)

    def test_partial_range_detects_break(self):
        self.append_n(6)
        self.tamper("UPDATE audit_log SET previous_hash=? WHERE sequence_number=4", ("b" * 64,))
        self.assertEqual(self.chain.verify_chain(3, 5).broken_at, 4)

    def test_range_past_head(self):
        self.append_n(3)
        result = self.chain.verify_chain(1, 10)
        self.assertTrue(result.valid)
        self.assertEqual(result.entries, 3)
        self.chain.verify_chain_or_raise(2, 10)

    def test_range_on_empty_chain(self):
        result = self.chain.verify_chain(1, 5)
        self.assertTrue(result.valid)
        self.assertEqual(result.entries, 0)

    def test_range_past_head_detects_truncated_tail(self):
        self.append_n(5)
        self.tamper("DELETE FROM audit_log WHERE sequence_number >= 4", ())
        self.assertEqual(self.chain.verify_chain(1, 10).broken_at, 4)

    def test_invalid_range(self):
        with self.assertRaises(ValueError):
            self.chain.verify_chain(0)
        with self.assertRaises(ValueError):
            self.chain.verify_chain(5, 2)

    def test_verify_or_raise(self):
        self.append_n(3)
        self.chain.verify_chain_or_raise()
        self.tamper("UPDATE audit_log SET actor='mallory' WHERE sequence_number=2", ())
        with self.assertRaises(ChainBrokenError) as cm:
            self.chain.verify_chain_or_raise()
        self.assertEqual(cm.exception.broken_at, 2)


class TestRestartRecovery(AuditChainTestCase):

    def test_head_recovered_from_storage(self):
        events = self.append_n(3)
        restarted = AuditChain(self.db)
        self.assertEqual(restarted.head, (3, events[-1].current_hash))

        e4 = restarted.append(draft())
        self.assertEqual(e4.sequence_number, 4)
        self.assertEqual(e4.previous_hash, events[-1].current_hash)
        self.assertTrue(restarted.verify_chain().valid)

    def test_stale_pointer_is_refused(self):
        other = AuditChain(self.db)
        self.chain.append(draft())
        with self.assertRaises(ChainStateError):
            other.append(draft())
        self.assertEqual(self.db.stats()["audit_log_count"], 1)
        self.assertTrue(self.chain.verify_chain().valid)


class RacingAuditChain(AuditChain):
    """No process lock, and every writer reads the head before any of them writes."""

    def __init__(self, db, barrier):
        super().__init__(db, lock=contextlib.nullcontext())
        self._barrier = barrier

    def _head(self):
        head = super()._head()
        self._barrier.wait(timeout=10)
        return head


class TestConcurrency(AuditChainTestCase):

    def test_serialized_appends_form_one_chain(self):
        threads_n, per_thread = 8, 10
        errors = []

        def worker(t):
            try:
                for i in range(per_thread):
                    self.chain.append(draft(actor=f"user-{t}", resource_id=f"doc-{i}"))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(t,)) for t in range(threads_n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        sequence = [e["sequence_number"] for e in self.chain.export()]
        self.assertEqual(sequence, list(range(1, threads_n * per_thread + 1)))
        self.assertTrue(self.chain.verify_chain().valid)

    def test_unserialized_appends_collide(self):
        writers = 4
        racing = RacingAuditChain(self.db, threading.Barrier(writers))
        outcomes = []
        outcomes_lock = threading.Lock()

        def worker(t):
            try:
                racing.append(draft(actor=f"user-{t}"))
                result = "ok"
            except ChainStateError:
                result = "diverged"
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker, args=(t,)) for t in range(writers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # every writer computed entry 1 from the same head; only one can land
        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(outcomes.count("diverged"), writers - 1)
        self.assertTrue(AuditChain(self.db).verify_chain().valid)

    def test_forked_entries_cannot_both_persist(self):
        with self.db.transaction() as conn:
            AuditAppender(self.chain.store, conn, 0, GENESIS_HASH).append(draft(actor="a"))
        with self.assertRaises(sqlite3.IntegrityError):
            with self.db.transaction() as conn:
                AuditAppender(self.chain.store, conn, 0, GENESIS_HASH).append(draft(actor="b"))


if __name__ == "__main__":
    unittest.main()
