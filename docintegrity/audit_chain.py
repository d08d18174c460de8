"""
Global tamper-evident audit chain.

Each entry links to its predecessor:

    entry[n].previous_hash == entry[n-1].current_hash
    entry[n].current_hash  == sha256(canonical_json(hashed fields of entry[n]))

The first entry links to GENESIS_HASH (64 zeros). Editing, inserting,
reordering or deleting any entry breaks the chain at or after that point,
and ``verify_chain`` reports the first sequence number that fails.

The head pointer (last sequence number and hash) is loaded from storage on
construction and is only advanced after a commit. Appends are serialized
by a process lock, a ``BEGIN IMMEDIATE`` transaction and the primary key on
``sequence_number``. If the persisted head ever disagrees with the pointer,
the append is refused with ChainStateError rather than re-based.
"""

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Any, ContextManager, Dict, Iterator, List, Optional, Tuple, Union

from .db import AuditStore, Database
from .errors import ChainBrokenError, ChainStateError
from .hashing import GENESIS_HASH, record_hash
from .logging_config import integrity_log
from .models import AuditAction, AuditEvent, AuditEventDraft, hashed_audit_fields
from .util import constant_time_compare, utc_iso, utc_now

logger = logging.getLogger("docintegrity.audit")


@dataclass
class ChainVerification:
    """Outcome of verifying a range of the audit chain."""
    valid: bool
    from_seq: int
    to_seq: Optional[int]
    entries: int = 0
    broken_at: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditAppender:
    """
    Appends entries inside one open chain transaction.

    Obtained from ``AuditChain.transaction()``; not usable after the block
    exits.
    """

    def __init__(self, store: AuditStore, conn, sequence_number: int, previous_hash: str):
        self.store = store
        self.conn = conn
        self._sequence = sequence_number
        self._previous = previous_hash
        self.events: List[AuditEvent] = []

    def append(self, draft: AuditEventDraft) -> AuditEvent:
        """Link, hash and insert one entry."""
        sequence_number = self._sequence + 1
        timestamp = utc_iso(utc_now())
        fields = hashed_audit_fields(
            action=draft.action.value,
            actor=draft.actor,
            resource_type=draft.resource_type,
            resource_id=draft.resource_id,
            severity=draft.severity.value,
            result=draft.result.value,
            timestamp=timestamp,
            sequence_number=sequence_number,
            previous_hash=self._previous,
            metadata=draft.metadata,
        )
        event = AuditEvent(
            sequence_number=sequence_number,
            previous_hash=self._previous,
            current_hash=record_hash(fields),
            action=draft.action,
            actor=draft.actor,
            resource_type=draft.resource_type,
            resource_id=draft.resource_id,
            severity=draft.severity,
            result=draft.result,
            timestamp=timestamp,
            metadata=dict(draft.metadata),
        )
        self.store.insert(event, self.conn)

        self._sequence = event.sequence_number
        self._previous = event.current_hash
        self.events.append(event)
        return event


class AuditChain:
    """
    The single writer of the audit log.

    ``lock`` defaults to a process-wide lock per chain instance. Passing any
    other context manager (e.g. ``contextlib.nullcontext()``) removes the
    in-process serialization; the storage head check then refuses the
    writes that would fork the chain.
    """

    def __init__(
        self,
        db: Database,
        store: Optional[AuditStore] = None,
        lock: Optional[ContextManager] = None
    ):
        self.db = db
        self.store = store or AuditStore(db)
        self._lock = lock if lock is not None else threading.Lock()
        head = self.store.head()
        self._sequence, self._hash = head if head else (0, GENESIS_HASH)
        logger.debug("Audit chain head recovered at sequence %d", self._sequence)

    @property
    def head(self) -> Tuple[int, str]:
        """(sequence_number, current_hash) of the last committed entry."""
        return self._head()

    def _head(self) -> Tuple[int, str]:
        return self._sequence, self._hash

    @contextmanager
    def transaction(self) -> Iterator[AuditAppender]:
        """
        Open a database transaction positioned at the chain head.

        Everything written on the yielded appender's connection, audit
        entries or otherwise, commits or rolls back together. The head
        pointer advances only after commit. Must be the outermost
        transaction on this thread.

        Raises:
            ChainStateError: persisted head differs from the in-memory head
        """
        if self.db.connection().in_transaction:
            raise RuntimeError("Audit transaction must not be nested in another transaction")

        with self._lock:
            sequence_number, current_hash = self._head()
            with self.db.transaction() as conn:
                persisted = self.store.head(conn) or (0, GENESIS_HASH)
                if persisted[0] != sequence_number or not constant_time_compare(persisted[1], current_hash):
                    logger.critical(
                        "Audit head diverged: memory at %d, storage at %d", sequence_number, persisted[0]
                    )
                    raise ChainStateError(
                        f"Audit chain head is at sequence {persisted[0]} in storage "
                        f"but {sequence_number} in memory"
                    )
                appender = AuditAppender(self.store, conn, sequence_number, current_hash)
                yield appender

            if appender.events:
                last = appender.events[-1]
                self._sequence, self._hash = last.sequence_number, last.current_hash

    def append(self, draft: AuditEventDraft) -> AuditEvent:
        """Append a single entry in its own transaction."""
        with self.transaction() as tx:
            return tx.append(draft)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_chain(self, from_seq: int = 1, to_seq: Optional[int] = None) -> ChainVerification:
        """
        Verify linkage, hashes and contiguity over [from_seq, to_seq].

        Reads entries in sequence order. For from_seq > 1 the stored
        predecessor supplies the expected previous_hash. When verifying up
        to the head, entries missing from the tail are reported too.
        """
        if from_seq < 1:
            raise ValueError("from_seq must be >= 1")
        if to_seq is not None and to_seq < from_seq:
            raise ValueError("to_seq must be >= from_seq")

        if from_seq == 1:
            expected_previous = GENESIS_HASH
        else:
            predecessor = self.store.rows(from_seq - 1, from_seq - 1)
            if not predecessor:
                return self._broken(from_seq, to_seq, 0, from_seq - 1, "predecessor entry missing")
            expected_previous = predecessor[0]["current_hash"]

        expected_seq = from_seq
        checked = 0
        for row in self.store.rows(from_seq, to_seq):
            seq = row["sequence_number"]
            if seq != expected_seq:
                return self._broken(from_seq, to_seq, checked, expected_seq, "entry missing")
            if not constant_time_compare(row["previous_hash"], expected_previous):
                return self._broken(from_seq, to_seq, checked, seq, "previous_hash does not link")
            recomputed = _recompute(row)
            if recomputed is None or not constant_time_compare(recomputed, row["current_hash"]):
                return self._broken(from_seq, to_seq, checked, seq, "current_hash does not match entry")
            expected_previous = row["current_hash"]
            expected_seq += 1
            checked += 1

        # sequence numbers past the head were never written
        last_expected = self._head()[0]
        if to_seq is not None:
            last_expected = min(to_seq, last_expected)
        if expected_seq <= last_expected:
            return self._broken(from_seq, to_seq, checked, expected_seq, "entry missing")

        integrity_log.chain_verified(from_seq, expected_seq - 1, checked)
        return ChainVerification(valid=True, from_seq=from_seq, to_seq=to_seq, entries=checked)

    def verify_chain_or_raise(self, from_seq: int = 1, to_seq: Optional[int] = None) -> ChainVerification:
        """
        Raises:
            ChainBrokenError: at the first failing sequence number
        """
        result = self.verify_chain(from_seq, to_seq)
        if not result.valid:
            raise ChainBrokenError(result.broken_at, f"Audit hash chain broken at sequence {result.broken_at}: {result.reason}")
        return result

    def _broken(self, from_seq, to_seq, checked, broken_at, reason) -> ChainVerification:
        integrity_log.chain_broken(broken_at, reason)
        return ChainVerification(
            valid=False, from_seq=from_seq, to_seq=to_seq, entries=checked, broken_at=broken_at, reason=reason
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(
        self,
        actor: Optional[str] = None,
        resource_id: Optional[str] = None,
        action: Optional[Union[AuditAction, str]] = None,
        limit: int = 1000
    ) -> List[AuditEvent]:
        if isinstance(action, AuditAction):
            action = action.value
        return self.store.query(actor=actor, resource_id=resource_id, action=action, limit=limit)

    def export(self, from_seq: int = 1, to_seq: Optional[int] = None) -> List[Dict[str, Any]]:
        """Entries as JSON-ready dicts, in sequence order."""
        return [event.model_dump(mode="json") for event in self.store.range(from_seq, to_seq)]


def _recompute(row) -> Optional[str]:
    try:
        metadata = json.loads(row["metadata_json"])
    except ValueError:
        return None
    if not isinstance(metadata, dict):
        return None
    fields = hashed_audit_fields(
        action=row["action"],
        actor=row["actor"],
        resource_type=row["resource_type"],
        resource_id=row["resource_id"],
        severity=row["severity"],
        result=row["result"],
        timestamp=row["timestamp"],
        sequence_number=row["sequence_number"],
        previous_hash=row["previous_hash"],
        metadata=metadata,
    )
    try:
        return record_hash(fields)
    except (TypeError, ValueError):
        return None
