"""
CSV-backed reminder store.

Layout: one row per reminder in ``<DATA_DIR>/reminders.csv``. Rows are never
deleted, only status-transitioned, so the file doubles as an audit trail.

Concurrency: each status transition is a compare-and-set against the expected
prior status, serialized by a lock owned by that reminder id. There is no lock
spanning several reminders; the I/O lock only serializes snapshot writes.
"""

import logging
import os
import threading
import datetime as dt
from typing import Dict, Iterable, List, Optional

from .domain import REMINDER_FIELD_ORDER, Reminder, ReminderStatus, StopScope
from .errors import ReminderStoreError
from .utils import as_utc, read_csv, write_csv

logger = logging.getLogger(__name__)


class ReminderStore:

    FILENAME = 'reminders.csv'

    def __init__(self, data_dir: str):
        self.path = os.path.join(data_dir, self.FILENAME)
        self._records: Dict[str, Reminder] = {}
        self._record_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._io_lock = threading.Lock()
        self._in_flight: set = set()
        self._load()
        logger.info("ReminderStore initialized: %s (%d reminders)", self.path, len(self._records))

    def _load(self):
        try:
            rows = read_csv(self.path)
        except OSError as exc:
            raise ReminderStoreError(f"Cannot load reminders: {exc}") from exc
        for row in rows:
            try:
                reminder = Reminder.from_row(row)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid reminder row %s: %s", row.get('reminder_id'), exc)
                continue
            self._records[reminder.reminder_id] = reminder

    def _persist(self):
        with self._io_lock:
            snapshot = sorted(self._records.values(), key=lambda r: (r.created_at, r.reminder_id))
            try:
                write_csv(self.path, [r.to_row() for r in snapshot], REMINDER_FIELD_ORDER)
            except OSError as exc:
                logger.error("Failed to save reminders: %s", exc, exc_info=True)
                raise ReminderStoreError(f"Cannot save reminders: {exc}") from exc

    def _lock_for(self, reminder_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._record_locks.get(reminder_id)
            if lock is None:
                lock = self._record_locks[reminder_id] = threading.Lock()
            return lock

    # CRUD -------------------------------------------------------------

    def create(self, reminder: Reminder) -> Reminder:
        with self._lock_for(reminder.reminder_id):
            if reminder.reminder_id in self._records:
                raise ReminderStoreError(f"Reminder {reminder.reminder_id} already exists")
            self._records[reminder.reminder_id] = reminder
        self._persist()
        logger.info("Created reminder %s for dossier %s (%s/%s, due %s)",
                    reminder.reminder_id, reminder.case_id, reminder.relance_type,
                    reminder.channel, reminder.due_at.isoformat())
        return reminder

    def get(self, reminder_id: str) -> Optional[Reminder]:
        return self._records.get(reminder_id)

    def list(self, case_id: Optional[str] = None, status: Optional[ReminderStatus] = None) -> List[Reminder]:
        rows = list(self._records.values())
        if case_id is not None:
            rows = [r for r in rows if r.case_id == case_id]
        if status is not None:
            rows = [r for r in rows if r.status is status]
        rows.sort(key=lambda r: (r.due_at, r.reminder_id))
        return rows

    def query_active(self, case_id: str, scope: Optional[StopScope] = None) -> List[Reminder]:
        return [r for r in self.list(case_id, ReminderStatus.PENDING) if r.matches_scope(scope)]

    def query_due(self, now: dt.datetime) -> List[Reminder]:
        return [r for r in self.list(status=ReminderStatus.PENDING) if r.is_due(now)]

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ReminderStatus}
        for reminder in list(self._records.values()):
            counts[reminder.status.value] += 1
        counts['total'] = sum(counts.values())
        return counts

    # transitions ------------------------------------------------------

    def transition(self, reminder_id: str, expected: ReminderStatus, **changes) -> Optional[Reminder]:
        """Apply ``changes`` if the reminder is still in ``expected`` status.

        Returns the new record, or None when the reminder is unknown or another
        writer moved it first.
        """
        with self._lock_for(reminder_id):
            current = self._records.get(reminder_id)
            if current is None:
                logger.warning("Reminder %s not found", reminder_id)
                return None
            if current.status is not expected:
                logger.debug("Reminder %s is %s, expected %s; skipping",
                             reminder_id, current.status.value, expected.value)
                return None
            updated = current.evolve(**changes)
            self._records[reminder_id] = updated
        self._persist()
        return updated

    def claim(self, reminder_id: str) -> Optional[Reminder]:
        """Reserve a pending reminder for one delivery attempt.

        Returns None when it is no longer pending or another tick holds it.
        The claim lives in memory only and does not block cancellation.
        """
        with self._lock_for(reminder_id):
            current = self._records.get(reminder_id)
            if current is None or current.status.terminal or reminder_id in self._in_flight:
                return None
            self._in_flight.add(reminder_id)
            return current

    def release(self, reminder_id: str):
        with self._lock_for(reminder_id):
            self._in_flight.discard(reminder_id)

    def cancel_many(self, ids: Iterable[str], reason: str, now: dt.datetime) -> List[Reminder]:
        now = as_utc(now)
        cancelled = []
        for reminder_id in ids:
            updated = self.transition(
                reminder_id, ReminderStatus.PENDING,
                status=ReminderStatus.CANCELLED, cancel_reason=reason,
                cancelled_at=now, updated_at=now,
            )
            if updated is not None:
                cancelled.append(updated)
        return cancelled

    def mark_sent(self, reminder_id: str, now: dt.datetime) -> Optional[Reminder]:
        now = as_utc(now)
        return self.transition(reminder_id, ReminderStatus.PENDING,
                               status=ReminderStatus.SENT, sent_at=now, updated_at=now)

    def mark_failed(self, reminder_id: str, error: str, now: dt.datetime) -> Optional[Reminder]:
        now = as_utc(now)
        return self.transition(reminder_id, ReminderStatus.PENDING,
                               status=ReminderStatus.FAILED, last_error=error,
                               failed_at=now, updated_at=now)

    def note_delivery_error(self, reminder_id: str, error: str, now: dt.datetime) -> Optional[Reminder]:
        with self._lock_for(reminder_id):
            current = self._records.get(reminder_id)
            if current is None or current.status.terminal:
                return None
            updated = current.evolve(delivery_errors=current.delivery_errors + 1,
                                     last_error=error, updated_at=as_utc(now))
            self._records[reminder_id] = updated
        self._persist()
        return updated
