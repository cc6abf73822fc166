from __future__ import annotations

import datetime as dt
import threading

import pytest

from relance.domain import REMINDER_FIELD_ORDER, ReminderStatus, StopScope
from relance.errors import ReminderStoreError
from relance.store import ReminderStore
from relance.utils import read_csv, write_csv

from conftest import NOW


def test_create_persists_and_reloads(services, make_reminder, config) -> None:
    created = make_reminder(document_type="rapport_expert", interval_days=2)

    reloaded = ReminderStore(config.DATA_DIR).get(created.reminder_id)

    assert reloaded == created
    assert reloaded.stop_scope == StopScope("rapport_expert", None)
    assert reloaded.due_at.tzinfo is not None


def test_duplicate_id_rejected(services, make_reminder) -> None:
    created = make_reminder()
    with pytest.raises(ReminderStoreError):
        services.store.create(created)


def test_invalid_rows_are_skipped(config, make_reminder) -> None:
    make_reminder()
    with open(ReminderStore(config.DATA_DIR).path, "a", encoding="utf-8") as f:
        f.write("broken,row\n")

    store = ReminderStore(config.DATA_DIR)

    assert len(store.list()) == 1


@pytest.mark.parametrize("column", ["due_at", "created_at"])
def test_rows_without_required_timestamps_are_skipped(config, make_reminder, column) -> None:
    keep = make_reminder()
    blank = make_reminder()
    path = ReminderStore(config.DATA_DIR).path
    rows = read_csv(path)
    for row in rows:
        if row["reminder_id"] == blank.reminder_id:
            row[column] = ""
    write_csv(path, rows, REMINDER_FIELD_ORDER)

    store = ReminderStore(config.DATA_DIR)

    assert [r.reminder_id for r in store.list()] == [keep.reminder_id]
    assert [r.reminder_id for r in store.query_due(NOW)] == [keep.reminder_id]


def test_query_active_filters_by_case_and_status(services, make_reminder) -> None:
    first = make_reminder("DOS-001")
    make_reminder("DOS-002")
    sent = make_reminder("DOS-001")
    services.store.mark_sent(sent.reminder_id, NOW)

    active = services.store.query_active("DOS-001")

    assert [r.reminder_id for r in active] == [first.reminder_id]


def test_query_due_uses_due_at(services, make_reminder) -> None:
    due = make_reminder(due_in_days=0)
    make_reminder(due_in_days=3)

    assert [r.reminder_id for r in services.store.query_due(NOW)] == [due.reminder_id]
    assert len(services.store.query_due(NOW + dt.timedelta(days=3))) == 2


def test_terminal_reminders_are_not_transitioned(services, make_reminder) -> None:
    reminder = make_reminder()
    sent = services.store.mark_sent(reminder.reminder_id, NOW)

    assert sent.status is ReminderStatus.SENT
    assert services.store.cancel_many([reminder.reminder_id], "document_uploaded", NOW) == []
    assert services.store.mark_failed(reminder.reminder_id, "boom", NOW) is None
    assert services.store.note_delivery_error(reminder.reminder_id, "boom", NOW) is None
    assert services.store.get(reminder.reminder_id) == sent


def test_unknown_reminder_transition_returns_none(services) -> None:
    assert services.store.mark_sent("rel_missing", NOW) is None


def test_stats_counts_statuses(services, make_reminder) -> None:
    make_reminder()
    cancelled = make_reminder()
    services.store.cancel_many([cancelled.reminder_id], "manual", NOW)

    stats = services.store.stats()

    assert stats["pending"] == 1
    assert stats["cancelled"] == 1
    assert stats["total"] == 2


def test_concurrent_send_and_cancel_have_one_winner(services, make_reminder) -> None:
    reminders = [make_reminder() for _ in range(20)]
    ids = [r.reminder_id for r in reminders]
    barrier = threading.Barrier(2)

    def send_all() -> None:
        barrier.wait()
        for reminder_id in ids:
            services.store.mark_sent(reminder_id, NOW)

    def cancel_all() -> None:
        barrier.wait()
        services.store.cancel_many(reversed(ids), "document_uploaded", NOW)

    threads = [threading.Thread(target=send_all), threading.Thread(target=cancel_all)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    for reminder_id in ids:
        final = services.store.get(reminder_id)
        assert final.status in (ReminderStatus.SENT, ReminderStatus.CANCELLED)
        if final.status is ReminderStatus.SENT:
            assert final.cancelled_at is None
        else:
            assert final.sent_at is None


def test_claim_reserves_reminder_until_released(services, make_reminder) -> None:
    reminder = make_reminder()

    assert services.store.claim(reminder.reminder_id) == reminder
    assert services.store.claim(reminder.reminder_id) is None

    services.store.release(reminder.reminder_id)
    assert services.store.claim(reminder.reminder_id) == reminder


def test_terminal_reminder_cannot_be_claimed(services, make_reminder) -> None:
    reminder = make_reminder()
    services.store.cancel_many([reminder.reminder_id], "document_uploaded", NOW)

    assert services.store.claim(reminder.reminder_id) is None
    assert services.store.claim("rel_missing") is None
