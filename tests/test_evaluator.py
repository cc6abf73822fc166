from __future__ import annotations

import datetime as dt

import pytest

from relance.domain import ReminderStatus, StopEvent, StopScope
from relance.errors import ValidationError
from relance.evaluator import StopConditionEvaluator

from conftest import NOW


def statuses(services, *reminders):
    return [services.store.get(r.reminder_id).status for r in reminders]


def test_stop_without_scope_cancels_every_pending_reminder(services, make_reminder) -> None:
    broad = make_reminder()
    scoped = make_reminder(document_type="pv")
    other_case = make_reminder("DOS-002")

    cancelled = services.evaluator.stop("DOS-001", "document_uploaded")

    assert cancelled == 2
    assert statuses(services, broad, scoped, other_case) == [
        ReminderStatus.CANCELLED,
        ReminderStatus.CANCELLED,
        ReminderStatus.PENDING,
    ]


def test_scoped_stop_cancels_matching_and_unscoped_only(services, make_reminder) -> None:
    broad = make_reminder()
    same_type = make_reminder(document_type="rapport_expert")
    other_type = make_reminder(document_type="pv")
    same_doc = make_reminder(document_type="rapport_expert", document_id="doc-1")
    other_doc = make_reminder(document_type="rapport_expert", document_id="doc-2")

    cancelled = services.evaluator.stop(
        "DOS-001", "document_uploaded", StopScope("rapport_expert", "doc-1")
    )

    assert cancelled == 3
    assert statuses(services, broad, same_type, other_type, same_doc, other_doc) == [
        ReminderStatus.CANCELLED,
        ReminderStatus.CANCELLED,
        ReminderStatus.PENDING,
        ReminderStatus.CANCELLED,
        ReminderStatus.PENDING,
    ]


def test_event_without_document_id_does_not_satisfy_id_bound_reminder(services, make_reminder) -> None:
    bound = make_reminder(document_type="pv", document_id="doc-9")

    assert services.evaluator.stop("DOS-001", "document_uploaded", StopScope("pv")) == 0
    assert statuses(services, bound) == [ReminderStatus.PENDING]


def test_stop_is_idempotent(services, make_reminder) -> None:
    make_reminder()
    make_reminder(document_type="pv")

    assert services.evaluator.stop("DOS-001", "document_uploaded") == 2
    assert services.evaluator.stop("DOS-001", "document_uploaded") == 0


def test_stop_records_reason_and_timestamp(services, make_reminder) -> None:
    reminder = make_reminder()

    services.evaluator.stop("DOS-001", "document_uploaded")

    cancelled = services.store.get(reminder.reminder_id)
    assert cancelled.cancel_reason == "document_uploaded"
    assert cancelled.cancelled_at == NOW


def test_sent_and_failed_reminders_are_left_alone(services, make_reminder) -> None:
    sent = make_reminder()
    failed = make_reminder()
    services.store.mark_sent(sent.reminder_id, NOW)
    services.store.mark_failed(failed.reminder_id, "numéro invalide", NOW)

    assert services.evaluator.stop("DOS-001", "document_uploaded") == 0
    assert statuses(services, sent, failed) == [ReminderStatus.SENT, ReminderStatus.FAILED]


def test_stop_with_no_reminders_returns_zero(services) -> None:
    assert services.evaluator.stop("DOS-404", "document_uploaded") == 0


@pytest.mark.parametrize("case_id", [None, "", "   ", 42, "bad id", "x" * 200])
def test_invalid_case_id_raises(services, case_id) -> None:
    with pytest.raises(ValidationError):
        services.evaluator.stop(case_id, "document_uploaded")


def test_missing_reason_raises(services) -> None:
    with pytest.raises(ValidationError):
        services.evaluator.stop("DOS-001", "")


def test_stop_writes_history_entry(services, make_reminder) -> None:
    make_reminder()

    services.evaluator.evaluate(
        StopEvent("DOS-001", "document_uploaded", StopScope("rapport_expert", "doc-1")),
        stopped_by="user-1",
    )

    [entry] = services.history.list(dossier_id="DOS-001")
    assert entry.relance_type == "auto_stop"
    assert entry.status == "cancelled"
    assert entry.sent_by == "user-1"
    assert entry.content == "Raison: document_uploaded - Type document: rapport_expert"
    assert entry.details["cancelled"] == 1
    assert entry.details["document_id"] == "doc-1"


def test_naive_clock_is_read_as_utc(services, make_reminder) -> None:
    reminder = make_reminder()
    evaluator = StopConditionEvaluator(
        services.store, services.history, clock=lambda: dt.datetime(2025, 3, 10, 9, 0)
    )

    evaluator.stop("DOS-001", "document_uploaded")

    assert services.store.get(reminder.reminder_id).cancelled_at == NOW
    [entry] = services.history.list(dossier_id="DOS-001")
    assert entry.sent_at.endswith("+00:00")
    assert entry.details["stopped_at"] == NOW.isoformat()
