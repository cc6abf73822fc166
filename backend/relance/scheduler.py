import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import datetime as dt

from .delivery import DeliveryError, DeliveryGateway, OutgoingMessage, PermanentDeliveryError
from .domain import Reminder, ReminderStatus, new_reminder
from .history import RelanceHistory
from .store import ReminderStore
from .utils import as_utc, days_between, format_message

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    now: dt.datetime
    due: List[Reminder] = field(default_factory=list)
    followups: List[Reminder] = field(default_factory=list)

    def count(self, status: ReminderStatus) -> int:
        return sum(1 for r in self.due if r.status is status)

    @property
    def retrying(self) -> int:
        return sum(1 for r in self.due if r.status is ReminderStatus.PENDING)

    def summary(self) -> Dict[str, int]:
        return {
            'due': len(self.due),
            'sent': self.count(ReminderStatus.SENT),
            'failed': self.count(ReminderStatus.FAILED),
            'retrying': self.retrying,
            'skipped': self.count(ReminderStatus.CANCELLED),
            'followups': len(self.followups),
        }


class ReminderScheduler:
    """Delivers due relances. Invoked from outside (cron endpoint); never
    schedules itself."""

    def __init__(self, store: ReminderStore, gateway: DeliveryGateway,
                 history: Optional[RelanceHistory] = None,
                 templates: Optional[Dict[str, str]] = None,
                 sender: str = '', max_relances: int = 5):
        self.store = store
        self.gateway = gateway
        self.history = history
        self.templates = templates or {}
        self.sender = sender
        self.max_relances = max_relances

    def tick(self, now: dt.datetime) -> TickReport:
        now = as_utc(now)
        report = TickReport(now=now)
        for due in self.store.query_due(now):
            reminder = self.store.claim(due.reminder_id)
            if reminder is None:
                # cancelled since the query, or another tick is delivering it
                continue
            try:
                outcome, won = self._deliver(reminder, now)
            finally:
                self.store.release(reminder.reminder_id)
            report.due.append(outcome)
            if won and outcome.status is ReminderStatus.SENT:
                followup = self._schedule_followup(outcome, now)
                if followup is not None:
                    report.followups.append(followup)
        if report.due:
            logger.info("Relance tick at %s: %s", now.isoformat(), report.summary())
        return report

    def render(self, reminder: Reminder, now: dt.datetime) -> OutgoingMessage:
        template = reminder.message or self.templates.get(reminder.relance_type, '')
        body = format_message(template, {
            'dossier_id': reminder.case_id,
            'jours_attente': days_between(reminder.created_at, now),
        })
        subject = reminder.subject or f"Relance - Dossier {reminder.case_id}"
        return OutgoingMessage(
            reminder_id=reminder.reminder_id,
            case_id=reminder.case_id,
            channel=reminder.channel,
            sender=self.sender,
            recipient=reminder.recipient,
            subject=subject,
            body=body,
        )

    def _deliver(self, reminder: Reminder, now: dt.datetime) -> Tuple[Reminder, bool]:
        """Returns the reminder after the attempt and whether this tick's
        transition was the one applied."""
        message = self.render(reminder, now)
        try:
            self.gateway.deliver(reminder, message)
        except PermanentDeliveryError as exc:
            logger.error("Relance %s permanently failed: %s", reminder.reminder_id, exc)
            updated = self.store.mark_failed(reminder.reminder_id, str(exc), now)
            if updated is None:
                logger.warning("Relance %s failed but no longer pending", reminder.reminder_id)
                return self._current(reminder), False
            self._record(updated, message, 'failed', now, {'error': str(exc), 'permanent': True})
            return updated, True
        except DeliveryError as exc:
            logger.warning("Relance %s delivery failed, will retry: %s", reminder.reminder_id, exc)
            updated = self.store.note_delivery_error(reminder.reminder_id, str(exc), now)
            if updated is None:
                return self._current(reminder), False
            self._record(updated, message, 'failed', now, {'error': str(exc), 'permanent': False})
            return updated, True

        updated = self.store.mark_sent(reminder.reminder_id, now)
        if updated is None:
            # stopped while the message was in flight; the cancellation stands
            logger.warning("Relance %s delivered but no longer pending", reminder.reminder_id)
            return self._current(reminder), False
        self._record(updated, message, 'sent', now, {'attempt': updated.attempt})
        return updated, True

    def _current(self, reminder: Reminder) -> Reminder:
        return self.store.get(reminder.reminder_id) or reminder

    def _schedule_followup(self, sent: Reminder, now: dt.datetime) -> Optional[Reminder]:
        if not sent.interval_days or sent.attempt >= self.max_relances:
            return None
        followup = new_reminder(
            case_id=sent.case_id,
            relance_type=sent.relance_type,
            channel=sent.channel,
            recipient=sent.recipient,
            due_at=now + dt.timedelta(days=sent.interval_days),
            now=now,
            subject=sent.subject,
            message=sent.message,
            stop_scope=sent.stop_scope,
            attempt=sent.attempt + 1,
            interval_days=sent.interval_days,
        )
        return self.store.create(followup)

    def _record(self, reminder: Reminder, message: OutgoingMessage, status: str,
                now: dt.datetime, details: Dict):
        if self.history is None:
            return
        self.history.record(
            dossier_id=reminder.case_id,
            relance_type=reminder.relance_type,
            channel=reminder.channel,
            recipient=message.recipient,
            subject=message.subject,
            content=message.body,
            status=status,
            sent_at=now.isoformat(),
            details={'reminder_id': reminder.reminder_id, **details},
        )
