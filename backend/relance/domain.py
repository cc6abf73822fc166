import re
import datetime as dt
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional

from .errors import ValidationError
from .utils import as_utc, parse_iso, to_iso, uid

CASE_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$')

RELANCE_TYPES = ('client', 'assurance', 'expert')
CHANNELS = ('email', 'sms')


class ReminderStatus(str, Enum):
    PENDING = 'pending'
    SENT = 'sent'
    CANCELLED = 'cancelled'
    FAILED = 'failed'

    @property
    def terminal(self) -> bool:
        return self is not ReminderStatus.PENDING


@dataclass(frozen=True)
class StopScope:
    document_type: Optional[str] = None
    document_id: Optional[str] = None

    @classmethod
    def build(cls, document_type: Optional[str] = None, document_id: Optional[str] = None) -> Optional['StopScope']:
        document_type = (document_type or '').strip() or None
        document_id = (document_id or '').strip() or None
        if document_type is None and document_id is None:
            return None
        return cls(document_type, document_id)

    def is_satisfied_by(self, event_scope: 'StopScope') -> bool:
        # each attribute this reminder waits for must be carried by the event
        if self.document_type is not None and self.document_type != event_scope.document_type:
            return False
        if self.document_id is not None and self.document_id != event_scope.document_id:
            return False
        return True


@dataclass(frozen=True)
class Reminder:
    """One follow-up for a dossier. Instances are never mutated; the store
    swaps in a new copy on every transition."""

    reminder_id: str
    case_id: str
    relance_type: str
    channel: str
    recipient: str
    due_at: dt.datetime
    created_at: dt.datetime
    updated_at: dt.datetime
    status: ReminderStatus = ReminderStatus.PENDING
    subject: str = ''
    message: str = ''
    stop_scope: Optional[StopScope] = None
    attempt: int = 1
    interval_days: Optional[int] = None
    delivery_errors: int = 0
    last_error: str = ''
    cancel_reason: str = ''
    cancelled_at: Optional[dt.datetime] = None
    sent_at: Optional[dt.datetime] = None
    failed_at: Optional[dt.datetime] = None

    def is_due(self, now: dt.datetime) -> bool:
        return self.status is ReminderStatus.PENDING and as_utc(self.due_at) <= as_utc(now)

    def matches_scope(self, event_scope: Optional[StopScope]) -> bool:
        if event_scope is None or self.stop_scope is None:
            return True
        return self.stop_scope.is_satisfied_by(event_scope)

    def evolve(self, **changes) -> 'Reminder':
        return replace(self, **changes)

    def to_row(self) -> Dict[str, str]:
        scope = self.stop_scope or StopScope()
        return {
            'reminder_id': self.reminder_id,
            'case_id': self.case_id,
            'relance_type': self.relance_type,
            'channel': self.channel,
            'recipient': self.recipient,
            'subject': self.subject,
            'message': self.message,
            'status': self.status.value,
            'document_type': scope.document_type or '',
            'document_id': scope.document_id or '',
            'attempt': str(self.attempt),
            'interval_days': '' if self.interval_days is None else str(self.interval_days),
            'delivery_errors': str(self.delivery_errors),
            'last_error': self.last_error,
            'cancel_reason': self.cancel_reason,
            'due_at': to_iso(self.due_at),
            'created_at': to_iso(self.created_at),
            'updated_at': to_iso(self.updated_at),
            'cancelled_at': to_iso(self.cancelled_at),
            'sent_at': to_iso(self.sent_at),
            'failed_at': to_iso(self.failed_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, str]) -> 'Reminder':
        interval = (row.get('interval_days') or '').strip()
        due_at = parse_iso(row['due_at'])
        created_at = parse_iso(row['created_at'])
        if due_at is None or created_at is None:
            raise ValueError("due_at and created_at are required")
        return cls(
            reminder_id=row['reminder_id'],
            case_id=row['case_id'],
            relance_type=row.get('relance_type') or 'expert',
            channel=row.get('channel') or 'email',
            recipient=row.get('recipient') or '',
            subject=row.get('subject') or '',
            message=row.get('message') or '',
            status=ReminderStatus(row['status']),
            stop_scope=StopScope.build(row.get('document_type'), row.get('document_id')),
            attempt=int(row.get('attempt') or 1),
            interval_days=int(interval) if interval else None,
            delivery_errors=int(row.get('delivery_errors') or 0),
            last_error=row.get('last_error') or '',
            cancel_reason=row.get('cancel_reason') or '',
            due_at=due_at,
            created_at=created_at,
            updated_at=parse_iso(row.get('updated_at')) or created_at,
            cancelled_at=parse_iso(row.get('cancelled_at')),
            sent_at=parse_iso(row.get('sent_at')),
            failed_at=parse_iso(row.get('failed_at')),
        )


REMINDER_FIELD_ORDER = [
    'reminder_id', 'case_id', 'relance_type', 'channel', 'recipient', 'subject', 'message',
    'status', 'document_type', 'document_id', 'attempt', 'interval_days', 'delivery_errors',
    'last_error', 'cancel_reason', 'due_at', 'created_at', 'updated_at', 'cancelled_at',
    'sent_at', 'failed_at',
]


@dataclass(frozen=True)
class StopEvent:
    case_id: str
    reason: str
    scope: Optional[StopScope] = None


def validate_case_id(case_id) -> str:
    if case_id is None or (isinstance(case_id, str) and not case_id.strip()):
        raise ValidationError("dossier_id requis")
    if not isinstance(case_id, str) or not CASE_ID_PATTERN.match(case_id.strip()):
        raise ValidationError("dossier_id invalide")
    return case_id.strip()


def new_reminder(
    case_id: str,
    relance_type: str,
    channel: str,
    recipient: str,
    due_at: dt.datetime,
    now: dt.datetime,
    subject: str = '',
    message: str = '',
    stop_scope: Optional[StopScope] = None,
    attempt: int = 1,
    interval_days: Optional[int] = None,
) -> Reminder:
    case_id = validate_case_id(case_id)
    if relance_type not in RELANCE_TYPES:
        raise ValidationError(f"relance_type invalide: {relance_type}")
    if channel not in CHANNELS:
        raise ValidationError(f"canal invalide: {channel}")
    if not (recipient or '').strip():
        raise ValidationError("destinataire requis")
    if interval_days is not None and interval_days < 1:
        raise ValidationError("interval_days doit être positif")
    return Reminder(
        reminder_id=uid('rel'),
        case_id=case_id,
        relance_type=relance_type,
        channel=channel,
        recipient=recipient.strip(),
        subject=subject or '',
        message=message or '',
        due_at=as_utc(due_at),
        created_at=as_utc(now),
        updated_at=as_utc(now),
        stop_scope=stop_scope,
        attempt=attempt,
        interval_days=interval_days,
    )
