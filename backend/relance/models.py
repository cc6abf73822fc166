from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Literal
import datetime as dt

from .domain import Reminder
from .history import HistoryEntry

class StopRelanceRequest(BaseModel):
    dossier_id: Optional[str] = None
    document_type: Optional[str] = None
    document_id: Optional[str] = None

class ReminderCreate(BaseModel):
    dossier_id: str
    relance_type: Literal['client', 'assurance', 'expert'] = 'expert'
    channel: Literal['email', 'sms'] = 'email'
    recipient: str
    subject: Optional[str] = None
    message: Optional[str] = None
    due_at: Optional[dt.datetime] = None
    interval_days: Optional[int] = Field(default=None, ge=1)
    repeat: bool = True
    document_type: Optional[str] = None
    document_id: Optional[str] = None
    client_nom: Optional[str] = None
    expert_nom: Optional[str] = None

class ReminderOut(BaseModel):
    reminder_id: str
    dossier_id: str
    relance_type: str
    channel: str
    recipient: str
    subject: str
    message: str
    status: str
    due_at: dt.datetime
    created_at: dt.datetime
    updated_at: dt.datetime
    document_type: Optional[str] = None
    document_id: Optional[str] = None
    attempt: int
    interval_days: Optional[int] = None
    delivery_errors: int = 0
    last_error: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[dt.datetime] = None
    sent_at: Optional[dt.datetime] = None
    failed_at: Optional[dt.datetime] = None

    @classmethod
    def from_reminder(cls, reminder: Reminder) -> 'ReminderOut':
        scope = reminder.stop_scope
        return cls(
            reminder_id=reminder.reminder_id,
            dossier_id=reminder.case_id,
            relance_type=reminder.relance_type,
            channel=reminder.channel,
            recipient=reminder.recipient,
            subject=reminder.subject,
            message=reminder.message,
            status=reminder.status.value,
            due_at=reminder.due_at,
            created_at=reminder.created_at,
            updated_at=reminder.updated_at,
            document_type=scope.document_type if scope else None,
            document_id=scope.document_id if scope else None,
            attempt=reminder.attempt,
            interval_days=reminder.interval_days,
            delivery_errors=reminder.delivery_errors,
            last_error=reminder.last_error or None,
            cancel_reason=reminder.cancel_reason or None,
            cancelled_at=reminder.cancelled_at,
            sent_at=reminder.sent_at,
            failed_at=reminder.failed_at,
        )

class ReminderResponse(BaseModel):
    success: bool = True
    reminder: ReminderOut

class ReminderListResponse(BaseModel):
    success: bool = True
    reminders: List[ReminderOut]
    count: int

class HistoryOut(BaseModel):
    id: str
    dossier_id: str
    relance_type: str
    type: str
    destinataire: str
    sujet: str = ''
    contenu: str = ''
    statut: str
    sent_by: Optional[str] = None
    sent_at: str
    details: Dict = {}

    @classmethod
    def from_entry(cls, entry: HistoryEntry) -> 'HistoryOut':
        return cls(
            id=entry.history_id,
            dossier_id=entry.dossier_id,
            relance_type=entry.relance_type,
            type=entry.channel,
            destinataire=entry.recipient,
            sujet=entry.subject,
            contenu=entry.content,
            statut=entry.status,
            sent_by=entry.sent_by,
            sent_at=entry.sent_at,
            details=entry.details,
        )

class HistoryResponse(BaseModel):
    success: bool = True
    history: List[HistoryOut]
    count: int

class CronResponse(BaseModel):
    success: bool = True
    due: int
    sent: int
    failed: int
    retrying: int
    skipped: int
    followups: int
    timestamp: str
