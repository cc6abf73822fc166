import logging
from typing import Callable, Optional
import datetime as dt

from .domain import StopEvent, StopScope, validate_case_id
from .errors import ValidationError
from .history import RelanceHistory
from .store import ReminderStore
from .utils import as_utc, utcnow

logger = logging.getLogger(__name__)


class StopConditionEvaluator:
    """Cancels the pending relances of a dossier once a stop event satisfies them.

    Without a scope every pending relance of the dossier is cancelled. With a
    scope, relances not tied to a document are cancelled along with those whose
    document type / id are carried by the event.
    """

    def __init__(self, store: ReminderStore, history: Optional[RelanceHistory] = None,
                 clock: Callable[[], dt.datetime] = utcnow):
        self.store = store
        self.history = history
        self.clock = clock

    def stop(self, case_id, reason: str, scope: Optional[StopScope] = None,
             stopped_by: Optional[str] = None) -> int:
        case_id = validate_case_id(case_id)
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("raison requise")
        reason = reason.strip()

        now = as_utc(self.clock())
        active = self.store.query_active(case_id, scope)
        cancelled = self.store.cancel_many([r.reminder_id for r in active], reason, now)

        logger.info("Stopped %d/%d relances for dossier %s (reason=%s, scope=%s)",
                    len(cancelled), len(active), case_id, reason, scope)
        if self.history is not None:
            self._record(case_id, reason, scope, stopped_by, now, len(cancelled))
        return len(cancelled)

    def evaluate(self, event: StopEvent, stopped_by: Optional[str] = None) -> int:
        return self.stop(event.case_id, event.reason, event.scope, stopped_by)

    def _record(self, case_id, reason, scope, stopped_by, now, count):
        document_type = scope.document_type if scope else None
        document_id = scope.document_id if scope else None
        content = f"Raison: {reason}"
        if document_type:
            content += f" - Type document: {document_type}"
        self.history.record(
            dossier_id=case_id,
            relance_type='auto_stop',
            channel='system',
            recipient='system',
            subject="Arrêt automatique des relances",
            content=content,
            status='cancelled',
            sent_by=stopped_by,
            sent_at=now.isoformat(),
            details={
                'reason': reason,
                'document_type': document_type,
                'document_id': document_id,
                'stopped_at': now.isoformat(),
                'cancelled': count,
            },
        )
