import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional

from .utils import append_csv, now_iso, read_csv, uid

logger = logging.getLogger(__name__)

HISTORY_FIELD_ORDER = [
    'history_id', 'dossier_id', 'relance_type', 'channel', 'recipient',
    'subject', 'content', 'status', 'sent_by', 'sent_at', 'details',
]


@dataclass
class HistoryEntry:
    history_id: str
    dossier_id: str
    relance_type: str
    channel: str
    recipient: str
    status: str
    sent_at: str
    subject: str = ''
    content: str = ''
    sent_by: Optional[str] = None
    details: Dict = field(default_factory=dict)

    def to_row(self) -> Dict[str, str]:
        row = asdict(self)
        row['sent_by'] = self.sent_by or ''
        row['details'] = json.dumps(self.details, ensure_ascii=False, sort_keys=True)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, str]) -> 'HistoryEntry':
        try:
            details = json.loads(row.get('details') or '{}')
        except json.JSONDecodeError:
            details = {}
        return cls(
            history_id=row['history_id'],
            dossier_id=row.get('dossier_id') or '',
            relance_type=row.get('relance_type') or '',
            channel=row.get('channel') or '',
            recipient=row.get('recipient') or '',
            subject=row.get('subject') or '',
            content=row.get('content') or '',
            status=row.get('status') or '',
            sent_by=row.get('sent_by') or None,
            sent_at=row.get('sent_at') or '',
            details=details,
        )


class RelanceHistory:
    """Append-only log of what happened to relances: sends, failures, stops."""

    FILENAME = 'relance_history.csv'

    def __init__(self, data_dir: str):
        self.path = os.path.join(data_dir, self.FILENAME)
        self._lock = threading.Lock()

    def record(self, dossier_id: str, relance_type: str, channel: str, recipient: str, status: str,
               subject: str = '', content: str = '', sent_by: Optional[str] = None,
               details: Optional[Dict] = None, sent_at: Optional[str] = None) -> HistoryEntry:
        entry = HistoryEntry(
            history_id=uid('hist'),
            dossier_id=dossier_id,
            relance_type=relance_type,
            channel=channel,
            recipient=recipient,
            subject=subject,
            content=content,
            status=status,
            sent_by=sent_by,
            sent_at=sent_at or now_iso(),
            details=details or {},
        )
        with self._lock:
            append_csv(self.path, entry.to_row(), HISTORY_FIELD_ORDER)
        return entry

    def list(self, dossier_id: Optional[str] = None, relance_types: Optional[Iterable[str]] = None,
             status: Optional[str] = None, limit: int = 100) -> List[HistoryEntry]:
        entries = []
        for row in read_csv(self.path):
            try:
                entries.append(HistoryEntry.from_row(row))
            except KeyError:
                logger.warning("Skipping history row without id")
        if dossier_id:
            entries = [e for e in entries if e.dossier_id == dossier_id]
        types = {t.strip() for t in (relance_types or []) if t and t.strip()}
        if types:
            entries = [e for e in entries if e.relance_type in types]
        if status:
            entries = [e for e in entries if e.status == status]
        # newest first; the file is in write order, so reverse keeps ties stable
        entries.reverse()
        entries.sort(key=lambda e: e.sent_at, reverse=True)
        return entries[:max(limit, 0)]
