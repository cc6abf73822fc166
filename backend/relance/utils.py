import csv, os, random, re, string
import datetime as dt
from typing import Dict, List, Iterable, Mapping, Optional

PLACEHOLDERS = ('dossier_id', 'client_nom', 'jours_attente', 'expert_nom')

def ensure_dir(path: str):
    os.makedirs(path, exist_ok=True)

def uid(prefix: str) -> str:
    return f"{prefix}_" + ''.join(random.choices(string.ascii_lowercase + string.digits, k=12))

def read_csv(path: str) -> List[Dict]:
    if not os.path.exists(path):
        return []
    with open(path, newline='', encoding='utf-8') as f:
        reader = csv.DictReader(f)
        return list(reader)

def write_csv(path: str, rows: List[Dict], fieldnames: Iterable[str]):
    ensure_dir(os.path.dirname(path))
    # write next to the target, then swap it in
    tmp_path = path + '.tmp'
    with open(tmp_path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=list(fieldnames))
        writer.writeheader()
        for r in rows:
            writer.writerow(r)
    os.replace(tmp_path, path)

def append_csv(path: str, row: Dict, fieldnames: Iterable[str]):
    ensure_dir(os.path.dirname(path))
    write_header = not os.path.exists(path)
    with open(path, 'a', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=list(fieldnames))
        if write_header:
            writer.writeheader()
        writer.writerow(row)

def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)

def now_iso() -> str:
    return utcnow().isoformat()

def to_iso(value: Optional[dt.datetime]) -> str:
    return value.isoformat() if value else ''

def parse_iso(value: Optional[str]) -> Optional[dt.datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = dt.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed

def as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)

def days_between(start: dt.datetime, end: dt.datetime) -> int:
    return int((as_utc(end) - as_utc(start)).total_seconds() // 86400)

def format_message(template: str, variables: Mapping[str, object]) -> str:
    """Fill the known placeholders of a relance template.

    Only variables that are provided (not None) are substituted; anything else,
    including unknown placeholders, is left in the text as-is.
    """
    message = template or ''
    for key in PLACEHOLDERS:
        value = variables.get(key)
        if value is None or value == '':
            continue
        message = re.sub(r'\{' + key + r'\}', lambda _m: str(value), message)
    return message
