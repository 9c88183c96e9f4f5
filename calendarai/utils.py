from datetime import date, datetime, time, timezone
import json
import logging
import re
from typing import Any, Iterable

import dateparser

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def normalize_title(title: str | None) -> str:
    """Normalize an event title for duplicate/cluster detection.

    Lowercases, drops punctuation and collapses whitespace so that
    'Team Meeting!' and 'team  meeting' compare equal.
    """
    if not title:
        return ''
    t = title.lower()
    t = re.sub(r"[^\w\s]", " ", t)
    t = re.sub(r"\s+", " ", t).strip()
    return t


def parse_iso_date(value: Any) -> date | None:
    """Return a date for a YYYY-MM-DD string (or date/datetime), else None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", s):
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def parse_time_of_day(value: Any) -> time | None:
    """Parse 'HH:MM' or 'HH:MM:SS' into a time; None for blanks or garbage."""
    if value is None or isinstance(value, time):
        return value
    s = str(value).strip()
    if not s:
        return None
    try:
        return time.fromisoformat(s)
    except ValueError:
        return None


def resolve_event_date(text: str | None) -> date | None:
    """Resolve free date text (e.g. 'Nov 14' or '14/11/2025') to a date.

    ISO dates are returned directly. Anything else goes through dateparser
    with both day and month required so a bare month name or a year never
    resolves to a fabricated day.
    """
    if not text:
        return None
    iso = parse_iso_date(text)
    if iso:
        return iso
    from . import config as _config
    settings = {
        'REQUIRE_PARTS': ['day', 'month'],
        'PREFER_DATES_FROM': 'future',
        'DATE_ORDER': getattr(_config, 'DATE_ORDER', 'MDY'),
    }
    try:
        dt = dateparser.parse(text, languages=['en'], settings=settings)
    except Exception:
        logger.exception('dateparser failed for %r', text)
        return None
    return dt.date() if dt else None


def dumps_json(obj: Any) -> str:
    return json.dumps(obj, separators=(',', ':'), ensure_ascii=False, default=_json_default)


def _json_default(o: Any):
    if isinstance(o, (date, datetime, time)):
        return o.isoformat()
    raise TypeError(f'not JSON serializable: {type(o).__name__}')


def loads_json_list(s: str | None) -> list:
    """Decode a JSON-encoded list column; tolerate NULL and bad data."""
    if not s:
        return []
    try:
        v = json.loads(s)
    except ValueError:
        logger.warning('ignoring malformed JSON list column: %r', s[:200])
        return []
    return v if isinstance(v, list) else []


def iso_dates(values: Iterable[Any]) -> list[str]:
    """Return sorted unique ISO strings for the parseable dates in values."""
    out = set()
    for v in values:
        d = parse_iso_date(v)
        if d:
            out.add(d.isoformat())
    return sorted(out)
