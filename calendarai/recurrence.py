"""Weekday-range expansion and RRULE helpers.

expand() is the deferred-range expander used on import. The rrule helpers
back EventSeries: rules are stored as RRULE bodies (no 'RRULE:' prefix) and
evaluated with dateutil from the series start date.
"""
from collections import Counter
from datetime import date, datetime, time, timedelta
import logging
import re
from typing import Any, Iterable, Optional

from dateutil.rrule import rrulestr

from .utils import parse_iso_date

logger = logging.getLogger(__name__)

# Python weekday numbering: Monday == 0 .. Sunday == 6
WEEKDAY_MAP = {
    'monday': 0, 'mon': 0,
    'tuesday': 1, 'tue': 1, 'tues': 1,
    'wednesday': 2, 'wed': 2,
    'thursday': 3, 'thu': 3, 'thur': 3, 'thurs': 3,
    'friday': 4, 'fri': 4,
    'saturday': 5, 'sat': 5,
    'sunday': 6, 'sun': 6,
}

RRULE_DAY_CODES = ('MO', 'TU', 'WE', 'TH', 'FR', 'SA', 'SU')

_TOKEN_SPLIT_RE = re.compile(r"[,/&;+]|\band\b|\s+", re.IGNORECASE)

_RECURRING_CUE_RE = re.compile(
    r"\b(every|each|weekly|daily|bi-?weekly|fortnightly|monthly|recurring|"
    r"mondays|tuesdays|wednesdays|thursdays|fridays|saturdays|sundays)\b",
    re.IGNORECASE,
)


def _weekday_for_token(token: str) -> Optional[int]:
    t = token.strip().strip('.').lower()
    if not t:
        return None
    if t in WEEKDAY_MAP:
        return WEEKDAY_MAP[t]
    # plurals: 'mondays', 'tues' is already a key
    if t.endswith('s') and t[:-1] in WEEKDAY_MAP:
        return WEEKDAY_MAP[t[:-1]]
    return None


def normalize_weekdays(tokens: Any) -> frozenset[int]:
    """Turn weekday tokens into a set of weekday numbers (Mon=0).

    Accepts a string such as 'Mon,Wed,Fri', 'Tuesdays and Thursdays' or
    'every Monday', an iterable of such strings, or ints 0-6. Unrecognized
    tokens are ignored.
    """
    if tokens is None:
        return frozenset()
    if isinstance(tokens, (str, int)):
        tokens = [tokens]
    out: set[int] = set()
    for tok in tokens:
        if isinstance(tok, bool):
            continue
        if isinstance(tok, int):
            if 0 <= tok <= 6:
                out.add(tok)
            continue
        if not isinstance(tok, str):
            continue
        for part in _TOKEN_SPLIT_RE.split(tok):
            wd = _weekday_for_token(part or '')
            if wd is not None:
                out.add(wd)
    return frozenset(out)


def expand(start: date | str, end: date | str, weekdays: Any) -> list[date]:
    """Return every date from start to end (both inclusive) on one of weekdays.

    An empty or unrecognized weekday set, or start after end, yields [].
    Raises ValueError when start or end is not a date / ISO date string.
    """
    start_d = parse_iso_date(start)
    end_d = parse_iso_date(end)
    if start_d is None or end_d is None:
        raise ValueError(f'expand needs ISO dates, got {start!r} and {end!r}')
    wanted = normalize_weekdays(weekdays)
    if not wanted:
        logger.info('no recognizable weekdays in %r; nothing to expand', weekdays)
        return []
    out: list[date] = []
    d = start_d
    one_day = timedelta(days=1)
    while d <= end_d:
        if d.weekday() in wanted:
            out.append(d)
        d += one_day
    return out


def has_recurring_text_cues(text: str | None) -> bool:
    """True when text reads like a repeating event ('every Monday', 'weekly')."""
    if not text:
        return False
    return bool(_RECURRING_CUE_RE.search(text))


def recurrence_dict_to_rrule_string(rec: dict) -> str:
    """Export a recurrence dict to an RRULE body.

    Supports keys: freq (DAILY/WEEKLY/MONTHLY/YEARLY), interval, byweekday
    (list of 'MO'..'SU' codes or weekday ints), bymonthday.
    """
    if not rec:
        return ''
    parts: list[str] = []
    f = rec.get('freq')
    if f:
        parts.append(f'FREQ={f.upper()}')
    if rec.get('interval') is not None and int(rec['interval']) != 1:
        parts.append(f'INTERVAL={int(rec["interval"])}')
    if rec.get('bymonthday') is not None:
        parts.append(f'BYMONTHDAY={int(rec["bymonthday"])}')
    if rec.get('byweekday'):
        vals = []
        for w in rec['byweekday']:
            if isinstance(w, int):
                vals.append(RRULE_DAY_CODES[w % 7])
            else:
                vals.append(str(w).upper())
        parts.append('BYDAY=' + ','.join(vals))
    return ';'.join(parts)


def clean_rrule(rule: str | None) -> str:
    """Strip an optional 'RRULE:' prefix and surrounding whitespace, uppercase."""
    if not rule:
        return ''
    s = rule.strip()
    if s.upper().startswith('RRULE:'):
        s = s[len('RRULE:'):]
    return s.strip().upper()


def validate_rrule(rule: str | None, start_date: date) -> str:
    """Return the cleaned rule, raising ValueError when dateutil rejects it."""
    body = clean_rrule(rule)
    if not body or 'FREQ=' not in body:
        raise ValueError('rule must contain FREQ')
    rrulestr(body, dtstart=datetime.combine(start_date, time.min))
    return body


def rrule_dates(
    rule: str,
    start_date: date,
    window_start: date,
    window_end: date,
    until: date | None = None,
    exdates: Iterable[date] = (),
) -> list[date]:
    """Dates the rule generates inside [window_start, window_end], minus exdates."""
    body = clean_rrule(rule)
    lo = max(window_start, start_date)
    hi = min(window_end, until) if until else window_end
    if lo > hi:
        return []
    excluded = set(exdates)
    r = rrulestr(body, dtstart=datetime.combine(start_date, time.min))
    hits = r.between(datetime.combine(lo, time.min), datetime.combine(hi, time.min), inc=True)
    return [dt.date() for dt in hits if dt.date() not in excluded]


def _month_index(d: date) -> int:
    return d.year * 12 + d.month


def suggest_recurrence(dates: Iterable[date], min_occurrences: int = 3) -> Optional[dict]:
    """Look for a daily, weekly or monthly rhythm in a set of dates.

    Returns {'pattern', 'confidence', 'rrule'} or None. confidence is the
    share of gaps between consecutive dates that match the dominant spacing.
    """
    ds = sorted(set(dates))
    if len(ds) < min_occurrences:
        return None
    gaps = [(b - a).days for a, b in zip(ds, ds[1:])]
    step, hits = Counter(gaps).most_common(1)[0]

    if step == 1:
        rec = {'freq': 'DAILY'}
        pattern = 'daily'
    elif step % 7 == 0 and len({d.weekday() for d in ds}) == 1:
        weeks = step // 7
        rec = {'freq': 'WEEKLY', 'interval': weeks, 'byweekday': [ds[0].weekday()]}
        pattern = {1: 'weekly', 2: 'biweekly'}.get(weeks, f'every {weeks} weeks')
    elif len({d.day for d in ds}) == 1:
        month_gaps = [_month_index(b) - _month_index(a) for a, b in zip(ds, ds[1:])]
        months, hits = Counter(month_gaps).most_common(1)[0]
        if months < 1:
            return None
        rec = {'freq': 'MONTHLY', 'interval': months, 'bymonthday': ds[0].day}
        pattern = 'monthly' if months == 1 else f'every {months} months'
    else:
        return None

    confidence = round(hits / len(gaps), 3)
    if confidence < 0.5:
        return None
    return {'pattern': pattern, 'confidence': confidence, 'rrule': recurrence_dict_to_rrule_string(rec)}
