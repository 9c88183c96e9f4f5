"""Text normalization and candidate-line filtering for extracted document text.

normalize_text() undoes common OCR damage (control characters, typographic
punctuation, glued words) and is idempotent. normalize_lines() turns the
cleaned text into numbered line records, and filter_candidate_lines() keeps
only the lines worth sending to the completion service.
"""
from dataclasses import dataclass
import logging
import re
from typing import Iterable

logger = logging.getLogger(__name__)

# C0 controls except \t \n \r, DEL and the C1 block.
_CONTROL_RE = re.compile(r"[\u0000-\u0008\u000B\u000C\u000E-\u001F\u007F-\u009F]")
_SINGLE_QUOTES_RE = re.compile("[‘’‚‛′]")
_DOUBLE_QUOTES_RE = re.compile("[“”„‟″]")
_DASHES_RE = re.compile("[‐-―−]")
# Horizontal whitespace only; newlines delimit the line records.
_HSPACE_RE = re.compile(r"[^\S\n]+")
_LOWER_UPPER_RE = re.compile(r"([a-z])([A-Z])")
_DIGIT_LETTER_RE = re.compile(r"([0-9])([a-zA-Z])")
_LETTER_DIGIT_RE = re.compile(r"([a-zA-Z])([0-9])")

_MONTH = r"(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec)[a-z]*\.?"

# Date shapes that mark a line as a candidate. Matching is case-insensitive
# and deliberately loose: a false positive costs one extraction slot, a
# false negative loses an event.
DATE_PATTERNS: tuple[re.Pattern, ...] = (
    # Month DD, YYYY / Month DD YYYY
    re.compile(r"\b" + _MONTH + r"\s+\d{1,2},?\s+\d{2,4}", re.IGNORECASE),
    # DD/MM[/YYYY] and the dash/dot variants
    re.compile(r"\b\d{1,2}[/.-]\d{1,2}(?:[/.-]\d{2,4})?\b", re.IGNORECASE),
    # ISO YYYY-MM-DD
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    # Month DD
    re.compile(r"\b" + _MONTH + r"\s+\d{1,2}\b", re.IGNORECASE),
    # DD Month (optionally '14 th of November' after OCR splitting)
    re.compile(r"\b\d{1,2}(?:\s*(?:st|nd|rd|th))?(?:\s+of)?\s+" + _MONTH + r"(?![a-z])", re.IGNORECASE),
)


@dataclass(frozen=True)
class LineRecord:
    line_number: int
    text: str


def normalize_text(text: str | None) -> str:
    """Clean raw OCR/PDF text. Re-applying it to its own output is a no-op."""
    if not text:
        return ''
    t = text.replace('\r\n', '\n').replace('\r', '\n')
    t = _CONTROL_RE.sub('', t)
    t = _SINGLE_QUOTES_RE.sub("'", t)
    t = _DOUBLE_QUOTES_RE.sub('"', t)
    t = _DASHES_RE.sub('-', t)
    t = _HSPACE_RE.sub(' ', t)
    t = _LOWER_UPPER_RE.sub(r"\1 \2", t)
    t = _DIGIT_LETTER_RE.sub(r"\1 \2", t)
    t = _LETTER_DIGIT_RE.sub(r"\1 \2", t)
    lines = (line.strip() for line in t.split('\n'))
    return '\n'.join(line for line in lines if line)


def split_into_lines(text: str) -> list[LineRecord]:
    """Split text into 1-indexed records, dropping lines that are blank after trimming."""
    out: list[LineRecord] = []
    for line in text.splitlines():
        s = line.strip()
        if s:
            out.append(LineRecord(line_number=len(out) + 1, text=s))
    return out


def normalize_lines(text: str | None) -> list[LineRecord]:
    return split_into_lines(normalize_text(text))


def has_date_candidate(text: str) -> bool:
    if not text:
        return False
    return any(p.search(text) for p in DATE_PATTERNS)


def filter_candidate_lines(lines: Iterable[LineRecord]) -> list[LineRecord]:
    """Keep the lines that contain at least one date-shaped substring."""
    lines = list(lines)
    out = [line for line in lines if has_date_candidate(line.text)]
    logger.info('candidate filter kept %d of %d lines', len(out), len(lines))
    if lines and not out:
        logger.warning('no lines matched date patterns; sample: %s', [line.text[:100] for line in lines[:5]])
    return out
