"""Turn per-line extraction results into staged ExtractedEvent rows.

The metadata stored with each row is a tagged variant:

- ConcreteMeta: one dated event (or a raw date string the model could not
  normalize).
- DeferredRangeMeta: "this title repeats on these weekdays between these two
  dates". It is only expanded into calendar rows on import.
"""
from dataclasses import dataclass
from datetime import date
import logging
from typing import Annotated, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from .extraction import LineExtraction
from .models import ExtractedEvent
from .recurrence import normalize_weekdays
from .utils import parse_iso_date

logger = logging.getLogger(__name__)

CONFIDENCE_NORMALIZED = 90
CONFIDENCE_RAW_TEXT = 70
CONFIDENCE_DEFERRED_RANGE = 85

DEFAULT_CATEGORY = 'other'
DEFAULT_PRIORITY = 'medium'


class ConcreteMeta(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal['concrete'] = 'concrete'
    line_number: int
    date_text: str = ''
    normalized_date: Optional[str] = None
    normalized_end_date: Optional[str] = None
    day_of_week: Optional[str] = None
    recurrence_pattern: Optional[str] = None
    is_range_with_day: Literal[False] = False
    is_expanded_from_range: bool = False


class DeferredRangeMeta(BaseModel):
    """A weekday pattern over an inclusive date range, not yet expanded."""
    model_config = ConfigDict(frozen=True)

    kind: Literal['deferred_range'] = 'deferred_range'
    line_number: int
    date_text: str = ''
    normalized_date: date
    normalized_end_date: date
    day_of_week: str = Field(min_length=1)
    recurrence_pattern: Optional[str] = None
    is_range_with_day: Literal[True] = True
    is_expanded_from_range: Literal[False] = False

    @field_validator('day_of_week')
    @classmethod
    def _has_weekdays(cls, v: str) -> str:
        if not normalize_weekdays(v):
            raise ValueError(f'no recognizable weekday in {v!r}')
        return v

    @model_validator(mode='after')
    def _ordered_range(self) -> 'DeferredRangeMeta':
        if self.normalized_end_date < self.normalized_date:
            raise ValueError('range ends before it starts')
        return self


EventMeta = Annotated[Union[ConcreteMeta, DeferredRangeMeta], Field(discriminator='kind')]
_META_ADAPTER = TypeAdapter(EventMeta)


def parse_event_metadata(raw: str | None) -> ConcreteMeta | DeferredRangeMeta | None:
    """Decode ExtractedEvent.metadata_json; None when absent or unreadable."""
    if not raw:
        return None
    try:
        return _META_ADAPTER.validate_json(raw)
    except ValidationError:
        logger.warning('unreadable event metadata: %r', raw[:200])
        return None


@dataclass(frozen=True)
class MaterializedEvent:
    title: str
    event_date: str
    confidence: int
    meta: ConcreteMeta | DeferredRangeMeta
    description: Optional[str] = None
    category: str = DEFAULT_CATEGORY
    priority: str = DEFAULT_PRIORITY

    def to_row(self, document_id: int, user_id: int) -> ExtractedEvent:
        return ExtractedEvent(
            document_id=document_id,
            user_id=user_id,
            title=self.title,
            description=self.description,
            event_date=self.event_date,
            category=self.category,
            priority=self.priority,
            confidence=self.confidence,
            is_imported=False,
            metadata_json=self.meta.model_dump_json(),
        )


def _deferred_range(result: LineExtraction) -> Optional[DeferredRangeMeta]:
    if not result.is_range_with_day:
        return None
    start = parse_iso_date(result.normalized_date)
    end = parse_iso_date(result.normalized_end_date)
    if start is None or end is None or not result.day_of_week:
        logger.info('line %d flagged as range without usable dates/weekdays; keeping it as a single event',
                    result.line_number)
        return None
    try:
        return DeferredRangeMeta(
            line_number=result.line_number,
            date_text=result.date_text,
            normalized_date=start,
            normalized_end_date=end,
            day_of_week=result.day_of_week,
            recurrence_pattern=result.recurrence_pattern,
        )
    except ValidationError as e:
        logger.info('line %d range metadata rejected (%s); keeping it as a single event',
                    result.line_number, e.errors()[0].get('msg'))
        return None


def materialize_line(result: LineExtraction) -> Optional[MaterializedEvent]:
    """Convert one line result; None when the line has no usable date."""
    title = result.event or result.date_text or 'Untitled event'
    description = result.event or result.date_text or None
    deferred = _deferred_range(result)
    if deferred is not None:
        return MaterializedEvent(
            title=title,
            event_date=deferred.normalized_date.isoformat(),
            confidence=CONFIDENCE_DEFERRED_RANGE,
            meta=deferred,
            description=description,
        )

    normalized = parse_iso_date(result.normalized_date)
    if normalized is not None:
        event_date, confidence = normalized.isoformat(), CONFIDENCE_NORMALIZED
    elif result.date_text:
        event_date, confidence = result.date_text, CONFIDENCE_RAW_TEXT
    else:
        logger.info('dropping line %d: no date in extraction result', result.line_number)
        return None

    meta = ConcreteMeta(
        line_number=result.line_number,
        date_text=result.date_text,
        normalized_date=normalized.isoformat() if normalized else None,
        normalized_end_date=result.normalized_end_date,
        day_of_week=result.day_of_week,
        recurrence_pattern=result.recurrence_pattern,
    )
    return MaterializedEvent(title=title, event_date=event_date, confidence=confidence, meta=meta,
                             description=description)


def materialize_lines(results: Iterable[LineExtraction]) -> list[MaterializedEvent]:
    out = []
    for r in results:
        m = materialize_line(r)
        if m is not None:
            out.append(m)
    return out
