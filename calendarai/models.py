from typing import List, Optional
from datetime import date, datetime, time
from .utils import now_utc
from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import CheckConstraint, Column, ForeignKey, Integer, UniqueConstraint


# Closed enumerations shared by extracted events, calendar events and series.
CATEGORIES = ('assignment', 'exam', 'meeting', 'deadline', 'milestone', 'other')
PRIORITIES = ('critical', 'high', 'medium', 'low')
DOCUMENT_STATUSES = ('pending', 'processing', 'completed', 'error')
CALENDAR_SOURCES = ('manual', 'extracted', 'external_calendar', 'messaging')
SERIES_SOURCES = ('manual', 'extracted', 'detected')
CANDIDATE_STATUSES = ('pending', 'accepted', 'rejected')


def _in(column: str, values: tuple[str, ...]) -> str:
    quoted = ', '.join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


def _cascade_fk(target: str, nullable: bool = False, index: bool = True) -> Column:
    return Column(Integer, ForeignKey(target, ondelete='CASCADE'), nullable=nullable, index=index)


class User(SQLModel, table=True):
    """Owner of documents and calendar rows. Passwords are stored hashed."""
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, sa_column_kwargs={"unique": True})
    password_hash: str


class Document(SQLModel, table=True):
    """An uploaded file and the state of its single ingestion run.

    Only the pipeline writes status/progress/extracted_text; progress never
    moves backwards within a run.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    name: str
    file_type: str
    file_size: int
    storage_path: str
    status: str = Field(default='pending', index=True)
    progress: int = Field(default=0)
    extracted_text: Optional[str] = None
    processing_time: Optional[float] = None
    error_message: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)

    __table_args__ = (
        CheckConstraint(_in('status', DOCUMENT_STATUSES), name='ck_document_status'),
        CheckConstraint('progress >= 0 AND progress <= 100', name='ck_document_progress'),
    )

    events: List["ExtractedEvent"] = Relationship(
        back_populates="document",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "passive_deletes": True},
    )


class ExtractedEvent(SQLModel, table=True):
    """One staged event produced by the pipeline for a Document.

    event_date is text: an ISO date when the model normalized it, otherwise
    the raw date text from the line. metadata_json holds the serialized
    ConcreteMeta/DeferredRangeMeta variant (see materializer.py).
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    document_id: int = Field(sa_column=_cascade_fk('document.id'))
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    description: Optional[str] = None
    event_date: str = Field(index=True)
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    location: Optional[str] = None
    category: str = Field(default='other')
    priority: str = Field(default='medium')
    confidence: int = Field(default=85)
    is_imported: bool = Field(default=False, index=True)
    metadata_json: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)

    __table_args__ = (
        CheckConstraint(_in('category', CATEGORIES), name='ck_extractedevent_category'),
        CheckConstraint(_in('priority', PRIORITIES), name='ck_extractedevent_priority'),
        CheckConstraint('confidence >= 0 AND confidence <= 100', name='ck_extractedevent_confidence'),
    )

    document: Optional[Document] = Relationship(back_populates="events")


class EventSeries(SQLModel, table=True):
    """Master definition of a recurring event.

    rrule is the RRULE body (no 'RRULE:' prefix) evaluated from start_date.
    exdates_json is a JSON list of ISO dates the series must never produce.
    cluster_key is set when the series was promoted from a RecurringCandidate.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    normalized_title: str = Field(index=True)
    description: Optional[str] = None
    start_date: date
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    duration_minutes: Optional[int] = None
    location: Optional[str] = None
    category: str = Field(default='other')
    priority: str = Field(default='medium')
    rrule: str
    exdates_json: Optional[str] = None
    until_date: Optional[date] = None
    source: str = Field(default='manual')
    is_active: bool = Field(default=True, index=True)
    cluster_key: Optional[str] = Field(default=None, index=True)
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)

    __table_args__ = (
        UniqueConstraint('user_id', 'cluster_key', name='uq_eventseries_cluster'),
        CheckConstraint(_in('category', CATEGORIES), name='ck_eventseries_category'),
        CheckConstraint(_in('priority', PRIORITIES), name='ck_eventseries_priority'),
        CheckConstraint(_in('source', SERIES_SOURCES), name='ck_eventseries_source'),
    )


class CalendarEvent(SQLModel, table=True):
    """The canonical schedulable item.

    When series_id is set, occurrence_date names the generated series date
    this row stands for; the store keeps it out of the series' exclusions.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    description: Optional[str] = None
    event_date: date = Field(index=True)
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    location: Optional[str] = None
    category: str = Field(default='other')
    priority: str = Field(default='medium')
    source: str = Field(default='manual')
    # id of the originating ExtractedEvent (or external item) as text
    source_id: Optional[str] = Field(default=None, index=True)
    is_completed: bool = Field(default=False)
    series_id: Optional[int] = Field(default=None, sa_column=_cascade_fk('eventseries.id', nullable=True))
    occurrence_date: Optional[date] = None
    is_series_instance: bool = Field(default=False)
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)

    __table_args__ = (
        CheckConstraint(_in('category', CATEGORIES), name='ck_calendarevent_category'),
        CheckConstraint(_in('priority', PRIORITIES), name='ck_calendarevent_priority'),
        CheckConstraint(_in('source', CALENDAR_SOURCES), name='ck_calendarevent_source'),
        CheckConstraint('series_id IS NULL OR occurrence_date IS NOT NULL', name='ck_calendarevent_occurrence'),
    )


class EventOverride(SQLModel, table=True):
    """Per-occurrence edit or cancellation of a series.

    Any occurrence_date is accepted; an override only has an effect when the
    series actually generates that date.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    series_id: int = Field(sa_column=_cascade_fk('eventseries.id'))
    occurrence_date: date
    title: Optional[str] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    location: Optional[str] = None
    description: Optional[str] = None
    is_cancelled: bool = Field(default=False)
    is_completed: bool = Field(default=False)
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)

    __table_args__ = (UniqueConstraint('series_id', 'occurrence_date', name='uq_eventoverride_occurrence'),)


class RecurringCandidate(SQLModel, table=True):
    """A detected repeating pattern waiting for the user to accept or reject it.

    event_ids_json: JSON list of CalendarEvent ids that formed the cluster
    occurrence_dates_json: JSON list of ISO dates observed in the cluster
    Candidates are never deleted automatically.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    cluster_key: str = Field(index=True)
    event_ids_json: str = Field(default='[]')
    detected_pattern: Optional[str] = None
    confidence_score: float = Field(default=0.0)
    title: str
    normalized_title: str
    start_time: Optional[time] = None
    location: Optional[str] = None
    occurrence_dates_json: str = Field(default='[]')
    suggested_rrule: Optional[str] = None
    status: str = Field(default='pending', index=True)
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)

    __table_args__ = (
        CheckConstraint(_in('status', CANDIDATE_STATUSES), name='ck_recurringcandidate_status'),
        CheckConstraint('confidence_score >= 0 AND confidence_score <= 1', name='ck_recurringcandidate_confidence'),
    )
