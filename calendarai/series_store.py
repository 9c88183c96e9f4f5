"""Recurring-event store: series, per-occurrence overrides and candidates.

A series is the master definition (RRULE from start_date, minus exdates).
CalendarEvent rows are linked to a series only when materialized or promoted
into it; creating a series never touches unlinked rows. Overrides are
permissive: any date may carry one, it only matters when the series generates
that date.

All functions take an open AsyncSession and commit their own unit of work.
"""
from dataclasses import dataclass
from datetime import date, time
import logging
from typing import Optional

from sqlmodel import select
from sqlalchemy import delete as sqlalchemy_delete
from sqlalchemy.exc import IntegrityError
from sqlmodel.ext.asyncio.session import AsyncSession

from .models import CalendarEvent, EventOverride, EventSeries, RecurringCandidate
from .recurrence import rrule_dates, suggest_recurrence, validate_rrule
from .utils import dumps_json, iso_dates, loads_json_list, normalize_title, now_utc, parse_iso_date

logger = logging.getLogger(__name__)

MIN_CLUSTER_OCCURRENCES = 3

OVERRIDE_FIELDS = ('title', 'start_time', 'end_time', 'location', 'description', 'is_cancelled', 'is_completed')


class SeriesError(Exception):
    pass


def series_exdates(series: EventSeries) -> list[date]:
    return [d for d in (parse_iso_date(v) for v in loads_json_list(series.exdates_json)) if d]


def generated_dates(series: EventSeries, window_start: date, window_end: date) -> list[date]:
    """Dates the series generates in the window, exclusions removed."""
    return rrule_dates(
        series.rrule,
        series.start_date,
        window_start,
        window_end,
        until=series.until_date,
        exdates=series_exdates(series),
    )


def series_generates(series: EventSeries, d: date) -> bool:
    return bool(generated_dates(series, d, d))


@dataclass(frozen=True)
class Occurrence:
    series_id: int
    occurrence_date: date
    title: str
    start_time: Optional[time]
    end_time: Optional[time]
    location: Optional[str]
    description: Optional[str]
    is_completed: bool = False
    is_overridden: bool = False


def series_occurrences(series: EventSeries, overrides: list[EventOverride], window_start: date,
                       window_end: date) -> list[Occurrence]:
    """Occurrences in the window with overrides applied; cancelled ones are left out."""
    by_date = {o.occurrence_date: o for o in overrides}
    out: list[Occurrence] = []
    for d in generated_dates(series, window_start, window_end):
        ov = by_date.get(d)
        if ov is not None and ov.is_cancelled:
            continue
        out.append(Occurrence(
            series_id=series.id,
            occurrence_date=d,
            title=(ov.title if ov and ov.title else series.title),
            start_time=(ov.start_time if ov and ov.start_time else series.start_time),
            end_time=(ov.end_time if ov and ov.end_time else series.end_time),
            location=(ov.location if ov and ov.location else series.location),
            description=(ov.description if ov and ov.description else series.description),
            is_completed=bool(ov and ov.is_completed),
            is_overridden=ov is not None,
        ))
    return out


async def get_overrides(sess: AsyncSession, series_id: int) -> list[EventOverride]:
    q = await sess.exec(select(EventOverride).where(EventOverride.series_id == series_id))
    return q.all()


async def create_series(sess: AsyncSession, user_id: int, *, title: str, start_date: date, rrule: str,
                        description: Optional[str] = None, start_time: Optional[time] = None,
                        end_time: Optional[time] = None, duration_minutes: Optional[int] = None,
                        location: Optional[str] = None, category: str = 'other', priority: str = 'medium',
                        until_date: Optional[date] = None, exdates: Optional[list] = None,
                        source: str = 'manual', cluster_key: Optional[str] = None) -> EventSeries:
    try:
        body = validate_rrule(rrule, start_date)
    except ValueError as e:
        raise SeriesError(f'invalid recurrence rule {rrule!r}: {e}') from e
    series = EventSeries(
        user_id=user_id,
        title=title,
        normalized_title=normalize_title(title),
        description=description,
        start_date=start_date,
        start_time=start_time,
        end_time=end_time,
        duration_minutes=duration_minutes,
        location=location,
        category=category,
        priority=priority,
        rrule=body,
        exdates_json=dumps_json(iso_dates(exdates or [])),
        until_date=until_date,
        source=source,
        cluster_key=cluster_key,
    )
    sess.add(series)
    await sess.commit()
    await sess.refresh(series)
    logger.info('created series %s %r rule=%s', series.id, title, body)
    return series


async def delete_series(sess: AsyncSession, series_id: int) -> None:
    """Delete a series with its linked calendar rows and overrides."""
    await sess.exec(sqlalchemy_delete(CalendarEvent).where(CalendarEvent.series_id == series_id))
    await sess.exec(sqlalchemy_delete(EventOverride).where(EventOverride.series_id == series_id))
    await sess.exec(sqlalchemy_delete(EventSeries).where(EventSeries.id == series_id))
    await sess.commit()
    logger.info('deleted series %s', series_id)


async def _linked_row(sess: AsyncSession, series_id: int, occurrence_date: date) -> Optional[CalendarEvent]:
    q = await sess.exec(
        select(CalendarEvent)
        .where(CalendarEvent.series_id == series_id)
        .where(CalendarEvent.occurrence_date == occurrence_date)
    )
    return q.first()


async def add_exclusion(sess: AsyncSession, series: EventSeries, occurrence_date: date) -> EventSeries:
    """Exclude a date from the series and drop any row linked to that date."""
    current = iso_dates(loads_json_list(series.exdates_json))
    series.exdates_json = dumps_json(iso_dates(current + [occurrence_date]))
    series.updated_at = now_utc()
    sess.add(series)
    await sess.exec(
        sqlalchemy_delete(CalendarEvent)
        .where(CalendarEvent.series_id == series.id)
        .where(CalendarEvent.occurrence_date == occurrence_date)
    )
    await sess.commit()
    return series


def _apply_to_row(row: CalendarEvent, series: EventSeries, ov: Optional[EventOverride]) -> None:
    row.title = (ov.title if ov and ov.title else series.title)
    row.start_time = (ov.start_time if ov and ov.start_time else series.start_time)
    row.end_time = (ov.end_time if ov and ov.end_time else series.end_time)
    row.location = (ov.location if ov and ov.location else series.location)
    row.description = (ov.description if ov and ov.description else series.description)
    row.is_completed = bool(ov and ov.is_completed)
    row.updated_at = now_utc()


async def upsert_override(sess: AsyncSession, series: EventSeries, occurrence_date: date,
                          **fields) -> EventOverride:
    """Create or update the override for one occurrence date.

    A linked calendar row on that date is updated to match, or deleted when
    the override cancels the occurrence.
    """
    unknown = set(fields) - set(OVERRIDE_FIELDS)
    if unknown:
        raise TypeError(f'unknown override fields: {sorted(unknown)}')
    q = await sess.exec(
        select(EventOverride)
        .where(EventOverride.series_id == series.id)
        .where(EventOverride.occurrence_date == occurrence_date)
    )
    ov = q.first()
    if ov is None:
        ov = EventOverride(series_id=series.id, occurrence_date=occurrence_date)
    for k, v in fields.items():
        setattr(ov, k, v)
    ov.updated_at = now_utc()
    sess.add(ov)

    row = await _linked_row(sess, series.id, occurrence_date)
    if row is not None:
        if ov.is_cancelled:
            await sess.delete(row)
        else:
            _apply_to_row(row, series, ov)
            sess.add(row)
    await sess.commit()
    await sess.refresh(ov)
    return ov


async def delete_override(sess: AsyncSession, series: EventSeries, occurrence_date: date) -> bool:
    q = await sess.exec(
        select(EventOverride)
        .where(EventOverride.series_id == series.id)
        .where(EventOverride.occurrence_date == occurrence_date)
    )
    ov = q.first()
    if ov is None:
        return False
    await sess.delete(ov)
    row = await _linked_row(sess, series.id, occurrence_date)
    if row is not None:
        _apply_to_row(row, series, None)
        sess.add(row)
    await sess.commit()
    return True


def _calendar_source(series: EventSeries) -> str:
    return 'extracted' if series.source == 'extracted' else 'manual'


async def materialize_series(sess: AsyncSession, series: EventSeries, window_start: date,
                             window_end: date) -> list[CalendarEvent]:
    """Create linked calendar rows for occurrences in the window that lack one.

    Returns only the rows created by this call.
    """
    overrides = await get_overrides(sess, series.id)
    q = await sess.exec(
        select(CalendarEvent.occurrence_date)
        .where(CalendarEvent.series_id == series.id)
        .where(CalendarEvent.occurrence_date >= window_start)
        .where(CalendarEvent.occurrence_date <= window_end)
    )
    existing = set(q.all())
    created: list[CalendarEvent] = []
    for occ in series_occurrences(series, overrides, window_start, window_end):
        if occ.occurrence_date in existing:
            continue
        created.append(CalendarEvent(
            user_id=series.user_id,
            title=occ.title,
            description=occ.description,
            event_date=occ.occurrence_date,
            start_time=occ.start_time,
            end_time=occ.end_time,
            location=occ.location,
            category=series.category,
            priority=series.priority,
            source=_calendar_source(series),
            is_completed=occ.is_completed,
            series_id=series.id,
            occurrence_date=occ.occurrence_date,
            is_series_instance=True,
        ))
    sess.add_all(created)
    await sess.commit()
    logger.info('series %s: materialized %d occurrences in %s..%s', series.id, len(created), window_start, window_end)
    return created


def cluster_key_for(normalized_title: str, start_time: Optional[time]) -> str:
    return f"{normalized_title}|{start_time.strftime('%H:%M') if start_time else ''}"


async def detect_recurring_candidates(sess: AsyncSession, user_id: int,
                                      min_occurrences: int = MIN_CLUSTER_OCCURRENCES) -> list[RecurringCandidate]:
    """Find repeating clusters among a user's unlinked calendar events.

    Events are grouped by normalized title and start time. Each cluster with
    a daily, weekly or monthly rhythm becomes (or refreshes) a pending
    candidate. Accepted and rejected candidates are left alone.
    """
    q = await sess.exec(
        select(CalendarEvent)
        .where(CalendarEvent.user_id == user_id)
        .where(CalendarEvent.series_id == None)  # noqa: E711
        .order_by(CalendarEvent.event_date, CalendarEvent.id)
    )
    clusters: dict[str, list[CalendarEvent]] = {}
    for ev in q.all():
        nt = normalize_title(ev.title)
        if not nt:
            continue
        clusters.setdefault(cluster_key_for(nt, ev.start_time), []).append(ev)

    q = await sess.exec(select(RecurringCandidate).where(RecurringCandidate.user_id == user_id))
    known = {c.cluster_key: c for c in q.all()}

    touched: list[RecurringCandidate] = []
    for key, events in clusters.items():
        found = suggest_recurrence([e.event_date for e in events], min_occurrences)
        if found is None:
            continue
        cand = known.get(key)
        if cand is not None and cand.status != 'pending':
            continue
        if cand is None:
            cand = RecurringCandidate(user_id=user_id, cluster_key=key, title=events[0].title,
                                      normalized_title=normalize_title(events[0].title))
        cand.event_ids_json = dumps_json([e.id for e in events])
        cand.occurrence_dates_json = dumps_json(iso_dates(e.event_date for e in events))
        cand.detected_pattern = found['pattern']
        cand.confidence_score = found['confidence']
        cand.suggested_rrule = found['rrule']
        cand.start_time = events[0].start_time
        cand.location = events[0].location
        cand.updated_at = now_utc()
        sess.add(cand)
        touched.append(cand)
    await sess.commit()
    logger.info('user %s: %d recurring candidates detected', user_id, len(touched))
    return touched


async def _series_for_cluster(sess: AsyncSession, user_id: int, cluster_key: str) -> Optional[EventSeries]:
    q = await sess.exec(
        select(EventSeries)
        .where(EventSeries.user_id == user_id)
        .where(EventSeries.cluster_key == cluster_key)
    )
    return q.first()


async def promote_candidate(sess: AsyncSession, candidate: RecurringCandidate) -> EventSeries:
    """Accept a candidate, creating its series exactly once.

    Promoting an already accepted candidate returns the existing series.
    Raises SeriesError for rejected candidates or unusable rules.
    """
    if candidate.status == 'rejected':
        raise SeriesError('candidate was rejected')
    user_id, cluster_key = candidate.user_id, candidate.cluster_key
    existing = await _series_for_cluster(sess, user_id, cluster_key)
    if existing is not None:
        if candidate.status != 'accepted':
            candidate.status = 'accepted'
            candidate.updated_at = now_utc()
            sess.add(candidate)
            await sess.commit()
        return existing

    dates = sorted(d for d in (parse_iso_date(v) for v in loads_json_list(candidate.occurrence_dates_json)) if d)
    if not dates:
        raise SeriesError('candidate has no occurrence dates')
    rule = candidate.suggested_rrule
    if not rule:
        found = suggest_recurrence(dates, min_occurrences=2)
        rule = found['rrule'] if found else None
    if not rule:
        raise SeriesError('candidate has no usable recurrence rule')
    try:
        body = validate_rrule(rule, dates[0])
    except ValueError as e:
        raise SeriesError(f'invalid recurrence rule {rule!r}: {e}') from e

    event_ids = [i for i in loads_json_list(candidate.event_ids_json) if isinstance(i, int)]
    sources: list[CalendarEvent] = []
    if event_ids:
        q = await sess.exec(
            select(CalendarEvent)
            .where(CalendarEvent.id.in_(event_ids))
            .where(CalendarEvent.user_id == candidate.user_id)
        )
        sources = q.all()
    first = min(sources, key=lambda e: e.event_date) if sources else None

    series = EventSeries(
        user_id=candidate.user_id,
        title=candidate.title,
        normalized_title=candidate.normalized_title or normalize_title(candidate.title),
        description=first.description if first else None,
        start_date=dates[0],
        start_time=candidate.start_time,
        end_time=first.end_time if first else None,
        location=candidate.location,
        category=first.category if first else 'other',
        priority=first.priority if first else 'medium',
        rrule=body,
        exdates_json=dumps_json([]),
        source='detected',
        cluster_key=candidate.cluster_key,
    )
    sess.add(series)
    candidate.status = 'accepted'
    candidate.updated_at = now_utc()
    sess.add(candidate)
    try:
        await sess.commit()
    except IntegrityError:
        # another promotion of the same cluster won
        await sess.rollback()
        existing = await _series_for_cluster(sess, user_id, cluster_key)
        if existing is None:
            raise
        return existing
    await sess.refresh(series)

    linked = 0
    for ev in sources:
        if ev.series_id is None and series_generates(series, ev.event_date):
            ev.series_id = series.id
            ev.occurrence_date = ev.event_date
            ev.is_series_instance = True
            ev.updated_at = now_utc()
            sess.add(ev)
            linked += 1
    await sess.commit()
    logger.info('promoted candidate %s to series %s (%d events linked)', candidate.id, series.id, linked)
    return series


async def reject_candidate(sess: AsyncSession, candidate: RecurringCandidate) -> RecurringCandidate:
    if candidate.status == 'accepted':
        raise SeriesError('candidate was already accepted')
    if candidate.status != 'rejected':
        candidate.status = 'rejected'
        candidate.updated_at = now_utc()
        sess.add(candidate)
        await sess.commit()
    return candidate
