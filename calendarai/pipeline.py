"""Document ingestion pipeline and extracted-event import.

process_document() runs normalize -> filter -> batched extraction ->
materialize for one document, persisting each batch as it completes. Only
input errors fail the run; batch failures just lower the event count.
"""
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import date
import asyncio
import logging
import time
from typing import Optional

from sqlmodel import select
from sqlalchemy import update as sqlalchemy_update
from sqlalchemy.exc import SQLAlchemyError

from . import config
from .db import async_session
from .extraction import BatchPersistError, CompletionClient, CompletionServiceError, extract_batch, run_batches, Sleep
from .materializer import DeferredRangeMeta, materialize_lines, parse_event_metadata
from .models import CalendarEvent, Document, ExtractedEvent
from .normalizer import filter_candidate_lines, normalize_text, split_into_lines
from .recurrence import expand
from .storage import LocalStorage, StorageObjectNotFound, get_storage
from .text_extract import TextExtractionError, extract_document_text
from .utils import now_utc, resolve_event_date

logger = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_DOWNLOADED = 30
PROGRESS_NORMALIZED = 75
PROGRESS_EXTRACTED = 85
PROGRESS_DONE = 100


class DocumentProcessingError(Exception):
    """A whole-run failure: the document is marked as errored."""


class DocumentBusyError(Exception):
    """A run for this document is already in progress."""


class EventImportError(Exception):
    pass


class ExtractedEventNotFound(EventImportError):
    pass


@dataclass(frozen=True)
class ProcessResult:
    document_id: int
    events_count: int
    processing_time_seconds: float
    failed_batches: tuple[int, ...] = ()


# Document ids with a run in progress in this process.
_active_runs: set[int] = set()


def is_processing(document_id: int) -> bool:
    return document_id in _active_runs


async def _update_document(document_id: int, **fields) -> None:
    async with async_session() as sess:
        doc = await sess.get(Document, document_id)
        if doc is None:
            return
        for k, v in fields.items():
            setattr(doc, k, v)
        doc.updated_at = now_utc()
        sess.add(doc)
        await sess.commit()


async def _advance_progress(document_id: int, progress: int) -> None:
    """Raise progress; never lowers it."""
    async with async_session() as sess:
        doc = await sess.get(Document, document_id)
        if doc is None or progress <= (doc.progress or 0):
            return
        doc.progress = min(progress, PROGRESS_DONE)
        doc.updated_at = now_utc()
        sess.add(doc)
        await sess.commit()


async def process_document(
    document_id: int,
    *,
    storage: Optional[LocalStorage] = None,
    completion: Optional[CompletionClient] = None,
    sleep: Sleep = asyncio.sleep,
) -> ProcessResult:
    """Run the ingestion pipeline for one document.

    Raises DocumentBusyError when a run for the document is already active
    and DocumentProcessingError for whole-run failures (after recording
    status='error' and the message on the document).
    """
    if document_id in _active_runs:
        raise DocumentBusyError(f'document {document_id} is already being processed')
    _active_runs.add(document_id)
    try:
        return await _run(document_id, storage or get_storage(), completion, sleep)
    finally:
        _active_runs.discard(document_id)


async def _run(document_id: int, storage: LocalStorage, completion: Optional[CompletionClient],
               sleep: Sleep) -> ProcessResult:
    async with async_session() as sess:
        doc = await sess.get(Document, document_id)
    if doc is None:
        raise DocumentProcessingError('Document not found')

    logger.info('processing document %s (%s)', document_id, doc.name)
    try:
        async with AsyncExitStack() as stack:
            await _update_document(document_id, status='processing', progress=PROGRESS_STARTED, error_message=None)
            try:
                data = await storage.download(doc.storage_path)
            except StorageObjectNotFound:
                raise DocumentProcessingError('Failed to download file') from None
            await _advance_progress(document_id, PROGRESS_DOWNLOADED)

            if completion is None:
                api_key = config.completion_api_key()
                if not api_key:
                    raise DocumentProcessingError('API key is required for document processing')
                completion = await stack.enter_async_context(CompletionClient(api_key, sleep=sleep))

            started = time.monotonic()

            async def on_text_progress(value: int) -> None:
                await _advance_progress(document_id, value)

            try:
                raw_text = await extract_document_text(doc.file_type, data, completion, on_text_progress)
            except TextExtractionError as e:
                raise DocumentProcessingError(str(e)) from e

            text = normalize_text(raw_text)
            if not text:
                raise DocumentProcessingError('No text could be extracted from the document')
            await _advance_progress(document_id, PROGRESS_NORMALIZED)

            lines = split_into_lines(text)
            candidates = filter_candidate_lines(lines)
            logger.info('document %s: %d lines, %d date candidates', document_id, len(lines), len(candidates))

            async def extract(batch):
                return await extract_batch(completion, batch)

            async def persist(index: int, results) -> int:
                rows = [m.to_row(document_id=document_id, user_id=doc.user_id) for m in materialize_lines(results)]
                if not rows:
                    return 0
                try:
                    async with async_session() as sess:
                        sess.add_all(rows)
                        await sess.commit()
                except SQLAlchemyError as e:
                    logger.exception('document %s batch %d: could not save events', document_id, index + 1)
                    raise BatchPersistError(str(getattr(e, 'orig', None) or e)) from e
                logger.info('document %s batch %d: saved %d events', document_id, index + 1, len(rows))
                return len(rows)

            async def on_batch(done: int, total: int) -> None:
                span = PROGRESS_EXTRACTED - PROGRESS_NORMALIZED
                await _advance_progress(document_id, PROGRESS_NORMALIZED + (done * span) // total)

            summary = await run_batches(candidates, extract, persist, sleep=sleep, on_progress=on_batch)
            await _advance_progress(document_id, PROGRESS_EXTRACTED)

            elapsed = round(time.monotonic() - started, 3)
            await _update_document(
                document_id,
                status='completed',
                progress=PROGRESS_DONE,
                extracted_text=text[:config.EXTRACTED_TEXT_EXCERPT_CHARS],
                processing_time=elapsed,
            )
    except DocumentProcessingError as e:
        await _mark_failed(document_id, str(e))
        raise
    except CompletionServiceError as e:
        await _mark_failed(document_id, str(e))
        raise DocumentProcessingError(str(e)) from e
    except Exception as e:
        logger.exception('document %s: processing failed', document_id)
        await _mark_failed(document_id, str(e) or e.__class__.__name__)
        raise DocumentProcessingError(str(e) or e.__class__.__name__) from e

    logger.info('document %s completed: %d events in %.2fs', document_id, summary.persisted, elapsed)
    return ProcessResult(
        document_id=document_id,
        events_count=summary.persisted,
        processing_time_seconds=elapsed,
        failed_batches=summary.failed_batches,
    )


async def _mark_failed(document_id: int, message: str) -> None:
    logger.error('document %s failed: %s', document_id, message)
    await _update_document(document_id, status='error', error_message=message)


def occurrence_dates_for(event: ExtractedEvent) -> list[date]:
    """Dates an extracted event turns into on import.

    Deferred ranges expand over their weekday set; everything else resolves
    to one date. Raises EventImportError when the date cannot be resolved.
    """
    meta = parse_event_metadata(event.metadata_json)
    if isinstance(meta, DeferredRangeMeta):
        return expand(meta.normalized_date, meta.normalized_end_date, meta.day_of_week)
    d = resolve_event_date(event.event_date)
    if d is None:
        raise EventImportError(f'Could not resolve a calendar date from {event.event_date!r}')
    return [d]


async def import_extracted_event(event_id: int, user_id: Optional[int] = None) -> list[CalendarEvent]:
    """Copy an extracted event into the calendar.

    Returns the CalendarEvent rows for the event. Importing again returns
    the rows created the first time instead of inserting new ones.
    """
    async with async_session() as sess:
        ev = await sess.get(ExtractedEvent, event_id)
        if ev is None or (user_id is not None and ev.user_id != user_id):
            raise ExtractedEventNotFound('Extracted event not found')

        if ev.is_imported:
            return await _imported_rows(sess, event_id)

        dates = occurrence_dates_for(ev)
        # flip the flag first; a concurrent import that loses this race
        # inserts nothing
        res = await sess.exec(
            sqlalchemy_update(ExtractedEvent)
            .where(ExtractedEvent.id == ev.id)
            .where(ExtractedEvent.is_imported == False)  # noqa: E712
            .values(is_imported=True)
        )
        if res.rowcount == 0:
            await sess.rollback()
            return await _imported_rows(sess, event_id)

        rows = [
            CalendarEvent(
                user_id=ev.user_id,
                title=ev.title,
                description=ev.description,
                event_date=d,
                start_time=ev.start_time,
                end_time=ev.end_time,
                location=ev.location,
                category=ev.category,
                priority=ev.priority,
                source='extracted',
                source_id=str(ev.id),
            )
            for d in dates
        ]
        sess.add_all(rows)
        await sess.commit()
    logger.info('imported extracted event %s as %d calendar events', event_id, len(rows))
    return rows


async def _imported_rows(sess, event_id: int) -> list[CalendarEvent]:
    q = await sess.exec(
        select(CalendarEvent)
        .where(CalendarEvent.source == 'extracted')
        .where(CalendarEvent.source_id == str(event_id))
        .order_by(CalendarEvent.event_date)
    )
    return q.all()


async def delete_document(document_id: int, storage: Optional[LocalStorage] = None) -> None:
    """Remove the stored file, then the document and its extracted events."""
    storage = storage or get_storage()
    async with async_session() as sess:
        doc = await sess.get(Document, document_id)
        if doc is None:
            return
        try:
            await storage.remove(doc.storage_path)
        except (OSError, ValueError):
            logger.exception('could not remove stored file for document %s', document_id)
        evs = await sess.exec(select(ExtractedEvent).where(ExtractedEvent.document_id == document_id))
        for ev in evs.all():
            await sess.delete(ev)
        await sess.delete(doc)
        await sess.commit()
    logger.info('deleted document %s', document_id)
