from fastapi import FastAPI, HTTPException, Depends, UploadFile, File
from fastapi.responses import JSONResponse
from sqlmodel import select
from sqlalchemy import delete as sqlalchemy_delete
from pydantic import BaseModel, Field
from datetime import date, datetime, time
from typing import Optional
from contextlib import asynccontextmanager
import logging
import sys

from . import config
from .db import async_session, init_db
from .models import CalendarEvent, Document, EventSeries, ExtractedEvent, RecurringCandidate, User
from .models import CATEGORIES, PRIORITIES
from .auth import authenticate_user, create_access_token, require_login
from .extraction import CompletionClient
from .pipeline import (
    DocumentBusyError,
    DocumentProcessingError,
    EventImportError,
    ExtractedEventNotFound,
    delete_document,
    import_extracted_event,
    process_document,
)
from .materializer import parse_event_metadata
from .recurrence import has_recurring_text_cues
from .storage import LocalStorage, get_storage
from . import series_store
from .series_store import SeriesError
from .utils import loads_json_list, now_utc

logger = logging.getLogger(__name__)
# INFO-level output on the console when nothing else configured logging
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from .auth import SECRET_KEY as _SECRET_KEY, INSECURE_SECRET_FALLBACK
    if not _SECRET_KEY or _SECRET_KEY == INSECURE_SECRET_FALLBACK:
        raise RuntimeError("SECRET_KEY not set or insecure fallback in use; set the SECRET_KEY environment variable before starting the server")
    await init_db()
    logger.info('starting server using DATABASE_URL=%s storage=%s', config.DATABASE_URL, config.STORAGE_DIR)
    if not config.completion_api_key():
        logger.warning('OPENAI_API_KEY is not set; document processing will fail until it is')
    yield


app = FastAPI(lifespan=lifespan)


def get_completion_client() -> Optional[CompletionClient]:
    """Completion client for pipeline runs; None lets the pipeline build its own."""
    return None


# --- serialization -------------------------------------------------------

def _t(v: Optional[time]) -> Optional[str]:
    return v.strftime('%H:%M') if v else None


def _dt(v: Optional[datetime]) -> Optional[str]:
    return v.isoformat() if v else None


def _document_dict(d: Document) -> dict:
    return {
        'id': d.id,
        'name': d.name,
        'file_type': d.file_type,
        'file_size': d.file_size,
        'status': d.status,
        'progress': d.progress,
        'extracted_text': d.extracted_text,
        'processing_time': d.processing_time,
        'error_message': d.error_message,
        'created_at': _dt(d.created_at),
        'updated_at': _dt(d.updated_at),
    }


def _extracted_event_dict(e: ExtractedEvent) -> dict:
    parsed = parse_event_metadata(e.metadata_json)
    meta = parsed.model_dump(mode='json') if parsed else None
    return {
        'id': e.id,
        'document_id': e.document_id,
        'title': e.title,
        'description': e.description,
        'event_date': e.event_date,
        'start_time': _t(e.start_time),
        'end_time': _t(e.end_time),
        'location': e.location,
        'category': e.category,
        'priority': e.priority,
        'confidence': e.confidence,
        'is_imported': e.is_imported,
        'metadata': meta,
        'has_recurring_cue': has_recurring_text_cues(
            ' '.join(filter(None, [e.title, e.description, (meta or {}).get('date_text'),
                                   (meta or {}).get('recurrence_pattern')]))
        ),
    }


def _calendar_event_dict(e: CalendarEvent) -> dict:
    return {
        'id': e.id,
        'title': e.title,
        'description': e.description,
        'event_date': e.event_date.isoformat(),
        'start_time': _t(e.start_time),
        'end_time': _t(e.end_time),
        'location': e.location,
        'category': e.category,
        'priority': e.priority,
        'source': e.source,
        'source_id': e.source_id,
        'is_completed': e.is_completed,
        'series_id': e.series_id,
        'occurrence_date': e.occurrence_date.isoformat() if e.occurrence_date else None,
        'is_series_instance': e.is_series_instance,
    }


def _series_dict(s: EventSeries) -> dict:
    return {
        'id': s.id,
        'title': s.title,
        'description': s.description,
        'start_date': s.start_date.isoformat(),
        'start_time': _t(s.start_time),
        'end_time': _t(s.end_time),
        'duration_minutes': s.duration_minutes,
        'location': s.location,
        'category': s.category,
        'priority': s.priority,
        'rrule': s.rrule,
        'exdates': loads_json_list(s.exdates_json),
        'until_date': s.until_date.isoformat() if s.until_date else None,
        'source': s.source,
        'is_active': s.is_active,
    }


def _candidate_dict(c: RecurringCandidate) -> dict:
    return {
        'id': c.id,
        'title': c.title,
        'normalized_title': c.normalized_title,
        'cluster_key': c.cluster_key,
        'event_ids': loads_json_list(c.event_ids_json),
        'occurrence_dates': loads_json_list(c.occurrence_dates_json),
        'detected_pattern': c.detected_pattern,
        'confidence_score': c.confidence_score,
        'suggested_rrule': c.suggested_rrule,
        'start_time': _t(c.start_time),
        'location': c.location,
        'status': c.status,
    }


# --- request models ------------------------------------------------------

class TokenRequest(BaseModel):
    username: str
    password: str


class BulkDeleteRequest(BaseModel):
    ids: list[int]


class CalendarEventCreate(BaseModel):
    title: str = Field(min_length=1)
    event_date: date
    description: Optional[str] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    location: Optional[str] = None
    category: str = 'other'
    priority: str = 'medium'


class SeriesCreate(BaseModel):
    title: str = Field(min_length=1)
    start_date: date
    rrule: str
    description: Optional[str] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    duration_minutes: Optional[int] = None
    location: Optional[str] = None
    category: str = 'other'
    priority: str = 'medium'
    until_date: Optional[date] = None
    exdates: list[date] = Field(default_factory=list)


class WindowRequest(BaseModel):
    start: date
    end: date


class ExdateRequest(BaseModel):
    occurrence_date: date


class OverrideRequest(BaseModel):
    title: Optional[str] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    location: Optional[str] = None
    description: Optional[str] = None
    is_cancelled: bool = False
    is_completed: bool = False


def _check_enums(category: str, priority: str) -> None:
    if category not in CATEGORIES:
        raise HTTPException(status_code=422, detail=f'category must be one of {", ".join(CATEGORIES)}')
    if priority not in PRIORITIES:
        raise HTTPException(status_code=422, detail=f'priority must be one of {", ".join(PRIORITIES)}')


def _check_window(start: date, end: date) -> None:
    if end < start:
        raise HTTPException(status_code=422, detail='end must not be before start')


# --- auth ----------------------------------------------------------------

@app.post('/auth/token')
async def login_for_access_token(req: TokenRequest):
    user = await authenticate_user(req.username, req.password)
    if not user:
        raise HTTPException(status_code=401, detail='Incorrect username or password')
    access_token = create_access_token(data={'sub': user.username})
    return {'access_token': access_token, 'token_type': 'bearer'}


# --- documents -----------------------------------------------------------

async def _owned_document(sess, doc_id: int, user: User) -> Document:
    doc = await sess.get(Document, doc_id)
    if not doc or doc.user_id != user.id:
        raise HTTPException(status_code=404, detail='document not found')
    return doc


@app.post('/documents')
async def upload_document(file: UploadFile = File(...), current_user: User = Depends(require_login),
                          storage: LocalStorage = Depends(get_storage)):
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail='empty file')
    if len(data) > config.MAX_UPLOAD_MB * 1024 * 1024:
        raise HTTPException(status_code=413, detail=f'file exceeds {config.MAX_UPLOAD_MB} MB')
    name = file.filename or 'document'
    ext = name.rsplit('.', 1)[-1].lower() if '.' in name else 'bin'
    key = f'{current_user.id}/{int(now_utc().timestamp() * 1000)}.{ext}'
    await storage.upload(key, data)
    doc = Document(
        user_id=current_user.id,
        name=name,
        file_type=file.content_type or 'application/octet-stream',
        file_size=len(data),
        storage_path=key,
        status='pending',
        progress=0,
    )
    try:
        async with async_session() as sess:
            sess.add(doc)
            await sess.commit()
            await sess.refresh(doc)
    except Exception:
        logger.exception('document insert failed; removing stored file %s', key)
        await storage.remove(key)
        raise HTTPException(status_code=500, detail='failed to save document')
    logger.info('user %s uploaded document %s (%s, %d bytes)', current_user.id, doc.id, doc.file_type, doc.file_size)
    return _document_dict(doc)


@app.get('/documents')
async def list_documents(current_user: User = Depends(require_login)):
    async with async_session() as sess:
        q = await sess.exec(
            select(Document).where(Document.user_id == current_user.id).order_by(Document.created_at.desc())
        )
        return [_document_dict(d) for d in q.all()]


@app.get('/documents/{doc_id}')
async def get_document(doc_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        doc = await _owned_document(sess, doc_id, current_user)
        return _document_dict(doc)


@app.delete('/documents/{doc_id}')
async def remove_document(doc_id: int, current_user: User = Depends(require_login),
                          storage: LocalStorage = Depends(get_storage)):
    async with async_session() as sess:
        await _owned_document(sess, doc_id, current_user)
    await delete_document(doc_id, storage=storage)
    return {'deleted': doc_id}


@app.post('/documents/{doc_id}/process')
async def process_document_endpoint(doc_id: int, current_user: User = Depends(require_login),
                                    storage: LocalStorage = Depends(get_storage),
                                    completion: Optional[CompletionClient] = Depends(get_completion_client)):
    async with async_session() as sess:
        await _owned_document(sess, doc_id, current_user)
    try:
        result = await process_document(doc_id, storage=storage, completion=completion)
    except DocumentBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except DocumentProcessingError as e:
        return JSONResponse(status_code=500, content={'success': False, 'error': str(e)})
    return {
        'success': True,
        'eventsCount': result.events_count,
        'processingTime': result.processing_time_seconds,
    }


@app.get('/documents/{doc_id}/events')
async def list_extracted_events(doc_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        await _owned_document(sess, doc_id, current_user)
        q = await sess.exec(
            select(ExtractedEvent)
            .where(ExtractedEvent.document_id == doc_id)
            .order_by(ExtractedEvent.event_date, ExtractedEvent.id)
        )
        return [_extracted_event_dict(e) for e in q.all()]


# --- extracted events ----------------------------------------------------

@app.delete('/extracted-events/{event_id}')
async def delete_extracted_event(event_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        ev = await sess.get(ExtractedEvent, event_id)
        if not ev or ev.user_id != current_user.id:
            raise HTTPException(status_code=404, detail='extracted event not found')
        await sess.delete(ev)
        await sess.commit()
    return {'deleted': event_id}


@app.post('/extracted-events/bulk-delete')
async def bulk_delete_extracted_events(req: BulkDeleteRequest, current_user: User = Depends(require_login)):
    if not req.ids:
        return {'deleted': 0}
    async with async_session() as sess:
        res = await sess.exec(
            sqlalchemy_delete(ExtractedEvent)
            .where(ExtractedEvent.id.in_(req.ids))
            .where(ExtractedEvent.user_id == current_user.id)
        )
        await sess.commit()
    return {'deleted': res.rowcount}


@app.post('/extracted-events/{event_id}/import')
async def import_extracted_event_endpoint(event_id: int, current_user: User = Depends(require_login)):
    try:
        rows = await import_extracted_event(event_id, user_id=current_user.id)
    except ExtractedEventNotFound:
        raise HTTPException(status_code=404, detail='extracted event not found')
    except EventImportError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {'imported': len(rows), 'events': [_calendar_event_dict(r) for r in rows]}


# --- calendar ------------------------------------------------------------

@app.post('/calendar/events')
async def create_calendar_event(req: CalendarEventCreate, current_user: User = Depends(require_login)):
    _check_enums(req.category, req.priority)
    ev = CalendarEvent(user_id=current_user.id, source='manual', **req.model_dump())
    async with async_session() as sess:
        sess.add(ev)
        await sess.commit()
        await sess.refresh(ev)
    return _calendar_event_dict(ev)


@app.get('/calendar/events')
async def list_calendar_events(start: Optional[date] = None, end: Optional[date] = None,
                               current_user: User = Depends(require_login)):
    q = select(CalendarEvent).where(CalendarEvent.user_id == current_user.id)
    if start:
        q = q.where(CalendarEvent.event_date >= start)
    if end:
        q = q.where(CalendarEvent.event_date <= end)
    async with async_session() as sess:
        res = await sess.exec(q.order_by(CalendarEvent.event_date, CalendarEvent.start_time, CalendarEvent.id))
        return [_calendar_event_dict(e) for e in res.all()]


@app.delete('/calendar/events/{event_id}')
async def delete_calendar_event(event_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        ev = await sess.get(CalendarEvent, event_id)
        if not ev or ev.user_id != current_user.id:
            raise HTTPException(status_code=404, detail='event not found')
        await sess.delete(ev)
        await sess.commit()
    return {'deleted': event_id}


# --- series --------------------------------------------------------------

async def _owned_series(sess, series_id: int, user: User) -> EventSeries:
    s = await sess.get(EventSeries, series_id)
    if not s or s.user_id != user.id:
        raise HTTPException(status_code=404, detail='series not found')
    return s


@app.post('/series')
async def create_series_endpoint(req: SeriesCreate, current_user: User = Depends(require_login)):
    _check_enums(req.category, req.priority)
    async with async_session() as sess:
        try:
            s = await series_store.create_series(sess, current_user.id, **req.model_dump())
        except SeriesError as e:
            raise HTTPException(status_code=422, detail=str(e))
    return _series_dict(s)


@app.get('/series')
async def list_series(current_user: User = Depends(require_login)):
    async with async_session() as sess:
        q = await sess.exec(select(EventSeries).where(EventSeries.user_id == current_user.id).order_by(EventSeries.id))
        return [_series_dict(s) for s in q.all()]


@app.get('/series/{series_id}/occurrences')
async def series_occurrences_endpoint(series_id: int, start: date, end: date,
                                      current_user: User = Depends(require_login)):
    _check_window(start, end)
    async with async_session() as sess:
        s = await _owned_series(sess, series_id, current_user)
        overrides = await series_store.get_overrides(sess, series_id)
    occs = series_store.series_occurrences(s, overrides, start, end)
    return {
        'series_id': series_id,
        'occurrences': [
            {
                'occurrence_date': o.occurrence_date.isoformat(),
                'title': o.title,
                'start_time': _t(o.start_time),
                'end_time': _t(o.end_time),
                'location': o.location,
                'description': o.description,
                'is_completed': o.is_completed,
                'is_overridden': o.is_overridden,
            }
            for o in occs
        ],
    }


@app.post('/series/{series_id}/materialize')
async def materialize_series_endpoint(series_id: int, req: WindowRequest, current_user: User = Depends(require_login)):
    _check_window(req.start, req.end)
    async with async_session() as sess:
        s = await _owned_series(sess, series_id, current_user)
        created = await series_store.materialize_series(sess, s, req.start, req.end)
        return {'created': len(created), 'events': [_calendar_event_dict(e) for e in created]}


@app.post('/series/{series_id}/exdates')
async def add_series_exdate(series_id: int, req: ExdateRequest, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        s = await _owned_series(sess, series_id, current_user)
        s = await series_store.add_exclusion(sess, s, req.occurrence_date)
        return _series_dict(s)


@app.put('/series/{series_id}/overrides/{occurrence_date}')
async def upsert_series_override(series_id: int, occurrence_date: date, req: OverrideRequest,
                                 current_user: User = Depends(require_login)):
    async with async_session() as sess:
        s = await _owned_series(sess, series_id, current_user)
        ov = await series_store.upsert_override(sess, s, occurrence_date, **req.model_dump())
    return {
        'id': ov.id,
        'series_id': ov.series_id,
        'occurrence_date': ov.occurrence_date.isoformat(),
        'title': ov.title,
        'start_time': _t(ov.start_time),
        'end_time': _t(ov.end_time),
        'location': ov.location,
        'description': ov.description,
        'is_cancelled': ov.is_cancelled,
        'is_completed': ov.is_completed,
    }


@app.delete('/series/{series_id}/overrides/{occurrence_date}')
async def delete_series_override(series_id: int, occurrence_date: date, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        s = await _owned_series(sess, series_id, current_user)
        removed = await series_store.delete_override(sess, s, occurrence_date)
    if not removed:
        raise HTTPException(status_code=404, detail='override not found')
    return {'deleted': occurrence_date.isoformat()}


@app.delete('/series/{series_id}')
async def delete_series_endpoint(series_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        await _owned_series(sess, series_id, current_user)
        await series_store.delete_series(sess, series_id)
    return {'deleted': series_id}


# --- recurring candidates ------------------------------------------------

async def _owned_candidate(sess, candidate_id: int, user: User) -> RecurringCandidate:
    c = await sess.get(RecurringCandidate, candidate_id)
    if not c or c.user_id != user.id:
        raise HTTPException(status_code=404, detail='candidate not found')
    return c


@app.post('/recurring-candidates/detect')
async def detect_candidates(current_user: User = Depends(require_login)):
    async with async_session() as sess:
        found = await series_store.detect_recurring_candidates(sess, current_user.id)
        return [_candidate_dict(c) for c in found]


@app.get('/recurring-candidates')
async def list_candidates(status: Optional[str] = None, current_user: User = Depends(require_login)):
    q = select(RecurringCandidate).where(RecurringCandidate.user_id == current_user.id)
    if status:
        q = q.where(RecurringCandidate.status == status)
    async with async_session() as sess:
        res = await sess.exec(q.order_by(RecurringCandidate.id))
        return [_candidate_dict(c) for c in res.all()]


@app.post('/recurring-candidates/{candidate_id}/accept')
async def accept_candidate(candidate_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        c = await _owned_candidate(sess, candidate_id, current_user)
        if c.status == 'rejected':
            raise HTTPException(status_code=409, detail='candidate was rejected')
        try:
            s = await series_store.promote_candidate(sess, c)
        except SeriesError as e:
            raise HTTPException(status_code=422, detail=str(e))
    return _series_dict(s)


@app.post('/recurring-candidates/{candidate_id}/reject')
async def reject_candidate(candidate_id: int, current_user: User = Depends(require_login)):
    async with async_session() as sess:
        c = await _owned_candidate(sess, candidate_id, current_user)
        try:
            c = await series_store.reject_candidate(sess, c)
        except SeriesError as e:
            raise HTTPException(status_code=409, detail=str(e))
    return _candidate_dict(c)
