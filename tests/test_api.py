import httpx
import pytest

from calendarai.main import app
from conftest import chat_response

NOTES = (
    "Fall schedule\n"
    "Every Monday from 2025-11-03 to 2025-11-17: Team Meeting\n"
    "Midterm 2025-11-14\n"
    "Bring a calculator\n"
)


def range_aware_extractor(payload):
    return chat_response({'events': [
        {'line_number': 2, 'event': 'Team Meeting', 'date_text': '2025-11-03 to 2025-11-17',
         'normalized_date': '2025-11-03', 'normalized_end_date': '2025-11-17',
         'day_of_week': 'Monday', 'recurrence_pattern': 'weekly', 'is_range_with_day': True},
        {'line_number': 3, 'event': 'Midterm', 'date_text': '2025-11-14', 'normalized_date': '2025-11-14'},
    ]})


async def _upload(client, content: bytes = NOTES.encode(), name='notes.txt', ctype='text/plain'):
    r = await client.post('/documents', files={'file': (name, content, ctype)})
    assert r.status_code == 200
    return r.json()


@pytest.mark.asyncio
async def test_requires_authentication(client):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url='http://test') as anon:
        r = await anon.get('/documents')
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_upload_process_review_and_import(client, fake_service):
    fake_service.default = range_aware_extractor
    doc = await _upload(client)
    assert doc['status'] == 'pending'
    assert doc['progress'] == 0

    r = await client.post(f"/documents/{doc['id']}/process")
    assert r.status_code == 200
    body = r.json()
    assert body['success'] is True
    assert body['eventsCount'] == 2
    assert body['processingTime'] >= 0

    r = await client.get(f"/documents/{doc['id']}")
    assert r.json()['status'] == 'completed'
    assert r.json()['progress'] == 100

    r = await client.get(f"/documents/{doc['id']}/events")
    events = r.json()
    assert [e['title'] for e in events] == ['Team Meeting', 'Midterm']
    meeting, midterm = events
    assert meeting['confidence'] == 85
    assert meeting['metadata']['kind'] == 'deferred_range'
    assert meeting['has_recurring_cue'] is True
    assert midterm['confidence'] == 90
    assert midterm['has_recurring_cue'] is False

    r = await client.post(f"/extracted-events/{meeting['id']}/import")
    assert r.status_code == 200
    assert r.json()['imported'] == 3

    r = await client.get('/calendar/events', params={'start': '2025-11-01', 'end': '2025-11-30'})
    dates = [e['event_date'] for e in r.json()]
    assert dates == ['2025-11-03', '2025-11-10', '2025-11-17']

    r = await client.get(f"/documents/{doc['id']}/events")
    assert [e['is_imported'] for e in r.json()] == [True, False]


@pytest.mark.asyncio
async def test_process_failure_reports_error(client, fake_service):
    doc = await _upload(client, b'\x00\x01   ')
    r = await client.post(f"/documents/{doc['id']}/process")
    assert r.status_code == 500
    assert r.json() == {'success': False, 'error': 'No text could be extracted from the document'}
    r = await client.get(f"/documents/{doc['id']}")
    assert r.json()['status'] == 'error'


@pytest.mark.asyncio
async def test_delete_document_and_extracted_events(client, fake_service):
    doc = await _upload(client)
    r = await client.post(f"/documents/{doc['id']}/process")
    assert r.status_code == 200
    events = (await client.get(f"/documents/{doc['id']}/events")).json()
    assert len(events) == 2

    r = await client.delete(f"/extracted-events/{events[0]['id']}")
    assert r.status_code == 200
    r = await client.post('/extracted-events/bulk-delete', json={'ids': [events[1]['id'], 999999]})
    assert r.json() == {'deleted': 1}

    r = await client.delete(f"/documents/{doc['id']}")
    assert r.status_code == 200
    assert (await client.get(f"/documents/{doc['id']}")).status_code == 404
    assert (await client.get('/documents')).json() == []


@pytest.mark.asyncio
async def test_import_of_unresolvable_date_is_rejected(client, fake_service):
    fake_service.default = lambda payload: chat_response({'events': [
        {'line_number': 1, 'event': 'Retreat', 'date_text': 'TBD'},
    ]})
    doc = await _upload(client, b'Retreat sometime after the 2025-11-14 exams, date TBD\n')
    assert (await client.post(f"/documents/{doc['id']}/process")).json()['eventsCount'] == 1
    ev = (await client.get(f"/documents/{doc['id']}/events")).json()[0]
    assert ev['confidence'] == 70
    r = await client.post(f"/extracted-events/{ev['id']}/import")
    assert r.status_code == 422
    assert (await client.post('/extracted-events/424242/import')).status_code == 404


@pytest.mark.asyncio
async def test_manual_calendar_events(client):
    r = await client.post('/calendar/events', json={'title': 'Dentist', 'event_date': '2025-11-12', 'start_time': '14:30'})
    assert r.status_code == 200
    ev = r.json()
    assert ev['source'] == 'manual'
    assert ev['start_time'] == '14:30'
    r = await client.post('/calendar/events', json={'title': 'x', 'event_date': '2025-11-12', 'category': 'party'})
    assert r.status_code == 422
    assert (await client.delete(f"/calendar/events/{ev['id']}")).status_code == 200
    assert (await client.get('/calendar/events')).json() == []


@pytest.mark.asyncio
async def test_series_endpoints(client):
    r = await client.post('/series', json={'title': 'Team Sync', 'start_date': '2025-11-03',
                                           'rrule': 'RRULE:FREQ=WEEKLY;BYDAY=MO', 'start_time': '09:00'})
    assert r.status_code == 200
    s = r.json()
    assert s['rrule'] == 'FREQ=WEEKLY;BYDAY=MO'
    sid = s['id']

    r = await client.get(f'/series/{sid}/occurrences', params={'start': '2025-11-01', 'end': '2025-11-30'})
    assert [o['occurrence_date'] for o in r.json()['occurrences']] == ['2025-11-03', '2025-11-10', '2025-11-17', '2025-11-24']

    r = await client.post(f'/series/{sid}/materialize', json={'start': '2025-11-01', 'end': '2025-11-30'})
    assert r.json()['created'] == 4

    r = await client.post(f'/series/{sid}/exdates', json={'occurrence_date': '2025-11-10'})
    assert r.json()['exdates'] == ['2025-11-10']

    r = await client.put(f'/series/{sid}/overrides/2025-11-17', json={'title': 'Planning'})
    assert r.status_code == 200
    r = await client.put(f'/series/{sid}/overrides/2025-11-24', json={'is_cancelled': True})
    assert r.json()['is_cancelled'] is True

    r = await client.get('/calendar/events')
    assert [(e['event_date'], e['title']) for e in r.json()] == [('2025-11-03', 'Team Sync'), ('2025-11-17', 'Planning')]

    assert (await client.delete(f'/series/{sid}/overrides/2025-11-17')).status_code == 200
    assert (await client.delete(f'/series/{sid}/overrides/2025-11-17')).status_code == 404

    assert (await client.delete(f'/series/{sid}')).status_code == 200
    assert (await client.get('/calendar/events')).json() == []
    assert (await client.get('/series')).json() == []


@pytest.mark.asyncio
async def test_series_with_invalid_rule(client):
    r = await client.post('/series', json={'title': 'Bad', 'start_date': '2025-11-03', 'rrule': 'FREQ=SOMETIMES'})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_detect_and_accept_candidate_twice(client):
    for d in ('2025-11-04', '2025-11-11', '2025-11-18'):
        r = await client.post('/calendar/events', json={'title': 'Piano lesson', 'event_date': d, 'start_time': '17:00'})
        assert r.status_code == 200

    r = await client.post('/recurring-candidates/detect')
    cands = r.json()
    assert len(cands) == 1
    cand = cands[0]
    assert cand['detected_pattern'] == 'weekly'
    assert cand['suggested_rrule'] == 'FREQ=WEEKLY;BYDAY=TU'

    first = await client.post(f"/recurring-candidates/{cand['id']}/accept")
    second = await client.post(f"/recurring-candidates/{cand['id']}/accept")
    assert first.status_code == second.status_code == 200
    assert first.json()['id'] == second.json()['id']
    assert len((await client.get('/series')).json()) == 1

    r = await client.get('/recurring-candidates', params={'status': 'accepted'})
    assert [c['id'] for c in r.json()] == [cand['id']]
    assert (await client.post(f"/recurring-candidates/{cand['id']}/reject")).status_code == 409

    events = (await client.get('/calendar/events')).json()
    assert all(e['series_id'] == first.json()['id'] for e in events)
