import httpx
import pytest

from calendarai.extraction import (
    BatchPersistError,
    CompletionParseError,
    CompletionServiceError,
    ExtractionSummary,
    LineExtraction,
    extract_batch,
    make_batches,
    parse_batch_content,
    run_batches,
)
from calendarai.normalizer import LineRecord
from conftest import chat_response, numbered_lines

BATCH = [LineRecord(1, 'Midterm 2025-11-14'), LineRecord(4, 'Final exam Dec 12')]

GOOD = {'events': [{'line_number': 1, 'event': 'Midterm', 'date_text': '2025-11-14', 'normalized_date': '2025-11-14'}]}


@pytest.mark.asyncio
async def test_retry_after_two_server_errors(fake_service, fake_completion):
    fake_service.queue = [httpx.Response(500), httpx.Response(503), chat_response(GOOD)]
    results = await extract_batch(fake_completion, BATCH)
    assert [r.line_number for r in results] == [1]
    assert len(fake_service.requests) == 3
    assert fake_service.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_client_error_is_not_retried(fake_service, fake_completion):
    fake_service.queue = [httpx.Response(404, text='no such model')]
    with pytest.raises(CompletionServiceError) as excinfo:
        await extract_batch(fake_completion, BATCH)
    assert excinfo.value.status_code == 404
    assert not excinfo.value.retryable
    assert len(fake_service.requests) == 1
    assert fake_service.delays == []


@pytest.mark.asyncio
async def test_retries_exhausted_after_three_attempts(fake_service, fake_completion):
    fake_service.default = lambda payload: httpx.Response(500)
    with pytest.raises(CompletionServiceError) as excinfo:
        await extract_batch(fake_completion, BATCH)
    assert excinfo.value.status_code == 500
    assert len(fake_service.requests) == 3
    assert fake_service.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_network_errors_are_retried(fake_service, fake_completion):
    fake_service.queue = [httpx.ConnectError('connection refused'), chat_response(GOOD)]
    results = await extract_batch(fake_completion, BATCH)
    assert len(results) == 1
    assert fake_service.delays == [0.5]


@pytest.mark.asyncio
async def test_unparseable_output_is_requested_once_more(fake_service, fake_completion):
    fake_service.queue = [chat_response('Sure! Here are your events: ...'), chat_response(GOOD)]
    results = await extract_batch(fake_completion, BATCH)
    assert [r.event for r in results] == ['Midterm']
    assert len(fake_service.requests) == 2
    assert fake_service.requests[0] == fake_service.requests[1]
    assert fake_service.delays == []


@pytest.mark.asyncio
async def test_unparseable_output_twice_raises_parse_error(fake_service, fake_completion):
    fake_service.default = lambda payload: chat_response('{"events": "not a list"}')
    with pytest.raises(CompletionParseError):
        await extract_batch(fake_completion, BATCH)
    assert len(fake_service.requests) == 2


@pytest.mark.asyncio
async def test_request_carries_numbered_lines_and_json_mode(fake_service, fake_completion):
    fake_service.queue = [chat_response({'events': []})]
    assert await extract_batch(fake_completion, BATCH) == []
    payload = fake_service.requests[0]
    assert payload['response_format'] == {'type': 'json_object'}
    assert payload['temperature'] == 0
    assert numbered_lines(payload) == [(1, 'Midterm 2025-11-14'), (4, 'Final exam Dec 12')]


@pytest.mark.asyncio
async def test_empty_batch_makes_no_request(fake_service, fake_completion):
    assert await extract_batch(fake_completion, []) == []
    assert fake_service.requests == []


def test_parse_batch_content_tolerates_missing_events_and_extra_fields():
    assert parse_batch_content('{}') == []
    assert parse_batch_content('{"events": null}') == []
    assert parse_batch_content(None) == []
    results = parse_batch_content(
        '{"events": [{"line_number": "3", "event": " Lab ", "date_text": "Mar 3", '
        '"normalized_date": "", "day_of_week": "  ", "is_range_with_day": null, "confidence": 99}]}'
    )
    assert results == [LineExtraction(line_number=3, event='Lab', date_text='Mar 3')]
    assert results[0].normalized_date is None
    assert results[0].day_of_week is None
    assert results[0].is_range_with_day is False


def test_parse_batch_content_rejects_bad_shapes():
    with pytest.raises(CompletionParseError):
        parse_batch_content('[1, 2, 3]')
    with pytest.raises(CompletionParseError):
        parse_batch_content('{"events": [{"event": "no line number"}]}')


def test_make_batches():
    lines = [LineRecord(i, f'line {i}') for i in range(1, 26)]
    batches = make_batches(lines, 10)
    assert [len(b) for b in batches] == [10, 10, 5]
    assert batches[2][0].line_number == 21
    assert make_batches([], 10) == []
    with pytest.raises(ValueError):
        make_batches(lines, 0)


@pytest.mark.asyncio
async def test_run_batches_is_sequential_and_absorbs_failed_batches():
    lines = [LineRecord(i, f'Item {i} 2025-11-{i:02d}') for i in range(1, 26)]
    calls = []
    persisted = []
    sleeps = []
    progress = []

    async def extract(batch):
        calls.append(batch[0].line_number)
        if batch[0].line_number == 11:
            raise CompletionServiceError('HTTP 502', 502)
        return [LineExtraction(line_number=l.line_number, event=l.text) for l in batch]

    async def persist(index, results):
        persisted.append((index, len(results)))
        return len(results)

    async def sleep(d):
        sleeps.append(d)

    async def on_progress(done, total):
        progress.append((done, total))

    summary = await run_batches(lines, extract, persist, batch_size=10, delay=0.4, sleep=sleep,
                                on_progress=on_progress)
    assert calls == [1, 11, 21]
    # failed batch is never persisted; later batches still run
    assert persisted == [(0, 10), (2, 5)]
    assert sleeps == [0.4, 0.4]
    assert progress == [(1, 3), (2, 3), (3, 3)]
    assert summary == ExtractionSummary(batches=3, results=15, persisted=15, failed_batches=(1,))


@pytest.mark.asyncio
async def test_run_batches_with_no_lines():
    async def boom(*args):
        raise AssertionError('should not be called')

    summary = await run_batches([], boom, boom)
    assert summary == ExtractionSummary()


def _structured_content_response(payload):
    # some compatible providers hand back the decoded object instead of a JSON string
    return httpx.Response(200, json={'choices': [{'message': {'role': 'assistant', 'content': {'events': []}}}]})


@pytest.mark.asyncio
async def test_non_string_content_is_a_parse_failure(fake_service, fake_completion):
    fake_service.default = _structured_content_response
    with pytest.raises(CompletionParseError):
        await extract_batch(fake_completion, BATCH)
    # the normal one-shot re-request still happens
    assert len(fake_service.requests) == 2


@pytest.mark.asyncio
async def test_run_batches_absorbs_failed_saves():
    lines = [LineRecord(i, f'Item {i} 2025-11-{i:02d}') for i in range(1, 16)]
    extracted = []

    async def extract(batch):
        extracted.append(batch[0].line_number)
        return [LineExtraction(line_number=l.line_number, event=l.text) for l in batch]

    async def persist(index, results):
        if index == 0:
            raise BatchPersistError('CHECK constraint failed')
        return len(results)

    async def sleep(d):
        pass

    summary = await run_batches(lines, extract, persist, batch_size=10, delay=0.4, sleep=sleep)
    assert extracted == [1, 11]
    assert summary.failed_batches == (0,)
    assert summary.persisted == 5
    assert summary.results == 15
