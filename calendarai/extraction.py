"""Batched structured extraction against an OpenAI-compatible completion service.

Candidate lines are sent in fixed-size batches, strictly one after another.
Each request is retried on 5xx/network failures with increasing backoff; 4xx
responses are not retried. When the service answers but the message content
is not valid JSON for the batch contract, the identical request is sent one
more time before the batch is given up. A failed batch contributes no results
and never stops the batches after it.
"""
from dataclasses import dataclass, field, replace
import asyncio
import base64
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from . import config
from .normalizer import LineRecord

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class CompletionServiceError(Exception):
    """Transport or HTTP failure talking to the completion service.

    status_code is None for network errors and timeouts.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500


class CompletionParseError(Exception):
    """The service answered, but the content did not match the batch contract."""


class BatchPersistError(Exception):
    """A batch was extracted but its rows could not be saved."""


class LineExtraction(BaseModel):
    """One per-line result of the batch contract.

    Only the fields below are read; anything else the model returns is
    ignored. Empty strings are treated as absent.
    """
    model_config = ConfigDict(extra='ignore')

    line_number: int
    event: str = ''
    date_text: str = ''
    normalized_date: Optional[str] = None
    normalized_end_date: Optional[str] = None
    day_of_week: Optional[str] = None
    recurrence_pattern: Optional[str] = None
    is_range_with_day: bool = False

    @field_validator('event', 'date_text', mode='before')
    @classmethod
    def _text_or_empty(cls, v):
        if v is None:
            return ''
        return str(v).strip()

    @field_validator('normalized_date', 'normalized_end_date', 'day_of_week', 'recurrence_pattern', mode='before')
    @classmethod
    def _blank_to_none(cls, v):
        if v is None:
            return None
        s = str(v).strip()
        return s or None

    @field_validator('is_range_with_day', mode='before')
    @classmethod
    def _none_is_false(cls, v):
        return False if v is None else v


class BatchExtraction(BaseModel):
    """The JSON object the service must return for a batch."""
    model_config = ConfigDict(extra='ignore')

    events: list[LineExtraction] = Field(default_factory=list)

    @field_validator('events', mode='before')
    @classmethod
    def _missing_is_empty(cls, v):
        return [] if v is None else v


SYSTEM_PROMPT = 'You extract dated events from document lines. Always answer with a single valid JSON object.'

EXTRACTION_INSTRUCTIONS = """Each input line is prefixed with its line number. Return exactly one result for every line that contains an explicit calendar date (for example "Nov 14, 2025", "11/14/2025", "March 3", "2025-03-03"). Never skip a dated line.

Rules:
- Do not invent information and never guess a missing year.
- Do not expand or split date ranges; report the range boundaries only.
- date_text is the date portion exactly as written in the line.
- event is the title or description that goes with the date on that line.
- For a date range, normalized_date is the first day and normalized_end_date the last day.
- day_of_week lists weekday patterns such as "every Monday", "Mondays", "Mon/Wed/Fri" or "Tuesdays and Thursdays" as comma separated names.
- recurrence_pattern is a keyword such as "weekly", "daily", "biweekly" or "every" when the line has one.
- is_range_with_day is true only when the line has both a date range and a weekday pattern.

Answer with this JSON object:
{
  "events": [
    {
      "line_number": <number>,
      "event": "<title from the line>",
      "date_text": "<date text as written>",
      "normalized_date": "<YYYY-MM-DD or empty>",
      "normalized_end_date": "<YYYY-MM-DD or empty>",
      "day_of_week": "<e.g. Monday or Mon,Wed,Fri, or empty>",
      "recurrence_pattern": "<weekly, daily, biweekly, every, or empty>",
      "is_range_with_day": <true or false>
    }
  ]
}

Examples:
- "Every Monday from Nov 1 to Dec 15: Team Meeting" -> normalized_date "2025-11-01", normalized_end_date "2025-12-15", day_of_week "Monday", recurrence_pattern "weekly", is_range_with_day true
- "Tuesdays and Thursdays Jan 10-20: Office Hours" -> normalized_date "2026-01-10", normalized_end_date "2026-01-20", day_of_week "Tuesday,Thursday", is_range_with_day true
- "Nov 14, 2025: Midterm Exam" -> normalized_date "2025-11-14", day_of_week "", is_range_with_day false"""

IMAGE_TRANSCRIPTION_PROMPT = (
    'Extract all text from this image. Return only the raw text content, preserving line breaks '
    'and structure. Do not add any explanations or formatting.'
)


class CompletionClient:
    """Small async client for the chat-completions endpoint.

    Use as an async context manager, or call aclose() when done. transport
    and sleep are injectable so tests can stub the service and observe
    backoff delays without waiting.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        api_url: str | None = None,
        model: str | None = None,
        vision_model: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        retry_delays: Sequence[float] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.api_url = api_url or config.COMPLETION_API_URL
        self.model = model or config.COMPLETION_MODEL
        self.vision_model = vision_model or config.VISION_MODEL
        self.max_attempts = max(1, max_attempts or config.EXTRACTION_MAX_ATTEMPTS)
        self.retry_delays = tuple(retry_delays if retry_delays is not None else config.EXTRACTION_RETRY_DELAYS)
        self._sleep = sleep
        headers = {'Content-Type': 'application/json'}
        if api_key:
            headers['Authorization'] = f'Bearer {api_key}'
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=timeout or config.COMPLETION_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self) -> 'CompletionClient':
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after the given 0-indexed failed attempt."""
        if not self.retry_delays:
            return 0.0
        if attempt < len(self.retry_delays):
            return self.retry_delays[attempt]
        extra = attempt - len(self.retry_delays) + 1
        return self.retry_delays[-1] * (2 ** extra)

    async def post_once(self, payload: dict) -> httpx.Response:
        try:
            response = await self._client.post(self.api_url, json=payload)
        except httpx.TimeoutException as e:
            raise CompletionServiceError(f'timeout: {e}') from e
        except httpx.TransportError as e:
            raise CompletionServiceError(f'network error: {e}') from e
        if response.is_success:
            return response
        raise CompletionServiceError(f'HTTP {response.status_code}: {response.text[:500]}', response.status_code)

    async def post_with_retry(self, payload: dict) -> httpx.Response:
        for attempt in range(self.max_attempts):
            try:
                return await self.post_once(payload)
            except CompletionServiceError as e:
                if not e.retryable or attempt == self.max_attempts - 1:
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning(
                    'completion request failed (attempt %d/%d), retrying in %.1fs: %s',
                    attempt + 1, self.max_attempts, delay, e,
                )
                await self._sleep(delay)
        # max_attempts >= 1 so the loop always returns or raises
        raise CompletionServiceError('all retry attempts failed')

    async def complete_structured(self, payload: dict, parse: Callable[[str], Any]) -> Any:
        """Send payload and parse the message content.

        On a parse failure the same request is sent once more, without the
        retry loop. A second parse failure raises CompletionParseError.
        """
        response = await self.post_with_retry(payload)
        try:
            return parse(message_content(response))
        except CompletionParseError as e:
            logger.warning('unparseable completion output, retrying request once: %s', e)
        response = await self.post_once(payload)
        return parse(message_content(response))

    async def transcribe_image(self, data: bytes, media_type: str) -> str:
        """Return the text the vision model reads from an image ('' if none)."""
        encoded = base64.b64encode(data).decode('ascii')
        payload = {
            'model': self.vision_model,
            'messages': [
                {
                    'role': 'user',
                    'content': [
                        {'type': 'text', 'text': IMAGE_TRANSCRIPTION_PROMPT},
                        {'type': 'image_url', 'image_url': {'url': f'data:{media_type};base64,{encoded}'}},
                    ],
                },
            ],
            'max_tokens': 4000,
        }
        response = await self.post_with_retry(payload)
        try:
            content = message_content(response)
        except CompletionParseError:
            logger.warning('vision response had no readable body')
            return ''
        return content or ''


def message_content(response: httpx.Response) -> str | None:
    """Pull choices[0].message.content out of a chat-completions response."""
    try:
        data = response.json()
    except ValueError as e:
        raise CompletionParseError(f'response body is not JSON: {response.text[:200]!r}') from e
    if not isinstance(data, dict):
        raise CompletionParseError('response body is not a JSON object')
    choices = data.get('choices') or []
    if not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get('message') or {}
    content = message.get('content') if isinstance(message, dict) else None
    if content is not None and not isinstance(content, str):
        raise CompletionParseError(f'message content is {type(content).__name__}, expected a string')
    if config.LOG_MODEL_RESPONSES and content:
        logger.info('model response: %s', content[:500])
    return content


def parse_batch_content(content: str | None) -> list[LineExtraction]:
    """Validate message content against the batch contract.

    Missing content or a missing/empty events array yields no results; any
    other deviation is a CompletionParseError.
    """
    if not content:
        logger.warning('completion returned no content')
        return []
    try:
        data = json.loads(content)
    except ValueError as e:
        raise CompletionParseError(f'content is not JSON: {content[:200]!r}') from e
    if not isinstance(data, dict):
        raise CompletionParseError('content is not a JSON object')
    try:
        return BatchExtraction.model_validate(data).events
    except ValidationError as e:
        raise CompletionParseError(f'content does not match the batch contract: {e.error_count()} errors') from e


def build_batch_payload(batch: Sequence[LineRecord], model: str) -> dict:
    numbered = '\n'.join(f'{line.line_number}: {line.text}' for line in batch)
    return {
        'model': model,
        'messages': [
            {'role': 'system', 'content': SYSTEM_PROMPT},
            {'role': 'user', 'content': f'{EXTRACTION_INSTRUCTIONS}\n\nLines:\n{numbered}'},
        ],
        'temperature': 0,
        'response_format': {'type': 'json_object'},
    }


async def extract_batch(client: CompletionClient, batch: Sequence[LineRecord]) -> list[LineExtraction]:
    if not batch:
        return []
    logger.info('sending %d lines for extraction', len(batch))
    payload = build_batch_payload(batch, client.model)
    results = await client.complete_structured(payload, parse_batch_content)
    logger.info('extracted %d results from %d lines', len(results), len(batch))
    return results


def make_batches(lines: Sequence[LineRecord], size: int | None = None) -> list[list[LineRecord]]:
    size = size or config.EXTRACTION_BATCH_SIZE
    if size < 1:
        raise ValueError('batch size must be positive')
    return [list(lines[i:i + size]) for i in range(0, len(lines), size)]


@dataclass(frozen=True)
class BatchOutcome:
    index: int
    line_numbers: tuple[int, ...]
    results: int = 0
    persisted: int = 0
    error: str | None = None


@dataclass(frozen=True)
class ExtractionSummary:
    """Accumulated state threaded through the batch loop."""
    batches: int = 0
    results: int = 0
    persisted: int = 0
    failed_batches: tuple[int, ...] = field(default_factory=tuple)

    def fold(self, outcome: BatchOutcome) -> 'ExtractionSummary':
        failed = self.failed_batches + ((outcome.index,) if outcome.error else ())
        return replace(
            self,
            results=self.results + outcome.results,
            persisted=self.persisted + outcome.persisted,
            failed_batches=failed,
        )


ExtractFn = Callable[[Sequence[LineRecord]], Awaitable[list[LineExtraction]]]
PersistFn = Callable[[int, list[LineExtraction]], Awaitable[int]]
ProgressFn = Callable[[int, int], Awaitable[Any]]


async def run_batch(index: int, batch: Sequence[LineRecord], extract: ExtractFn, persist: PersistFn) -> BatchOutcome:
    """Extract and persist one batch; failures are absorbed into the outcome."""
    line_numbers = tuple(line.line_number for line in batch)
    try:
        results = await extract(batch)
    except (CompletionServiceError, CompletionParseError) as e:
        logger.error('extraction batch %d (lines %s) failed: %s', index + 1, line_numbers, e)
        return BatchOutcome(index=index, line_numbers=line_numbers, error=str(e))
    try:
        persisted = await persist(index, results)
    except BatchPersistError as e:
        logger.error('saving batch %d (lines %s) failed: %s', index + 1, line_numbers, e)
        return BatchOutcome(index=index, line_numbers=line_numbers, results=len(results), error=str(e))
    return BatchOutcome(index=index, line_numbers=line_numbers, results=len(results), persisted=persisted)


async def run_batches(
    lines: Sequence[LineRecord],
    extract: ExtractFn,
    persist: PersistFn,
    *,
    batch_size: int | None = None,
    delay: float | None = None,
    sleep: Sleep = asyncio.sleep,
    on_progress: ProgressFn | None = None,
) -> ExtractionSummary:
    """Run every batch in line order, persisting each before the next starts."""
    batches = make_batches(lines, batch_size)
    pause = config.EXTRACTION_BATCH_DELAY_SECONDS if delay is None else delay
    summary = ExtractionSummary(batches=len(batches))
    for index, batch in enumerate(batches):
        logger.info('processing line batch %d/%d', index + 1, len(batches))
        outcome = await run_batch(index, batch, extract, persist)
        summary = summary.fold(outcome)
        if on_progress is not None:
            await on_progress(index + 1, len(batches))
        if index < len(batches) - 1:
            await sleep(pause)
    if summary.failed_batches:
        logger.warning('%d of %d extraction batches failed: %s', len(summary.failed_batches), summary.batches,
                       [i + 1 for i in summary.failed_batches])
    return summary
