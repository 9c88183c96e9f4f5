"""Runtime configuration for the CalendarAI ingestion service.

Values are read from environment variables at import time so deployments and
tests can override them without code changes.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _float_list(v: str | None, default: tuple[float, ...]) -> tuple[float, ...]:
    if not v:
        return default
    try:
        return tuple(float(p) for p in v.split(',') if p.strip())
    except ValueError:
        return default


# Async SQLAlchemy URL. Tests point this at a throwaway SQLite file.
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./calendarai.db')

# Root directory of the local object store used for uploaded documents.
STORAGE_DIR = os.getenv('STORAGE_DIR', './storage')

# Maximum accepted upload size in megabytes.
try:
    MAX_UPLOAD_MB = int(os.getenv('MAX_UPLOAD_MB', '25'))
except ValueError:
    MAX_UPLOAD_MB = 25

# Completion service (OpenAI-compatible chat completions endpoint).
COMPLETION_API_URL = os.getenv('COMPLETION_API_URL', 'https://api.openai.com/v1/chat/completions')
COMPLETION_MODEL = os.getenv('COMPLETION_MODEL', 'gpt-4o')
VISION_MODEL = os.getenv('VISION_MODEL', 'gpt-4o')
try:
    COMPLETION_TIMEOUT_SECONDS = float(os.getenv('COMPLETION_TIMEOUT_SECONDS', '60'))
except ValueError:
    COMPLETION_TIMEOUT_SECONDS = 60.0


def completion_api_key() -> str | None:
    """Return the completion service key. Read lazily so tests can set it late."""
    return os.getenv('OPENAI_API_KEY') or None


# Extraction batching. Batches run strictly in sequence with a fixed pause
# between them to stay under the provider's rate limits.
try:
    EXTRACTION_BATCH_SIZE = int(os.getenv('EXTRACTION_BATCH_SIZE', '10'))
except ValueError:
    EXTRACTION_BATCH_SIZE = 10
try:
    EXTRACTION_BATCH_DELAY_SECONDS = float(os.getenv('EXTRACTION_BATCH_DELAY_SECONDS', '0.4'))
except ValueError:
    EXTRACTION_BATCH_DELAY_SECONDS = 0.4
try:
    EXTRACTION_MAX_ATTEMPTS = int(os.getenv('EXTRACTION_MAX_ATTEMPTS', '3'))
except ValueError:
    EXTRACTION_MAX_ATTEMPTS = 3
# Backoff before retry N (0-indexed). Only the first MAX_ATTEMPTS-1 are used.
EXTRACTION_RETRY_DELAYS = _float_list(os.getenv('EXTRACTION_RETRY_DELAYS'), (0.5, 1.0, 2.0))

# Date ordering used when resolving numeric raw date text on import:
# 'MDY' (11/14/2025) or 'DMY' (14/11/2025).
DATE_ORDER = os.getenv('DATE_ORDER', 'MDY').upper()

# Number of characters of cleaned text kept on the Document row.
EXTRACTED_TEXT_EXCERPT_CHARS = 5000

# PDF pages with less embedded text than this are sent for OCR instead.
PDF_MIN_PAGE_TEXT_CHARS = 50

# When true, log the first characters of every raw model response. Useful
# when tuning the extraction prompt; noisy otherwise.
LOG_MODEL_RESPONSES = _trueish(os.getenv('LOG_MODEL_RESPONSES', '0'))
