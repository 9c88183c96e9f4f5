"""Raw text extraction per media type.

PDFs are read page by page with pdfplumber; pages without a usable text
layer (scans) are rendered and sent to the vision model. Images go straight
to the vision model. Everything else is decoded as UTF-8 text.
"""
from io import BytesIO
import logging
from typing import Any, Awaitable, Callable, Optional

import pdfplumber

from . import config
from .extraction import CompletionClient, CompletionParseError, CompletionServiceError

logger = logging.getLogger(__name__)

ProgressFn = Callable[[int], Awaitable[Any]]

PDF_PROGRESS_START = 30
PDF_PROGRESS_END = 70
PAGE_RENDER_RESOLUTION = 144


class TextExtractionError(Exception):
    """The document is unreadable or yielded no text at all."""


def _render_page_png(page) -> bytes:
    img = page.to_image(resolution=PAGE_RENDER_RESOLUTION).original
    buf = BytesIO()
    img.save(buf, format='PNG')
    return buf.getvalue()


async def extract_pdf_text(data: bytes, completion: CompletionClient, on_progress: Optional[ProgressFn] = None) -> str:
    texts: list[str] = []
    try:
        pdf = pdfplumber.open(BytesIO(data))
    except Exception as e:
        raise TextExtractionError(f'Failed to read PDF: {e}') from e
    with pdf:
        pages = pdf.pages
        total = len(pages)
        logger.info('PDF has %d pages', total)
        for index, page in enumerate(pages, start=1):
            page_text = (page.extract_text() or '').strip()
            if len(page_text) > config.PDF_MIN_PAGE_TEXT_CHARS:
                texts.append(page_text)
            else:
                logger.info('page %d has little embedded text, using OCR', index)
                try:
                    png = _render_page_png(page)
                    ocr = await completion.transcribe_image(png, 'image/png')
                except (CompletionServiceError, CompletionParseError) as e:
                    logger.warning('OCR failed for page %d: %s', index, e)
                    ocr = ''
                except Exception:
                    logger.exception('could not render page %d', index)
                    ocr = ''
                if ocr.strip():
                    texts.append(ocr.strip())
                elif page_text:
                    texts.append(page_text)
            if on_progress is not None and total:
                span = PDF_PROGRESS_END - PDF_PROGRESS_START
                await on_progress(PDF_PROGRESS_START + (index * span) // total)
    return '\n\n'.join(texts)


async def extract_image_text(data: bytes, media_type: str, completion: CompletionClient,
                             on_progress: Optional[ProgressFn] = None) -> str:
    if on_progress is not None:
        await on_progress(50)
    try:
        text = await completion.transcribe_image(data, media_type)
    except CompletionServiceError as e:
        raise TextExtractionError(f'Vision API error: {e}') from e
    if not text.strip():
        raise TextExtractionError('No text could be extracted from the image')
    if on_progress is not None:
        await on_progress(70)
    return text


def decode_text(data: bytes) -> str:
    return data.decode('utf-8', errors='replace').lstrip('\ufeff')


async def extract_document_text(
    file_type: str | None,
    data: bytes,
    completion: CompletionClient,
    on_progress: Optional[ProgressFn] = None,
) -> str:
    media_type = (file_type or '').split(';')[0].strip().lower()
    if media_type == 'application/pdf':
        return await extract_pdf_text(data, completion, on_progress)
    if media_type.startswith('image/'):
        return await extract_image_text(data, media_type, completion, on_progress)
    text = decode_text(data)
    if on_progress is not None:
        await on_progress(70)
    return text
