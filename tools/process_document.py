#!/usr/bin/env python3
"""Run the ingestion pipeline for one uploaded document.

Usage:
    python tools/process_document.py DOCUMENT_ID

Uses the same DATABASE_URL, STORAGE_DIR and OPENAI_API_KEY as the server.
Useful for re-running a document that failed or was processed with an older
prompt. Exits non-zero when the run fails.
"""
import os
import sys
proj_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if proj_root not in sys.path:
    sys.path.insert(0, proj_root)

import argparse
import asyncio
import logging

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


async def run(document_id: int) -> int:
    from calendarai.db import init_db
    from calendarai.pipeline import DocumentBusyError, DocumentProcessingError, process_document
    await init_db()
    try:
        result = await process_document(document_id)
    except (DocumentProcessingError, DocumentBusyError) as e:
        logger.error('document %s failed: %s', document_id, e)
        return 1
    logger.info('document %s: %d events in %.2fs (failed batches: %s)', document_id, result.events_count,
                result.processing_time_seconds, [i + 1 for i in result.failed_batches] or 'none')
    return 0


def main(argv=None):
    p = argparse.ArgumentParser(description='Process an uploaded document')
    p.add_argument('document_id', type=int)
    args = p.parse_args(argv if argv is not None else sys.argv[1:])
    return asyncio.run(run(args.document_id))


if __name__ == '__main__':
    raise SystemExit(main())
