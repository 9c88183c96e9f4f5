"""Run recurring-pattern detection for every user.

Creates or refreshes pending RecurringCandidate rows from each user's
unlinked calendar events. Accepted and rejected candidates are left as they
are, so the script is safe to run repeatedly (e.g. nightly).

Usage: python tools/detect_recurring.py [--min-occurrences N]
"""
import os
import sys
proj_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if proj_root not in sys.path:
    sys.path.insert(0, proj_root)

import argparse
import asyncio
import logging

from sqlmodel import select

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


async def main(min_occurrences: int):
    from calendarai.db import async_session, init_db
    from calendarai.models import User
    from calendarai.series_store import detect_recurring_candidates
    await init_db()
    async with async_session() as sess:
        q = await sess.exec(select(User.id).order_by(User.id))
        user_ids = q.all()
    total = 0
    for uid in user_ids:
        async with async_session() as sess:
            found = await detect_recurring_candidates(sess, uid, min_occurrences=min_occurrences)
        total += len(found)
    logger.info('detection complete: %d users, %d candidates created or refreshed', len(user_ids), total)


if __name__ == '__main__':
    p = argparse.ArgumentParser(description='Detect recurring calendar patterns')
    p.add_argument('--min-occurrences', type=int, default=3)
    args = p.parse_args()
    asyncio.run(main(args.min_occurrences))
