#!/usr/bin/env python3
"""Admin script to add or update a user.

Usage:
    python tools/add_user.py username [password]

Initializes the DB if needed, then creates or updates the User with a hashed
password. Omit the password to be prompted for it.
"""
import os
import sys
proj_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if proj_root not in sys.path:
    sys.path.insert(0, proj_root)

import argparse
import asyncio
import getpass


async def _create_or_update(username: str, password: str):
    # imported lazily so `-h` works without the runtime dependencies
    from calendarai.db import init_db, async_session
    from calendarai.models import User
    from calendarai.auth import pwd_context
    from sqlmodel import select
    await init_db()
    async with async_session() as sess:
        q = await sess.exec(select(User).where(User.username == username))
        user = q.first() or User(username=username, password_hash='')
        user.password_hash = pwd_context.hash(password)
        sess.add(user)
        await sess.commit()
        await sess.refresh(user)
        return user


def parse_args(argv):
    p = argparse.ArgumentParser(description="Create or update a user")
    p.add_argument("username", help="username to create/update")
    p.add_argument("password", nargs="?", help="password for the user (omit to prompt)")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv if argv is not None else sys.argv[1:])
    password = args.password
    if not password:
        pw = getpass.getpass("Password: ")
        if pw != getpass.getpass("Confirm password: "):
            print("Passwords do not match", file=sys.stderr)
            return 2
        if not pw:
            print("Empty password not allowed", file=sys.stderr)
            return 2
        password = pw
    user = asyncio.run(_create_or_update(args.username, password))
    print(f"User '{user.username}' saved with id={user.id}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
