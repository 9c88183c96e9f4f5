#!/usr/bin/env python3
"""Run the API server.

Usage:
    python tools/serve.py [--host 127.0.0.1] [--port 8000] [--reload]

SECRET_KEY must be set in the environment; the app refuses to start with
the built-in fallback.
"""
import os
import sys
proj_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if proj_root not in sys.path:
    sys.path.insert(0, proj_root)

import argparse

import uvicorn


def parse_args(argv):
    p = argparse.ArgumentParser(description='Serve the calendarai API')
    p.add_argument('--host', default=os.getenv('HOST', '127.0.0.1'))
    p.add_argument('--port', type=int, default=int(os.getenv('PORT', '8000')))
    p.add_argument('--reload', action='store_true', help='restart on code changes (development only)')
    p.add_argument('--log-level', default='info')
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv if argv is not None else sys.argv[1:])
    uvicorn.run('calendarai.main:app', host=args.host, port=args.port, reload=args.reload,
                log_level=args.log_level)
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
