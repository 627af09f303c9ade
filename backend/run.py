#!/usr/bin/env python
"""
Start the shot detection API with uvicorn.

Usage:
    python run.py
    python run.py --port 8000 --log-level debug
    python run.py --reload

Progress lives in process memory, so the server always runs a single worker;
a second worker would answer /progress for jobs it never saw.
"""

import argparse
import os
import sys

# Modules under src/ are imported top-level (main, services, db)
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

import uvicorn
from dotenv import load_dotenv

LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve POST /api/detect and GET /api/progress")
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"), help="Interface to bind (env HOST)")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", 8000)), help="Port to bind (env PORT)")
    parser.add_argument("--reload", action="store_true", help="Restart on source changes (development only)")
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default=os.getenv("LOG_LEVEL", "info").lower(),
        help="uvicorn log level (env LOG_LEVEL)",
    )
    return parser.parse_args(argv)


def main(argv=None) -> None:
    load_dotenv()
    args = parse_args(argv)

    print(f"Shot detection API listening on http://{args.host}:{args.port} (docs at /docs)")

    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
        workers=1,
    )


if __name__ == "__main__":
    main()
