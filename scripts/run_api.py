#!/usr/bin/env python3
"""
Start the Research Router API.

Usage:
  python scripts/run_api.py
  python scripts/run_api.py --port 8001 --host 0.0.0.0
  TASK_BACKEND=memory LLM_DRY_RUN=true python scripts/run_api.py   # no Redis, no API keys
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> None:
    from config.settings import settings
    parser = argparse.ArgumentParser(description="Run Research Router API")
    parser.add_argument("--host", default=settings.api.host, help="Bind host")
    parser.add_argument("--port", type=int, default=settings.api.port, help="Bind port")
    parser.add_argument("--reload", action="store_true", help="Enable reload (dev)")
    parser.add_argument("--info", action="store_true", help="Print resolved settings and exit")
    args = parser.parse_args()

    if args.info:
        settings.print_info()
        return

    import uvicorn
    from src.log import cleanup_logs

    cleanup_logs()
    if args.reload:
        # single process only: the worker and realtime sessions live in-process
        uvicorn.run("src.api.server:app", host=args.host, port=args.port, reload=True)
        return

    from src.api.server import app
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
