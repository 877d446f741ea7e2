from __future__ import annotations

import argparse
from typing import List, Optional

import uvicorn

from .config import configure_logging, settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="billtrack", description="Run the BillTrack API server")
    parser.add_argument("--host", default=settings.host, help=f"Bind address (default: {settings.host})")
    parser.add_argument("--port", type=int, default=settings.port, help=f"Bind port (default: {settings.port})")
    parser.add_argument("--log-level", default=settings.log_level, help="Log level for the billtrack loggers")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings.log_level = str(args.log_level).upper()
    configure_logging(settings)
    # log_config=None keeps uvicorn from replacing the billtrack handlers.
    uvicorn.run("billtrack.main:app", host=args.host, port=args.port, reload=args.reload, log_config=None)


if __name__ == "__main__":
    main()
