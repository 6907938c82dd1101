#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backoffice.office_core.config import get_settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Start the back-office FastAPI service.")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: PORT or 3000)")
    parser.add_argument("--reload", action="store_true", help="Enable uvicorn reload mode")
    parser.add_argument("--log-level", default="info", help="Log level (default: info)")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
    )
    settings = get_settings()
    port = args.port or settings.port
    print(f"[start_api] data_dir={settings.data_dir} public_dir={settings.public_dir} port={port}")
    if not settings.external_api_key:
        print("[start_api] EXTERNAL_API_KEY is not set; /api/external/chat will answer 500")

    uvicorn.run(
        "backoffice.office_api.main:create_app",
        factory=True,
        host=args.host,
        port=port,
        reload=args.reload,
        log_level=args.log_level,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
