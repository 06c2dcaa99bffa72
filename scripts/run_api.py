#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="HTTP API only: real-time ingest, callbacks, sequence management")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8787)
    return parser.parse_args()


def main() -> int:
    load_dotenv()
    args = parse_args()
    from leadflow.api_server import run_server
    from leadflow.config import get_config
    from leadflow.engine import OutreachEngine

    engine = OutreachEngine.from_config(get_config())
    engine.cache.start_sweeper(engine.cfg.cache.sweep_seconds)
    try:
        run_server(engine, host=args.host, port=args.port)
    except KeyboardInterrupt:
        pass
    finally:
        engine.cache.stop_sweeper()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
