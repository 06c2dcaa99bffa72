#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Lead ingestion and multi-step outreach engine")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the batch poller and dispatcher workers plus the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8787)
    serve.add_argument("--no-api", action="store_true", help="Run workers only")

    sub.add_parser("poll-once", help="Poll the configured batch source once")
    sub.add_parser("tick-once", help="Dispatch due executions once")
    sub.add_parser("evaluate-abandonment", help="Flag inactive visitors and enroll them in the recovery sequence")
    sub.add_parser("health", help="Check the batch source connection")

    ingest = sub.add_parser("ingest-file", help="Import a local delimited file (file name is the idempotency key)")
    ingest.add_argument("path", type=Path)
    ingest.add_argument("--source", default="manual")
    ingest.add_argument("--strict", action="store_true", help="Exit with an error instead of a summary when the file aborts")

    return parser


def _print(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main() -> int:
    load_dotenv()
    args = build_parser().parse_args()

    from leadflow.config import get_config
    from leadflow.engine import OutreachEngine

    engine = OutreachEngine.from_config(get_config())

    if args.command == "poll-once":
        if engine.poller is None:
            print("No batch source configured (LEADFLOW_SFTP_HOST or LEADFLOW_BATCH_DIR)", file=sys.stderr)
            return 2
        _print(engine.poller.poll_once().to_dict())
        return 0

    if args.command == "tick-once":
        _print(engine.dispatcher.tick().to_dict())
        return 0

    if args.command == "evaluate-abandonment":
        _print(engine.abandonment.evaluate().to_dict())
        return 0

    if args.command == "health":
        if engine.poller is None:
            _print({"ok": False, "error": "batch source not configured"})
            return 2
        status = engine.poller.health_check()
        _print(status)
        return 0 if status["ok"] else 1

    if args.command == "ingest-file":
        from leadflow.errors import ArtifactAbortedError

        try:
            result = engine.ingestion.ingest_file(args.path, source=args.source, strict=args.strict)
        except ArtifactAbortedError as exc:
            print(f"ingest failed: {exc}", file=sys.stderr)
            return 1
        _print(result.to_dict())
        return 1 if result.aborted else 0

    if args.command == "serve":
        engine.start()
        try:
            if args.no_api:
                stop = threading.Event()
                signal.signal(signal.SIGTERM, lambda *_: stop.set())
                try:
                    stop.wait()
                except KeyboardInterrupt:
                    pass
            else:
                from leadflow.api_server import run_server

                try:
                    run_server(engine, host=args.host, port=args.port)
                except KeyboardInterrupt:
                    pass
        finally:
            engine.stop()
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
