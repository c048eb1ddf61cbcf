from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any, Optional, Sequence

from ..dishdb import DishDatabase, DishLogService
from ..dishdb.errors import DishLogError, ValidationError
from ..logging import get_logger
from ..paths import expand_abs

LOG = get_logger("cli-main")


def _service(ns: argparse.Namespace) -> DishLogService:
    return DishLogService(DishDatabase(ns.db, root_dir=os.getcwd()))


def _read_image(path: str) -> Optional[bytes]:
    try:
        with open(expand_abs(path), "rb") as fh:
            return fh.read()
    except OSError as exc:
        LOG.error(f"Cannot read image {path}: {exc}")
        return None


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _init(ns: argparse.Namespace) -> int:
    path = _service(ns).init_database()
    LOG.info(f"Dish DB ready at: {path}")
    print(path)
    return 0


def _extract(ns: argparse.Namespace) -> int:
    data = _read_image(ns.image)
    if data is None:
        return 2
    service = _service(ns)
    try:
        outcome = service.extract(data)
    finally:
        service.close()
    _print_json(outcome.as_dict())
    if outcome.degraded:
        LOG.error(f"Extraction degraded: {outcome.failure}")
        return 1
    return 0


def _ingest(ns: argparse.Namespace) -> int:
    try:
        if ns.json == "-":
            raw = sys.stdin.read()
        else:
            with open(expand_abs(ns.json), "r", encoding="utf-8") as fh:
                raw = fh.read()
        payload = json.loads(raw)
    except OSError as exc:
        LOG.error(f"Cannot read {ns.json}: {exc}")
        return 2
    except ValueError as exc:
        LOG.error(f"{ns.json} is not valid JSON: {exc}")
        return 2
    result = _service(ns).ingest(payload)
    _print_json(result.as_dict())
    return 0


def _scan(ns: argparse.Namespace) -> int:
    data = _read_image(ns.image)
    if data is None:
        return 2
    service = _service(ns)
    try:
        outcome, result = service.scan(data)
    finally:
        service.close()
    if result is None:
        _print_json(outcome.as_dict())
        LOG.error("Extraction degraded; nothing was stored. Review the receipt and use 'ingest' instead.")
        return 1
    _print_json(result.as_dict())
    return 0


def _serve(ns: argparse.Namespace) -> int:
    import uvicorn

    from ..dishdb.api.app import create_app

    allow_origins = ns.allow_origins
    if allow_origins and len(allow_origins) == 1 and allow_origins[0] == "*":
        allow_origins = ["*"]

    if ns.reload:
        # Reload needs an import string; the factory picks the DB up from the environment.
        if ns.db:
            os.environ["DISHLOG_DB_PATH"] = expand_abs(ns.db)
        if allow_origins:
            LOG.warning("--allow-origin is ignored with --reload; default origins apply")
        uvicorn.run(
            "dishlog.dishdb.api.app:create_app",
            factory=True,
            host=ns.host,
            port=ns.port,
            reload=True,
            log_level=ns.log_level,
        )
        return 0

    app = create_app(ns.db, allow_origins=allow_origins)
    uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dishlog",
        description="Record restaurant visits from receipt photos: extract, ingest, correct and serve.",
    )
    parser.add_argument("--db", help="SQLite database path (default: DISHLOG_DB_PATH or var/dishdb/dishlog.sqlite3)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init = subparsers.add_parser("init", help="Create/ensure the dish DB schema exists")
    init.set_defaults(handler=_init)

    extract = subparsers.add_parser("extract", help="Read a receipt image with the vision model (no DB writes)")
    extract.add_argument("--image", required=True, help="Path to receipt image (JPG/PNG/WEBP/HEIC)")
    extract.set_defaults(handler=_extract)

    ingest = subparsers.add_parser("ingest", help="Store a reviewed ParsedReceipt JSON document")
    ingest.add_argument("--json", required=True, help="Path to the JSON file, or '-' for stdin")
    ingest.set_defaults(handler=_ingest)

    scan = subparsers.add_parser("scan", help="Extract a receipt image and store it in one go")
    scan.add_argument("--image", required=True, help="Path to receipt image")
    scan.set_defaults(handler=_scan)

    serve = subparsers.add_parser("serve", help="Run the dish DB JSON API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8001)
    serve.add_argument("--reload", action="store_true", help="Enable auto-reload (development only)")
    serve.add_argument("--log-level", default="info")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve.set_defaults(handler=_serve)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.debug(f"CLI invoked with arguments: {provided}")

    args = build_parser().parse_args(provided)
    try:
        code = args.handler(args)
    except ValidationError as exc:
        LOG.error(f"Invalid input ({exc.field}): {exc.message}")
        code = 2
    except DishLogError as exc:
        LOG.error(f"{args.command} failed: {exc}")
        code = 1
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
