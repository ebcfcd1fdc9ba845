#!/usr/bin/env python3
"""Command-line interface for the ingestion engine.

Commands:
  - ingest validate : Validate a sources file without contacting any source
  - ingest discover : List the documents each source would process
  - ingest run      : Discover, extract and transform every enabled source

Typical usage:
  ingest validate --config src/configs/sources.yaml
  ingest run --config src/configs/sources.yaml --output out/documents.jsonl
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from src.configs.settings import get_settings
from src.ingestion.engine import BatchStatus, IngestionEngine
from src.ingestion.errors import ConfigurationError
from src.ingestion.loader import load_engine_from_config, read_sources_file
from src.ingestion.monitoring.logging import LoggingOptions, setup_logging


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="ingest", description="Source ingestion engine CLI")
    p.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    p.add_argument("--json-logs", action="store_true", help="Emit JSON logs")
    sub = p.add_subparsers(dest="cmd")

    pv = sub.add_parser("validate", help="Validate a sources file")
    pv.add_argument("--config", "-c", default=None, help="Path to the sources YAML file")

    pd = sub.add_parser("discover", help="List discovered documents")
    pd.add_argument("--config", "-c", default=None, help="Path to the sources YAML file")
    pd.add_argument("--only", nargs="*", default=None, help="Only these source ids")

    pr = sub.add_parser("run", help="Process every enabled source")
    pr.add_argument("--config", "-c", default=None, help="Path to the sources YAML file")
    pr.add_argument("--only", nargs="*", default=None, help="Only these source ids")
    pr.add_argument("--output", "-o", default=None, help="Write processed documents as JSON lines")
    pr.add_argument(
        "--advance-cursors",
        action="store_true",
        help="Advance each source's cursor after a batch without failures",
    )

    return p.parse_args(argv)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _selected(engine: IngestionEngine, only: list[str] | None) -> list[str]:
    active = [c.id for c in engine.get_active_sources()]
    if not only:
        return active
    unknown = [sid for sid in only if engine.get_source(sid) is None]
    if unknown:
        raise ConfigurationError(f"Unknown source ids: {', '.join(unknown)}")
    return [sid for sid in only if sid in active]


def main(argv: list[str] | None = None) -> int:
    """Run the CLI with the given arguments."""
    try:
        return _main_impl(argv)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ConfigurationError as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        return 2
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _main_impl(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    setup_logging(
        LoggingOptions(
            level=args.log_level or settings.LOG_LEVEL,
            json_logs=bool(args.json_logs or settings.JSON_LOGS),
            log_file=settings.LOG_FILE,
        )
    )

    if not args.cmd:
        print("Error: Command required. Use --help for usage info.", file=sys.stderr)
        return 1

    if args.cmd == "validate":
        sources, _ = read_sources_file(args.config)
        engine = IngestionEngine()
        issues = []
        for raw in sources:
            try:
                config = engine.validate_source_config(raw)
                engine.factory.validate_config(config)
            except ConfigurationError as e:
                issues.append({"source_id": e.source_id, "error": str(e)})

        if issues:
            print("Config is INVALID. Issues found:", file=sys.stderr)
            for issue in issues:
                print(f"  - {issue['source_id'] or '<unknown>'}: {issue['error']}", file=sys.stderr)
            return 2
        print(f"Config is VALID ({len(sources)} sources).")
        return 0

    engine, registrations = load_engine_from_config(args.config, settings=settings)
    with engine:
        failed_registrations = [r for r in registrations if not r.success]

        if args.cmd == "discover":
            listing = {}
            for source_id in _selected(engine, args.only):
                documents = engine.discover_documents(source_id)
                listing[source_id] = [
                    {"id": d.id, "url": d.url, "title": d.title, "last_modified": d.last_modified}
                    for d in documents
                ]
            _print_json(listing)
            return 1 if failed_registrations else 0

        if args.cmd == "run":
            source_ids = _selected(engine, args.only)
            results = [engine.process_source(sid) for sid in source_ids]

            if args.output:
                out_path = Path(args.output)
                out_path.parent.mkdir(parents=True, exist_ok=True)
                with out_path.open("w", encoding="utf-8") as f:
                    for result in results:
                        for document in result.processed:
                            f.write(document.model_dump_json() + "\n")

            if args.advance_cursors:
                for result in results:
                    if result.status == BatchStatus.SUCCESS:
                        engine.advance_cursor(result.source_id, result.started_at)

            _print_json(
                {
                    "batches": [r.to_summary() for r in results],
                    "registration_failures": [
                        {"source_id": r.source_id, "error": r.error} for r in failed_registrations
                    ],
                    "statistics": engine.get_statistics(),
                }
            )
            ok = not failed_registrations and all(r.status != BatchStatus.FAILED for r in results)
            return 0 if ok else 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
