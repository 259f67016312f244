"""Command-line entry point: ``kb-indexer <command>``.

Commands
--------
init-db   create the tables
sweep     run a full indexing sweep in-process
search    similarity search from the terminal
status    show pipeline status and index counts
extract   run the extraction client on one source item
reset     clear stage cursors and status
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from kb_indexer.config import Settings
from kb_indexer.events import EventBus, StageBackoff, StageFailed
from kb_indexer.exceptions import KBIndexError
from kb_indexer.ingestion.normalizer import ContentNormalizer
from kb_indexer.ingestion.source import JsonlContentSource
from kb_indexer.pipeline.manager import STATUS_KEY
from kb_indexer.pipeline.state import SqlBatchStateStore
from kb_indexer.providers.extraction import ExtractionClient
from kb_indexer.retrieval.models import SearchFilters
from kb_indexer.services import build_services
from kb_indexer.storage.database import create_db_engine, init_schema

logger = logging.getLogger("kb_indexer")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kb-indexer", description="Incremental knowledge-base indexer")
    parser.add_argument("--database-url", help="Override KB_DATABASE_URL")
    parser.add_argument("--log-level", help="Override KB_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    sweep = sub.add_parser("sweep", help="Run a full sweep over a JSON-Lines export")
    sweep.add_argument("--source", help="JSON-Lines file (defaults to KB_SOURCE_PATH)")
    sweep.add_argument("--types", nargs="+", help="Content types to index")

    search = sub.add_parser("search", help="Similarity search")
    search.add_argument("query")
    search.add_argument("--top-k", "-k", type=int, default=None)
    search.add_argument("--type", dest="doc_type", help="Restrict to one content type")
    search.add_argument("--status", help="Restrict to one document status")

    sub.add_parser("status", help="Show pipeline status and index counts")
    sub.add_parser("reset", help="Clear stage cursors and pipeline status")

    extract = sub.add_parser("extract", help="Run entity extraction on one source item")
    extract.add_argument("item_id", type=int)
    extract.add_argument("--source", help="JSON-Lines file (defaults to KB_SOURCE_PATH)")
    return parser


def _settings_from_args(args: argparse.Namespace) -> Settings:
    overrides = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = args.log_level
    if getattr(args, "source", None):
        overrides["source_path"] = args.source
    return Settings(**overrides)


def _print_json(payload) -> None:  # noqa: ANN001
    print(json.dumps(payload, indent=2, default=str))


def _cmd_sweep(settings: Settings, args: argparse.Namespace) -> int:
    if not settings.source_path:
        print("No source: pass --source or set KB_SOURCE_PATH", file=sys.stderr)
        return 2
    events = EventBus()
    events.subscribe(StageBackoff, lambda e: logger.warning("backoff %s %.0fs", e.stage, e.delay_seconds))
    events.subscribe(StageFailed, lambda e: logger.error("%s failed at %d: %s", e.stage, e.cursor, e.error))

    services = build_services(settings, events=events)
    if services.manager is None:
        print("Pipeline unavailable: embedding provider is not configured (KB_API_KEY)", file=sys.stderr)
        return 2
    options = {"content_types": args.types} if args.types else None
    state = services.manager.run_sweep(options=options)
    _print_json(state.model_dump(mode="json"))
    return 0 if state.status.value == "completed" else 1


def _cmd_search(settings: Settings, args: argparse.Namespace) -> int:
    services = build_services(settings)
    filters = SearchFilters(doc_type=args.doc_type, status=args.status)
    for result in services.search.search(args.query, top_k=args.top_k, filters=filters):
        print(f"{result.citation.score:.4f} {result}")
    return 0


def _cmd_status(settings: Settings) -> int:
    services = build_services(settings)
    # The status record is readable without a source or provider.
    pipeline = SqlBatchStateStore(services.session_factory).read(STATUS_KEY)
    _print_json({"pipeline": pipeline, "index": services.search.stats()})
    return 0


def _cmd_reset(settings: Settings) -> int:
    services = build_services(settings)
    if services.manager is None:
        print("Pipeline unavailable (no source or embedding provider)", file=sys.stderr)
        return 2
    _print_json(services.manager.reset().model_dump(mode="json"))
    return 0


def _cmd_extract(settings: Settings, args: argparse.Namespace) -> int:
    if not settings.source_path:
        print("No source: pass --source or set KB_SOURCE_PATH", file=sys.stderr)
        return 2
    source = JsonlContentSource(settings.source_path)
    items = source.fetch_page(args.item_id - 1, 1)
    if not items or items[0].id != args.item_id:
        print(f"Item {args.item_id} not found", file=sys.stderr)
        return 1
    item = items[0]
    text = ContentNormalizer().normalize(item.title, item.body, item)
    _print_json(ExtractionClient(settings).extract(text))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = _settings_from_args(args)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "init-db":
            init_schema(create_db_engine(settings.database_url, echo=settings.echo_sql))
            return 0
        if args.command == "sweep":
            return _cmd_sweep(settings, args)
        if args.command == "search":
            return _cmd_search(settings, args)
        if args.command == "status":
            return _cmd_status(settings)
        if args.command == "reset":
            return _cmd_reset(settings)
        if args.command == "extract":
            return _cmd_extract(settings, args)
    except KBIndexError as exc:
        logger.error("%s", exc)
        return 1
    return 2


if __name__ == "__main__":
    sys.exit(main())
