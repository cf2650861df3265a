"""
Threatline server - main entry point.

Commands:
- serve: run the pipeline behind the HTTP API (uvicorn)
- replay: feed a JSON Lines file of raw events through the pipeline and print the results
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Iterator

from src.shared.config import settings
from src.shared.logger import get_logger, log_config_status, log_result_table, log_startup_banner
from src.threat_engine.config import ENGINE_DB_PATH, ConfigStore
from src.threat_engine.errors import QueueFullError, ThreatlineError
from src.threat_engine.pipeline import ThreatPipeline
from src.threat_engine.storage import EngineStorage

logger = get_logger()


def build_pipeline(
    config_path: str | None = None,
    db_path: str | Path | None = None,
    use_storage: bool = True,
) -> ThreatPipeline:
    """Compose the pipeline from settings.

    Args:
        config_path: Engine YAML (defaults to ``settings.engine_config_path``)
        db_path: SQLite path (defaults to ``settings.engine_db_path``)
        use_storage: Persist window state and the audit trail

    Returns:
        A pipeline ready to ``start()``
    """
    config_path = config_path or settings.engine_config_path
    store = ConfigStore(path=config_path) if config_path else ConfigStore()
    storage = EngineStorage(db_path or ENGINE_DB_PATH) if use_storage else None
    return ThreatPipeline(config_store=store, storage=storage)


def show_config_status(config_path: str | None):
    log_config_status({
        "ENGINE_CONFIG_PATH": (bool(config_path), config_path or "built-in defaults"),
        "INTEL_FILE": (bool(settings.intel_file), "Static allowlist / reputation / criticality table"),
        "OTX_API_KEY": (settings.has_otx_key, "AlienVault OTX reputation lookups"),
        "WEBHOOK_URL": (settings.has_webhook, "Webhook notification sink"),
        "SMTP": (settings.has_smtp_credentials, "Email notification sink"),
    })


def read_events(path: Path) -> Iterator[tuple[str, dict[str, Any]]]:
    """Yield (source, payload) pairs from ``{"source": ..., "event": {...}}`` lines."""
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"{path}:{line_number}: skipping invalid JSON ({e})")
                continue
            if not isinstance(record, dict) or "source" not in record:
                logger.warning(f"{path}:{line_number}: skipping line without a 'source'")
                continue
            payload = record.get("event")
            if payload is None:
                payload = {k: v for k, v in record.items() if k != "source"}
            yield record["source"], payload


async def replay(path: Path, pipeline: ThreatPipeline) -> ThreatPipeline:
    """Feed every event in ``path`` through ``pipeline``, then close all windows."""
    await pipeline.start()
    try:
        count = 0
        for source, payload in read_events(path):
            while True:
                try:
                    pipeline.ingest_raw(payload, source)
                    break
                except QueueFullError:
                    await asyncio.sleep(0.05)
            count += 1
        logger.info(f"Replayed {count} events from {path}")
        await pipeline.flush()
    finally:
        await pipeline.stop()
    return pipeline


def print_replay_results(pipeline: ThreatPipeline):
    incidents = pipeline.incidents.list_all()
    log_result_table(
        "🚨 Incidents",
        ["Incident", "Severity", "Status", "Confidence", "Title"],
        [
            [i.incident_id, i.severity.value, i.status.value, f"{i.correlation_confidence:.2f}", i.title]
            for i in incidents
        ],
    )
    if pipeline.incidents.discarded:
        log_result_table(
            "🗑️ Discarded chains",
            ["Chain", "Severity", "Confidence", "Reason"],
            [
                [d.chain.chain_id, d.chain.severity.value, f"{d.chain.correlation_confidence:.2f}", d.reason]
                for d in pipeline.incidents.discarded
            ],
        )
    counters = pipeline.telemetry.snapshot()["counters"]
    logger.stats_summary("Replay", dict(sorted(counters.items())))


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Threatline - threat detection and event correlation engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve the HTTP API on the default host and port
  python -m src.threat_engine serve

  # Serve with a configuration file
  python -m src.threat_engine serve --config config/engine.yaml --port 9000

  # Replay recorded events without touching the database
  python -m src.threat_engine replay samples/events.jsonl --no-storage
        """,
    )
    parser.add_argument("--config", type=str, default=None, help="Engine YAML configuration")
    parser.add_argument("--db-path", type=Path, default=None, help=f"Database path (default: {ENGINE_DB_PATH})")
    parser.add_argument("--log-level", type=str, default=None, help="Override LOG_LEVEL")

    commands = parser.add_subparsers(dest="command", required=True)

    serve_parser = commands.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=settings.api_host, help=f"Host to bind to (default: {settings.api_host})")
    serve_parser.add_argument(
        "--port", type=int, default=settings.api_port, help=f"Port to listen on (default: {settings.api_port})"
    )

    replay_parser = commands.add_parser("replay", help="Replay a JSON Lines file of raw events")
    replay_parser.add_argument("path", type=Path, help="File of {\"source\": ..., \"event\": {...}} lines")
    replay_parser.add_argument("--no-storage", action="store_true", help="Do not persist anything")

    args = parser.parse_args()
    if args.log_level:
        logger.set_level(args.log_level)

    log_startup_banner()
    show_config_status(args.config or settings.engine_config_path)

    try:
        pipeline = build_pipeline(
            config_path=args.config,
            db_path=args.db_path,
            use_storage=not getattr(args, "no_storage", False),
        )
    except ThreatlineError as e:
        logger.error(f"Cannot start Threatline: {e}")
        raise SystemExit(1) from e

    if args.command == "serve":
        import uvicorn

        from src.threat_engine.api import create_app

        logger.info(f"📍 API:      http://{args.host}:{args.port}/")
        logger.info(f"📊 API docs: http://{args.host}:{args.port}/docs")
        uvicorn.run(create_app(pipeline), host=args.host, port=args.port)
    else:
        if not args.path.exists():
            logger.error(f"No such file: {args.path}")
            raise SystemExit(1)
        asyncio.run(replay(args.path, pipeline))
        print_replay_results(pipeline)


if __name__ == "__main__":
    main()
