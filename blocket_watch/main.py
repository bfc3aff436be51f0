import argparse
import logging
import signal
import threading
import time
from dataclasses import replace

from blocket_watch.catalog import Catalog
from blocket_watch.config import RUN_TYPES, Settings, load_settings
from blocket_watch.db import init_db, make_engine, make_session_factory
from blocket_watch.errors import RunCancelled, RunError
from blocket_watch.scraper.client import HttpClient
from blocket_watch.worker import RunOrchestrator


logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Poll Blocket car listings and keep the catalog in sync.")
    parser.add_argument("--run-type", choices=RUN_TYPES, help="Run profile (default: WORKER_RUN_TYPE)")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument(
        "--backfill",
        action="store_true",
        help="Enrich existing listings that are missing detail fields, then exit",
    )
    return parser.parse_args(argv)


def build_orchestrator(settings: Settings) -> RunOrchestrator:
    engine = make_engine(settings.database_url)
    init_db(engine)
    catalog = Catalog(
        make_session_factory(engine),
        source=settings.source_name,
        batch_size=settings.removal_batch_size,
    )
    fetcher = HttpClient(
        connect_timeout=settings.connect_timeout_seconds,
        read_timeout=settings.read_timeout_seconds,
    )
    return RunOrchestrator(settings, catalog, fetcher)


def run_forever(orchestrator: RunOrchestrator, settings: Settings, cancel: threading.Event) -> None:
    logger.info(
        "Blocket worker started. run_type=%s, run_once=%s, interval=%ss",
        settings.run_type,
        settings.run_once,
        settings.interval_seconds,
    )

    while not cancel.is_set():
        started = time.time()
        try:
            orchestrator.run(settings.run_type, cancel=cancel)
        except RunCancelled:
            logger.info("Run cancelled. Worker stopping.")
            return
        except RunError as exc:
            logger.error("Worker cycle failed: %s", exc)
        except Exception:
            logger.exception("Worker cycle failed.")

        if settings.run_once:
            logger.info("Run-once mode enabled. Worker stopping.")
            return

        elapsed = time.time() - started
        sleep_seconds = max(1, settings.interval_seconds - int(elapsed))
        logger.info("Next cycle in %ss.", sleep_seconds)
        cancel.wait(sleep_seconds)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    if args.run_type:
        settings = replace(settings, run_type=args.run_type)
    if args.once:
        settings = replace(settings, run_once=True)

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cancel = threading.Event()

    def _stop(signum, _frame) -> None:
        logger.info("Received signal %s, finishing current unit.", signum)
        cancel.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    orchestrator = build_orchestrator(settings)
    if args.backfill:
        stats = orchestrator.backfill(cancel=cancel)
        logger.info("Backfill done: updated=%s no_data=%s failed=%s", stats.updated, stats.no_data, stats.failed)
        return 0

    run_forever(orchestrator, settings, cancel)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
