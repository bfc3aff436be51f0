import logging
import random
import threading
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Callable, Iterable

from blocket_watch.catalog import RUN_COMPLETED, RUN_FAILED, RUN_RUNNING, Catalog
from blocket_watch.config import Settings
from blocket_watch.db.models import utcnow
from blocket_watch.enrichment import EnrichmentScheduler, EnrichmentStats
from blocket_watch.errors import PersistenceError, RunCancelled, RunError
from blocket_watch.reconciler import EnrichmentUnit, Reconciler
from blocket_watch.removal import RemovalVerifier
from blocket_watch.scraper.client import HttpClient
from blocket_watch.snapshot import SearchFilter, SnapshotBuilder
from blocket_watch.stats import update_market_stats


logger = logging.getLogger(__name__)

RUN_PENDING = "pending"


@dataclass(frozen=True)
class RunProfile:
    run_type: str
    verify_sample_size: int
    stale_after_days: int
    market_stats: bool


def profile_for(run_type: str, settings: Settings) -> RunProfile:
    if run_type == "full":
        return RunProfile(
            run_type=run_type,
            verify_sample_size=settings.verify_sample_size,
            stale_after_days=settings.full_stale_after_days,
            market_stats=True,
        )
    if run_type == "light":
        return RunProfile(
            run_type=run_type,
            verify_sample_size=0,
            stale_after_days=settings.light_stale_after_days,
            market_stats=False,
        )
    raise ValueError(f"Unknown run type: {run_type}")


@dataclass
class RunSummary:
    run_type: str = "full"
    status: str = RUN_PENDING
    run_id: int | None = None
    found: int = 0
    new: int = 0
    updated: int = 0
    price_changes: int = 0
    enriched: int = 0
    no_data: int = 0
    removed: int = 0
    errors: int = 0
    truncated_filters: list[str] = field(default_factory=list)
    degraded: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _add_stats(total: EnrichmentStats, part: EnrichmentStats) -> None:
    for item in fields(EnrichmentStats):
        setattr(total, item.name, getattr(total, item.name) + getattr(part, item.name))


class RunOrchestrator:
    def __init__(
        self,
        settings: Settings,
        catalog: Catalog,
        fetcher: HttpClient,
        *,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.catalog = catalog
        self.clock = clock
        self.snapshots = SnapshotBuilder(fetcher, settings)
        self.reconciler = Reconciler(catalog, clock=clock)
        self.enrichment = EnrichmentScheduler(catalog, fetcher, settings, clock=clock)
        self.removal = RemovalVerifier(catalog, fetcher, settings, clock=clock, rng=rng)

    def default_filters(self) -> list[SearchFilter]:
        return [
            SearchFilter(region=region, make=make)
            for region in self.settings.regions
            for make in self.settings.make_filters
        ]

    def run(
        self,
        run_type: str | None = None,
        *,
        filters: Iterable[SearchFilter] | None = None,
        cancel: threading.Event | None = None,
    ) -> RunSummary:
        """Run one polling cycle and record it in the run log.

        A failure anywhere in the cycle finalizes the run log as failed and is
        raised as ``RunError``. Mutations already applied stay applied.
        """
        run_type = run_type or self.settings.run_type
        profile = profile_for(run_type, self.settings)
        search_filters = list(filters) if filters is not None else self.default_filters()
        summary = RunSummary(run_type=run_type)

        run_id = self.catalog.start_run(
            run_type,
            sorted({f.region for f in search_filters}),
            sorted({f.make for f in search_filters if f.make}),
            self.clock(),
        )
        summary.run_id = run_id
        summary.status = RUN_RUNNING
        logger.info("Run %s started: type=%s filters=%s", run_id, run_type, len(search_filters))

        try:
            self._execute(profile, search_filters, summary, cancel)
        except Exception as exc:
            summary.status = RUN_FAILED
            message = str(exc) or exc.__class__.__name__
            self._finalize(run_id, summary, error=message)
            logger.exception("Run %s failed.", run_id)
            if isinstance(exc, RunError):
                exc.run_id = run_id
                exc.summary = summary
                raise
            raise RunError(f"Run {run_id} failed: {message}", run_id=run_id, summary=summary) from exc

        summary.status = RUN_COMPLETED
        self._finalize(run_id, summary)
        logger.info(
            "Run %s summary: found=%s new=%s updated=%s price_changes=%s enriched=%s no_data=%s removed=%s errors=%s truncated=%s degraded=%s",
            run_id,
            summary.found,
            summary.new,
            summary.updated,
            summary.price_changes,
            summary.enriched,
            summary.no_data,
            summary.removed,
            summary.errors,
            summary.truncated_filters,
            summary.degraded,
        )
        return summary

    def backfill(self, *, cancel: threading.Event | None = None) -> EnrichmentStats:
        """Enrich active listings that are still missing detail attributes."""
        total = EnrichmentStats()
        after_id = 0
        while True:
            if cancel is not None and cancel.is_set():
                logger.info("Backfill cancelled.")
                break
            batch = self.catalog.list_needing_enrichment(self.settings.backfill_batch_size, after_id=after_id)
            if not batch:
                break
            after_id = batch[-1].id
            units = [
                EnrichmentUnit(
                    external_id=listing.external_id,
                    url=listing.url or self.settings.item_url_template.format(external_id=listing.external_id),
                    listing_id=listing.id,
                )
                for listing in batch
            ]
            _add_stats(total, self.enrichment.run(units, cancel=cancel))
            logger.info("Backfill progress: updated=%s no_data=%s failed=%s", total.updated, total.no_data, total.failed)
        return total

    def _execute(
        self,
        profile: RunProfile,
        search_filters: list[SearchFilter],
        summary: RunSummary,
        cancel: threading.Event | None,
    ) -> None:
        seen: set[str] = set()
        new_units: list[EnrichmentUnit] = []
        enrich_units: list[EnrichmentUnit] = []
        truncated_regions: set[str] = set()

        for index, search_filter in enumerate(search_filters):
            self._check_cancel(cancel, "snapshot")
            if index and self.settings.filter_delay_seconds > 0:
                time.sleep(self.settings.filter_delay_seconds)

            snapshot = self.snapshots.build(search_filter)
            summary.found += len(snapshot.candidates)
            if snapshot.truncated:
                summary.truncated_filters.append(search_filter.label)
                summary.errors += 1
                truncated_regions.add(search_filter.region)

            result = self.reconciler.reconcile(snapshot, seen)
            summary.updated += result.updated
            summary.price_changes += result.price_changes
            if result.errors:
                summary.errors += result.errors
                summary.degraded = True
            new_units.extend(result.new)
            enrich_units.extend(result.enrich)

        self._check_cancel(cancel, "enrichment")
        enrichment = self.enrichment.run(new_units + enrich_units, cancel=cancel)
        summary.new += enrichment.created
        summary.enriched += enrichment.updated
        summary.no_data += enrichment.no_data
        summary.errors += enrichment.failed
        if enrichment.persistence_errors:
            summary.degraded = True

        self._check_cancel(cancel, "removal")
        removal = self.removal.run(
            seen,
            policy=self.settings.removal_policy,
            stale_after_days=profile.stale_after_days,
            sample_size=profile.verify_sample_size,
            excluded_regions=truncated_regions,
        )
        summary.removed += removal.removed
        summary.errors += removal.errors
        if removal.persistence_errors:
            summary.degraded = True

        if profile.market_stats:
            self._check_cancel(cancel, "statistics")
            try:
                update_market_stats(self.catalog, self.clock().date())
            except PersistenceError as exc:
                summary.errors += 1
                summary.degraded = True
                logger.error("Market statistics failed: %s", exc)

    def _check_cancel(self, cancel: threading.Event | None, phase: str) -> None:
        if cancel is not None and cancel.is_set():
            raise RunCancelled(f"Run cancelled before {phase}")

    def _finalize(self, run_id: int, summary: RunSummary, error: str | None = None) -> None:
        try:
            finalized = self.catalog.finish_run(run_id, summary, self.clock(), error=error)
        except PersistenceError as exc:
            summary.degraded = True
            logger.error("Could not finalize run log %s: %s", run_id, exc)
            return
        if not finalized:
            logger.warning("Run log %s was already finalized.", run_id)
