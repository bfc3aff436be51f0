import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping

from blocket_watch.catalog import Catalog
from blocket_watch.config import Settings
from blocket_watch.db.models import Listing, utcnow
from blocket_watch.errors import ParseError, PersistenceError, TransportError
from blocket_watch.reconciler import EnrichmentUnit
from blocket_watch.scraper.client import HttpClient
from blocket_watch.scraper.parser import SELLER_DEALER, SELLER_PRIVATE, AttributePatch, parse_detail_page


logger = logging.getLogger(__name__)

UPDATED = "updated"
NO_DATA = "no_data"
FAILED = "failed"
SKIPPED = "skipped"

STATUS_ENRICHED = "enriched"
STATUS_NO_DATA = "no_data"

# field -> (stored value that may be replaced, value allowed to replace it)
CORRECTABLE_FIELDS = {
    "seller_type": (SELLER_PRIVATE, SELLER_DEALER),
}


def _stored_value(current: Listing | Mapping[str, Any], name: str) -> Any:
    if isinstance(current, Mapping):
        return current.get(name)
    return getattr(current, name, None)


def merge_patch(current: Listing | Mapping[str, Any], patch: AttributePatch) -> dict[str, Any]:
    """Return the subset of ``patch`` that may be written over ``current``.

    Known values are never blanked or overwritten; the only exception is a
    correctable field moving along its allowed transition.
    """
    changes: dict[str, Any] = {}
    for name, value in patch.present().items():
        stored = _stored_value(current, name)
        if stored is None or stored == "":
            changes[name] = value
            continue
        correction = CORRECTABLE_FIELDS.get(name)
        if correction is not None and (stored, value) == correction:
            changes[name] = value
    return changes


@dataclass(frozen=True)
class FetchedDetail:
    unit: EnrichmentUnit
    outcome: str
    patch: AttributePatch | None = None
    error: str | None = None


@dataclass
class EnrichmentStats:
    created: int = 0
    updated: int = 0
    no_data: int = 0
    failed: int = 0
    skipped: int = 0
    persistence_errors: int = 0

    def count(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)


class EnrichmentScheduler:
    def __init__(
        self,
        catalog: Catalog,
        fetcher: HttpClient,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._catalog = catalog
        self._fetcher = fetcher
        self._settings = settings
        self._clock = clock

    def run(self, units: list[EnrichmentUnit], *, cancel: threading.Event | None = None) -> EnrichmentStats:
        """Fetch detail pages on a fixed worker pool and merge the results.

        Workers only fetch and parse; catalog writes happen on the calling
        thread as results complete, so a failed unit never disturbs the rest.
        """
        stats = EnrichmentStats()
        if not units:
            return stats

        workers = max(1, min(self._settings.enrichment_concurrency, len(units)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="enrich") as executor:
            future_to_unit = {executor.submit(self._fetch_detail, unit, cancel): unit for unit in units}
            for future in as_completed(future_to_unit):
                unit = future_to_unit[future]
                try:
                    fetched = future.result()
                except Exception as exc:
                    logger.exception("Enrichment worker crashed for %s", unit.external_id)
                    fetched = FetchedDetail(unit=unit, outcome=FAILED, error=str(exc))

                if fetched.outcome == SKIPPED:
                    stats.count(SKIPPED)
                    continue

                try:
                    self._apply(fetched, stats)
                except PersistenceError as exc:
                    stats.count(FAILED)
                    stats.persistence_errors += 1
                    logger.warning("Failed to store enrichment for %s: %s", unit.external_id, exc)

        logger.info(
            "Enrichment: units=%s created=%s updated=%s no_data=%s failed=%s skipped=%s",
            len(units),
            stats.created,
            stats.updated,
            stats.no_data,
            stats.failed,
            stats.skipped,
        )
        return stats

    def _fetch_detail(self, unit: EnrichmentUnit, cancel: threading.Event | None) -> FetchedDetail:
        if cancel is not None and cancel.is_set():
            return FetchedDetail(unit=unit, outcome=SKIPPED)

        try:
            response = self._fetcher.fetch(unit.url, retry=self._settings.detail_retry)
            patch = parse_detail_page(response.text)
        except TransportError as exc:
            logger.warning("Detail fetch failed for %s: %s", unit.url, exc)
            return FetchedDetail(unit=unit, outcome=FAILED, error=str(exc))
        except ParseError as exc:
            logger.info("No detail data for %s: %s", unit.url, exc)
            return FetchedDetail(unit=unit, outcome=NO_DATA, error=str(exc))
        finally:
            if self._settings.enrichment_delay_seconds > 0:
                time.sleep(self._settings.enrichment_delay_seconds)

        if patch.is_empty:
            return FetchedDetail(unit=unit, outcome=NO_DATA, patch=patch)
        return FetchedDetail(unit=unit, outcome=UPDATED, patch=patch)

    def _apply(self, fetched: FetchedDetail, stats: EnrichmentStats) -> None:
        unit = fetched.unit
        now = self._clock()
        status = {UPDATED: STATUS_ENRICHED, NO_DATA: STATUS_NO_DATA}.get(fetched.outcome)

        if unit.is_new:
            values = unit.candidate.to_values()
            if fetched.patch is not None:
                values.update(merge_patch(values, fetched.patch))
            if status is not None:
                values["enrichment_status"] = status
                values["enriched_at"] = now
            created = self._catalog.create_listing(values, seen_at=now)
            stats.created += 1
            stats.count(fetched.outcome)
            logger.info(
                "New listing %s: %s %s %s kr (%s)",
                created.external_id,
                created.make,
                created.model,
                created.price,
                ", ".join(filter(None, [created.body_type, created.color, created.gearbox])) or "-",
            )
            return

        if status is None:
            stats.count(fetched.outcome)
            return

        current = self._catalog.find_by_external_id(unit.external_id)
        if current is None or current.removed_at is not None:
            stats.count(SKIPPED)
            return
        changes = merge_patch(current, fetched.patch) if fetched.patch is not None else {}
        self._catalog.apply_enrichment(current.id, changes, status=status, attempted_at=now)
        stats.count(fetched.outcome)
        if changes:
            logger.info("Enriched %s: %s", unit.external_id, ", ".join(sorted(changes)))
