import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from blocket_watch.catalog import Catalog
from blocket_watch.db.models import Listing, utcnow
from blocket_watch.errors import PersistenceError
from blocket_watch.scraper.parser import RawListing
from blocket_watch.snapshot import Snapshot


logger = logging.getLogger(__name__)

NEW = "new"
UNCHANGED = "unchanged"
PRICE_CHANGED = "price_changed"
DUPLICATE = "duplicate"
REMOVED = "removed"

# A listing is re-queued for a detail fetch while either of these is unknown.
ENRICHMENT_TRIGGER_FIELDS = ("gearbox", "city")


@dataclass(frozen=True)
class EnrichmentUnit:
    external_id: str
    url: str
    listing_id: int | None = None
    candidate: RawListing | None = None

    @property
    def is_new(self) -> bool:
        return self.listing_id is None


@dataclass
class ReconcileResult:
    classifications: dict[str, str] = field(default_factory=dict)
    new: list[EnrichmentUnit] = field(default_factory=list)
    enrich: list[EnrichmentUnit] = field(default_factory=list)
    unchanged: int = 0
    price_changes: int = 0
    duplicates: int = 0
    skipped_removed: int = 0
    errors: int = 0

    @property
    def updated(self) -> int:
        return self.unchanged + self.price_changes


def classify(candidate: RawListing, existing: Listing | None) -> str:
    if existing is None:
        return NEW
    if existing.removed_at is not None:
        return REMOVED
    # A missing price in the snapshot is a parse gap, never a confirmed change.
    if candidate.price is None or candidate.price == existing.price:
        return UNCHANGED
    return PRICE_CHANGED


def needs_enrichment(listing: Listing) -> bool:
    if listing.enrichment_status is not None:
        return False
    return any(getattr(listing, name) is None for name in ENRICHMENT_TRIGGER_FIELDS)


class Reconciler:
    def __init__(self, catalog: Catalog, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._catalog = catalog
        self._clock = clock

    def reconcile(self, snapshot: Snapshot, seen: set[str]) -> ReconcileResult:
        """Diff one snapshot against the catalog.

        ``seen`` is shared by every snapshot of a run: an external id already in
        it is a no-op, and every id processed here is added to it. Touches and
        price changes are written immediately; new listings are returned as
        enrichment units so they are first written with their detail fields.
        """
        result = ReconcileResult()
        for candidate in snapshot.candidates:
            external_id = candidate.external_id
            if external_id in seen:
                result.duplicates += 1
                result.classifications.setdefault(external_id, DUPLICATE)
                continue
            seen.add(external_id)

            try:
                self._reconcile_one(candidate, result)
            except PersistenceError as exc:
                result.errors += 1
                logger.warning("Reconcile failed for %s: %s", external_id, exc)

        logger.info(
            "Reconciled %s: new=%s unchanged=%s price_changes=%s enrich=%s duplicates=%s errors=%s",
            snapshot.search_filter.label,
            len(result.new),
            result.unchanged,
            result.price_changes,
            len(result.enrich),
            result.duplicates,
            result.errors,
        )
        return result

    def _reconcile_one(self, candidate: RawListing, result: ReconcileResult) -> None:
        existing = self._catalog.find_by_external_id(candidate.external_id)
        status = classify(candidate, existing)
        result.classifications[candidate.external_id] = status

        if status == NEW:
            result.new.append(EnrichmentUnit(external_id=candidate.external_id, url=candidate.url, candidate=candidate))
            return

        if status == REMOVED:
            result.skipped_removed += 1
            return

        now = self._clock()
        if status == PRICE_CHANGED:
            self._catalog.record_price_change(existing.id, candidate.price, now)
            result.price_changes += 1
            logger.info(
                "Price change %s %s %s: %s -> %s",
                candidate.external_id,
                candidate.make,
                candidate.model,
                existing.price,
                candidate.price,
            )
        else:
            self._catalog.touch(existing.id, now)
            result.unchanged += 1

        if needs_enrichment(existing):
            result.enrich.append(
                EnrichmentUnit(
                    external_id=existing.external_id,
                    url=existing.url or candidate.url,
                    listing_id=existing.id,
                )
            )
