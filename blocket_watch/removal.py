import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable

from blocket_watch.catalog import Catalog
from blocket_watch.config import Settings
from blocket_watch.db.models import Listing, utcnow
from blocket_watch.errors import PersistenceError, TransportError
from blocket_watch.retry import NO_RETRY
from blocket_watch.scraper.client import HttpClient
from blocket_watch.scraper.parser import REASON_SOLD, is_listing_removed_page


logger = logging.getLogger(__name__)

POLICY_BULK = "bulk"
POLICY_VERIFY = "verify"
REASON_STALE = "stale"


@dataclass
class RemovalStats:
    missing: int = 0
    bulk_removed: int = 0
    verified: int = 0
    verified_removed: int = 0
    stale_removed: int = 0
    errors: int = 0
    persistence_errors: int = 0

    @property
    def removed(self) -> int:
        return self.bulk_removed + self.verified_removed + self.stale_removed


def compute_missing(
    active: Iterable[Listing],
    seen: set[str],
    *,
    excluded_regions: set[str] | None = None,
) -> list[Listing]:
    """Active listings absent from every snapshot of the run.

    Listings in ``excluded_regions`` are left out: their snapshot was
    truncated, so absence there is not evidence of anything.
    """
    excluded = excluded_regions or set()
    return [
        listing
        for listing in active
        if listing.external_id not in seen and (listing.region or "") not in excluded
    ]


class RemovalVerifier:
    def __init__(
        self,
        catalog: Catalog,
        fetcher: HttpClient,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._catalog = catalog
        self._fetcher = fetcher
        self._settings = settings
        self._clock = clock
        self._rng = rng or random.Random()

    def run(
        self,
        seen: set[str],
        *,
        policy: str,
        stale_after_days: int,
        sample_size: int = 0,
        excluded_regions: set[str] | None = None,
    ) -> RemovalStats:
        stats = RemovalStats()
        active = self._catalog.list_active()
        missing = compute_missing(active, seen, excluded_regions=excluded_regions)
        stats.missing = len(missing)
        if excluded_regions:
            logger.warning("Absence check skipped for truncated regions: %s", ", ".join(sorted(excluded_regions)))

        if policy == POLICY_BULK:
            try:
                stats.bulk_removed = self.mark_missing_sold(missing)
            except PersistenceError as exc:
                stats.errors += 1
                stats.persistence_errors += 1
                logger.error("Bulk removal failed: %s", exc)
        elif policy == POLICY_VERIFY:
            self.verify(missing, stats)
        else:
            raise ValueError(f"Unknown removal policy: {policy}")

        if sample_size > 0:
            self.verify(self.sample_seen(active, seen, sample_size), stats)

        try:
            stats.stale_removed = self.expire_stale(stale_after_days)
        except PersistenceError as exc:
            stats.errors += 1
            stats.persistence_errors += 1
            logger.error("Stale listing cleanup failed: %s", exc)

        logger.info(
            "Removal: policy=%s missing=%s bulk_removed=%s verified=%s verified_removed=%s stale_removed=%s errors=%s",
            policy,
            stats.missing,
            stats.bulk_removed,
            stats.verified,
            stats.verified_removed,
            stats.stale_removed,
            stats.errors,
        )
        return stats

    def mark_missing_sold(self, missing: list[Listing]) -> int:
        if not missing:
            return 0
        return self._catalog.bulk_mark_removed([listing.id for listing in missing], REASON_SOLD, self._clock())

    def sample_seen(self, active: list[Listing], seen: set[str], size: int) -> list[Listing]:
        pool = [listing for listing in active if listing.external_id in seen]
        if len(pool) <= size:
            return pool
        return self._rng.sample(pool, size)

    def verify(self, listings: list[Listing], stats: RemovalStats) -> None:
        for listing in listings:
            reason = self.check_listing(listing, stats)
            if reason is None:
                continue
            try:
                marked = self._catalog.mark_removed(listing.id, reason, self._clock())
            except PersistenceError as exc:
                stats.errors += 1
                stats.persistence_errors += 1
                logger.warning("Failed to mark %s removed: %s", listing.external_id, exc)
                continue
            if marked:
                stats.verified_removed += 1
                logger.info("Listing %s %s %s removed: %s", listing.external_id, listing.make, listing.model, reason)

    def check_listing(self, listing: Listing, stats: RemovalStats) -> str | None:
        url = listing.url or self._settings.item_url_template.format(external_id=listing.external_id)
        stats.verified += 1
        try:
            response = self._fetcher.fetch(url, retry=NO_RETRY, allow_404=True)
        except TransportError as exc:
            # Unreachable is treated as still listed.
            stats.errors += 1
            logger.warning("Verification fetch failed for %s: %s", url, exc)
            return None
        finally:
            if self._settings.enrichment_delay_seconds > 0:
                time.sleep(self._settings.enrichment_delay_seconds)
        return is_listing_removed_page(response.text)

    def expire_stale(self, stale_after_days: int) -> int:
        now = self._clock()
        stale = self._catalog.list_active_not_seen_since(now - timedelta(days=stale_after_days))
        if not stale:
            return 0
        return self._catalog.bulk_mark_removed([listing.id for listing in stale], REASON_STALE, now)
