import logging
from collections import defaultdict
from datetime import date
from statistics import median_high
from typing import Any, Iterable

from blocket_watch.catalog import Catalog
from blocket_watch.db.models import Listing
from blocket_watch.scraper.parser import SELLER_DEALER


logger = logging.getLogger(__name__)

UNKNOWN_REGION = "unknown"
UNKNOWN_MAKE = "unknown"


def summarize_market(listings: Iterable[Listing]) -> list[dict[str, Any]]:
    groups: dict[tuple[str, str], dict[str, Any]] = defaultdict(lambda: {"prices": [], "private": 0, "dealer": 0})
    for listing in listings:
        group = groups[(listing.region or UNKNOWN_REGION, listing.make or UNKNOWN_MAKE)]
        if listing.price:
            group["prices"].append(listing.price)
        if listing.seller_type == SELLER_DEALER:
            group["dealer"] += 1
        else:
            group["private"] += 1

    rows: list[dict[str, Any]] = []
    for (region, make), group in sorted(groups.items()):
        prices = sorted(group["prices"])
        rows.append(
            {
                "region": region,
                "make": make,
                "listing_count": group["private"] + group["dealer"],
                "avg_price": round(sum(prices) / len(prices)) if prices else None,
                "median_price": median_high(prices) if prices else None,
                "min_price": prices[0] if prices else None,
                "max_price": prices[-1] if prices else None,
                "private_count": group["private"],
                "dealer_count": group["dealer"],
            }
        )
    return rows


def update_market_stats(catalog: Catalog, day: date) -> int:
    rows = summarize_market(catalog.list_active())
    saved = catalog.save_market_stats(day, rows)
    logger.info("Saved market statistics for %s groups on %s", saved, day.isoformat())
    return saved
