import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Mapping
from urllib.parse import urlencode

from blocket_watch.config import Settings
from blocket_watch.errors import ParseError, TransportError
from blocket_watch.scraper.client import HttpClient
from blocket_watch.scraper.parser import RawListing, parse_search_page


logger = logging.getLogger(__name__)

REGION_CODES = {
    "norrbotten": "0.300025",
    "vasterbotten": "0.300024",
    "jamtland": "0.300023",
    "vasternorrland": "0.300022",
    "gavleborg": "0.300021",
    "dalarna": "0.300020",
    "vastmanland": "0.300019",
    "orebro": "0.300018",
    "varmland": "0.300017",
    "vastra_gotaland": "0.300014",
    "halland": "0.300013",
    "skane": "0.300012",
    "blekinge": "0.300010",
    "gotland": "0.300009",
    "kalmar": "0.300008",
    "kronoberg": "0.300007",
    "jonkoping": "0.300006",
    "ostergotland": "0.300005",
    "sodermanland": "0.300004",
    "uppsala": "0.300003",
    "stockholm": "0.300001",
}

FUEL_CODES = {
    "bensin": "gasoline",
    "diesel": "diesel",
    "el": "electric",
    "hybrid": "hybrid",
    "laddhybrid": "plug_in_hybrid",
    "etanol": "ethanol",
    "gas": "gas",
}

GEARBOX_CODES = {
    "automat": "automatic",
    "manuell": "manual",
}

BODY_TYPE_CODES = {
    "sedan": "sedan",
    "kombi": "estate",
    "suv": "suv",
    "cab": "convertible",
    "coupe": "coupe",
    "halvkombi": "hatchback",
    "minibuss": "minivan",
    "pickup": "pickup",
}

RANGE_PARAMS = {
    "price_min": "price_from",
    "price_max": "price_to",
    "year_min": "year_from",
    "year_max": "year_to",
    "mileage_min": "mileage_from",
    "mileage_max": "mileage_to",
}

CODED_PARAMS = {
    "fuel": FUEL_CODES,
    "gearbox": GEARBOX_CODES,
    "body_type": BODY_TYPE_CODES,
}


@dataclass(frozen=True)
class SearchFilter:
    region: str
    make: str | None = None
    model: str | None = None
    constraints: Mapping[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return f"{self.region}/{self.make or 'all makes'}"

    def query_params(self, page: int = 1) -> dict[str, Any]:
        params: dict[str, Any] = {}
        region_code = REGION_CODES.get(self.region.lower())
        if region_code is None:
            raise ValueError(f"Unknown region: {self.region}")
        params["location"] = region_code

        if self.make:
            params["make"] = self.make.lower()
        if self.model:
            params["model"] = self.model.lower()

        for key, value in self.constraints.items():
            if value is None or value == "":
                continue
            if key in RANGE_PARAMS:
                params[RANGE_PARAMS[key]] = value
            elif key in CODED_PARAMS:
                code = CODED_PARAMS[key].get(str(value).lower())
                if code is None:
                    raise ValueError(f"Unknown {key} value: {value}")
                params[key] = code
            else:
                raise ValueError(f"Unsupported search constraint: {key}")

        if page > 1:
            params["page"] = page
        return params


@dataclass
class Snapshot:
    search_filter: SearchFilter
    candidates: list[RawListing] = field(default_factory=list)
    total_pages: int = 0
    match_count: int | None = None
    pages_fetched: int = 0
    duplicates: int = 0
    truncated: bool = False
    error: str | None = None


class SnapshotBuilder:
    def __init__(self, fetcher: HttpClient, settings: Settings) -> None:
        self._fetcher = fetcher
        self._settings = settings

    def search_url(self, search_filter: SearchFilter, page: int) -> str:
        return f"{self._settings.search_url}?{urlencode(search_filter.query_params(page))}"

    def build(self, search_filter: SearchFilter) -> Snapshot:
        """Collect every listing currently visible for one filter.

        Pages are requested strictly in order. A page with no results ends the
        walk normally; a transport or parse failure ends it with the snapshot
        flagged as truncated so callers know absence is not evidence of removal.
        """
        snapshot = Snapshot(search_filter=search_filter)
        seen_ids: set[str] = set()

        page = 1
        while True:
            url = self.search_url(search_filter, page)
            try:
                response = self._fetcher.fetch(url, retry=self._settings.search_retry)
                listings, metadata = parse_search_page(response.text)
            except (TransportError, ParseError) as exc:
                snapshot.truncated = True
                snapshot.error = f"page {page}: {exc}"
                logger.warning("Snapshot for %s truncated at page %s: %s", search_filter.label, page, exc)
                break

            snapshot.pages_fetched += 1
            if page == 1:
                snapshot.total_pages = metadata.total_pages
                snapshot.match_count = metadata.match_count
                logger.info(
                    "Search %s: %s listings on %s pages",
                    search_filter.label,
                    metadata.match_count if metadata.match_count is not None else len(listings),
                    metadata.total_pages,
                )

            if not listings:
                break

            for listing in listings:
                if listing.external_id in seen_ids:
                    snapshot.duplicates += 1
                    continue
                seen_ids.add(listing.external_id)
                snapshot.candidates.append(replace(listing, region=search_filter.region))

            if page >= snapshot.total_pages:
                break
            if page >= self._settings.max_pages:
                snapshot.truncated = True
                snapshot.error = f"page cap {self._settings.max_pages} reached"
                logger.warning("Snapshot for %s stopped at page cap %s", search_filter.label, page)
                break

            page += 1
            if self._settings.page_delay_seconds > 0:
                time.sleep(self._settings.page_delay_seconds)

        logger.info(
            "Snapshot %s: candidates=%s pages=%s/%s duplicates=%s truncated=%s",
            search_filter.label,
            len(snapshot.candidates),
            snapshot.pages_fetched,
            snapshot.total_pages,
            snapshot.duplicates,
            snapshot.truncated,
        )
        return snapshot
