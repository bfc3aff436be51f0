from blocket_watch.scraper.client import FetchResponse, HttpClient
from blocket_watch.scraper.parser import (
    AttributePatch,
    PageMetadata,
    RawListing,
    is_listing_removed_page,
    parse_detail_page,
    parse_search_page,
)

__all__ = [
    "AttributePatch",
    "FetchResponse",
    "HttpClient",
    "PageMetadata",
    "RawListing",
    "is_listing_removed_page",
    "parse_detail_page",
    "parse_search_page",
]
