import base64
import binascii
import json
import logging
import re
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Any
from urllib.parse import unquote_plus

from bs4 import BeautifulSoup

from blocket_watch.errors import ParseError


logger = logging.getLogger(__name__)

ITEM_URL_TEMPLATE = "https://www.blocket.se/mobility/item/{external_id}"

SELLER_PRIVATE = "private"
SELLER_DEALER = "dealer"

REASON_SOLD = "sold"
REASON_NOT_FOUND = "not_found"

SOLD_MARKERS = (
    "annonsen är inte längre tillgänglig",
    "har sålts eller tagits bort",
)
NOT_FOUND_MARKERS = (
    "sidan hittades inte",
    "<title>404</title>",
    "här hittar du allt, förutom den sidan",
)

GEARBOX_LABEL = "växellåda"
COLOR_LABEL = "färg"
BODY_TYPE_LABEL = "kaross"
BODY_TYPES = ("sedan", "kombi", "suv", "halvkombi", "cab", "coupé", "coupe", "minibuss", "pickup")
DEALER_SCHEMA_TYPES = {"autodealer", "automotivebusiness", "organization", "localbusiness"}

SPACE_RE = re.compile(r"\s+")
DIGITS_RE = re.compile(r"\d+")
TAX_EXCLUSIVE_RE = re.compile(r"\((\d[\d\s]*)\s*kr\s*exkl\.?\s*moms\)", re.IGNORECASE)
MAPS_QUERY_RE = re.compile(r"maps/search/\?api=1[^\"]*?query=(\d{5})(?:%20|\+|\s)([^&\"]+)", re.IGNORECASE)
TITLE_SUFFIX_RE = re.compile(r"\s*\|.*$")


@dataclass(frozen=True)
class RawListing:
    external_id: str
    url: str
    registration: str | None = None
    make: str | None = None
    model: str | None = None
    year: int | None = None
    mileage: int | None = None
    fuel: str | None = None
    engine_power: int | None = None
    price: int | None = None
    gearbox: str | None = None
    body_type: str | None = None
    color: str | None = None
    city: str | None = None
    seller_name: str | None = None
    seller_type: str | None = None
    published_at: datetime | None = None
    image_url: str | None = None
    region: str | None = None

    def to_values(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PageMetadata:
    total_pages: int = 1
    match_count: int | None = None


@dataclass(frozen=True)
class AttributePatch:
    """Sparse set of detail-page attributes.

    ``None`` means the page did not show the attribute; it never means
    "clear the stored value".
    """

    gearbox: str | None = None
    body_type: str | None = None
    color: str | None = None
    city: str | None = None
    tax_exclusive: bool | None = None
    tax_exclusive_price: int | None = None
    seller_type: str | None = None

    def present(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    @property
    def is_empty(self) -> bool:
        return not self.present()


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    text = SPACE_RE.sub(" ", value.replace("\xa0", " ")).strip()
    return text or None


def _node_text(node) -> str | None:
    if node is None:
        return None
    return _clean_text(node.get_text(" ", strip=True))


def _to_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    digits = "".join(DIGITS_RE.findall(str(value)))
    if not digits:
        return None
    return int(digits)


def _to_str(value: Any) -> str | None:
    if value is None:
        return None
    return _clean_text(str(value))


def _decode_state(raw: str) -> dict[str, Any] | None:
    text = raw.strip()
    if not text:
        return None
    candidates = [text]
    try:
        candidates.insert(0, base64.b64decode(text, validate=True).decode("utf-8"))
    except (binascii.Error, ValueError):
        pass
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _find_search_state(soup: BeautifulSoup) -> tuple[list[Any], dict[str, Any]] | None:
    empty_match: tuple[list[Any], dict[str, Any]] | None = None
    for script in soup.find_all("script", attrs={"type": "application/json"}):
        data = _decode_state(script.string or script.get_text())
        if not data:
            continue
        queries = data.get("queries")
        if not isinstance(queries, list):
            continue
        for query in queries:
            state_data = _as_dict(_as_dict(_as_dict(query).get("state")).get("data"))
            docs = state_data.get("docs")
            if not isinstance(docs, list):
                continue
            metadata = _as_dict(state_data.get("metadata"))
            if docs:
                return docs, metadata
            if empty_match is None:
                empty_match = (docs, metadata)
    return empty_match


def _published_at(value: Any) -> datetime | None:
    timestamp = _to_int(value)
    if timestamp is None:
        return None
    # Search results carry epoch milliseconds.
    return datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)


def listing_from_doc(doc: dict[str, Any]) -> RawListing | None:
    external_id = _to_str(doc.get("id"))
    if external_id is None:
        return None

    seller_name = _to_str(doc.get("organisation_name"))
    price = doc.get("price")
    image = doc.get("image")
    return RawListing(
        external_id=external_id,
        url=_to_str(doc.get("canonical_url")) or ITEM_URL_TEMPLATE.format(external_id=external_id),
        registration=_to_str(doc.get("regno")),
        make=_to_str(doc.get("make")),
        model=_to_str(doc.get("model")),
        year=_to_int(doc.get("year")),
        mileage=_to_int(doc.get("mileage")),
        fuel=_to_str(doc.get("fuel")),
        engine_power=_to_int(doc.get("engine_power")),
        price=_to_int(price.get("amount")) if isinstance(price, dict) else _to_int(price),
        gearbox=_to_str(doc.get("gearbox")),
        body_type=_to_str(doc.get("body_type")),
        color=_to_str(doc.get("color")),
        city=_to_str(doc.get("location")),
        seller_name=seller_name,
        seller_type=SELLER_DEALER if seller_name else SELLER_PRIVATE,
        published_at=_published_at(doc.get("timestamp")),
        image_url=_to_str(image.get("url")) if isinstance(image, dict) else None,
    )


def parse_search_page(body: str) -> tuple[list[RawListing], PageMetadata]:
    """Extract result cards and paging metadata from a search results page.

    The page embeds its query state as base64 encoded JSON inside
    ``<script type="application/json">`` tags. A page without that state is
    a ParseError; a page whose state holds no documents is a legitimate empty
    result.
    """
    soup = BeautifulSoup(body or "", "html.parser")
    state = _find_search_state(soup)
    if state is None:
        raise ParseError("Search state not found in page")

    docs, metadata = state
    listings: list[RawListing] = []
    skipped = 0
    for doc in docs:
        listing = listing_from_doc(doc) if isinstance(doc, dict) else None
        if listing is None:
            skipped += 1
            continue
        listings.append(listing)
    if skipped:
        logger.warning("Skipped %s search documents without an id.", skipped)

    paging = _as_dict(metadata.get("paging"))
    result_size = _as_dict(metadata.get("result_size"))
    total_pages = _to_int(paging.get("last")) or 1
    match_count = _to_int(result_size.get("match_count"))
    return listings, PageMetadata(total_pages=max(1, total_pages), match_count=match_count)


def _extract_label_map(soup: BeautifulSoup) -> dict[str, str]:
    label_map: dict[str, str] = {}

    for dl in soup.select("dl"):
        for dt, dd in zip(dl.find_all("dt"), dl.find_all("dd")):
            key = _node_text(dt)
            value = _node_text(dd)
            if key and value and key.lower() not in label_map:
                label_map[key.lower()] = value

    for row in soup.select("tr"):
        key = _node_text(row.find("th"))
        value = _node_text(row.find("td"))
        if key and value and key.lower() not in label_map:
            label_map[key.lower()] = value

    for span in soup.find_all("span"):
        sibling = span.find_next_sibling("p")
        key = _node_text(span)
        value = _node_text(sibling)
        if key and value and key.lower() not in label_map:
            label_map[key.lower()] = value

    return label_map


def _meta_content(soup: BeautifulSoup, **attrs: str) -> str | None:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return None
    return _clean_text(tag.get("content"))


def _normalize_gearbox(value: str | None) -> str | None:
    if not value:
        return None
    lowered = value.lower()
    if "automat" in lowered:
        return "Automat"
    if "manuell" in lowered:
        return "Manuell"
    return None


def _title_color_and_body(title: str | None) -> tuple[str | None, str | None]:
    # Format: "Begagnad bil till salu: Kia Sportage - 2023 - Blå - 265 Hk - Kombi | BLOCKET"
    if not title:
        return None, None
    parts = [part.strip() for part in title.split(" - ")]
    if len(parts) < 4:
        return None, None

    color = None
    possible_color = parts[2]
    if possible_color and not possible_color.isdigit() and len(possible_color) < 20:
        color = possible_color

    body_type = None
    last_part = TITLE_SUFFIX_RE.sub("", parts[-1]).strip()
    if any(kind in last_part.lower() for kind in BODY_TYPES):
        body_type = last_part
    return color, body_type


def _city_from_maps_link(soup: BeautifulSoup) -> str | None:
    for anchor in soup.find_all("a", href=True):
        match = MAPS_QUERY_RE.search(anchor["href"])
        if match is None:
            continue
        city = _clean_text(unquote_plus(match.group(2)))
        if city:
            return city[:1].upper() + city[1:].lower()
    return None


def _seller_is_dealer(soup: BeautifulSoup) -> bool:
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.string or "")
        except ValueError:
            continue
        items = data if isinstance(data, list) else [data]
        for item in items:
            seller = item.get("seller") if isinstance(item, dict) else None
            if isinstance(seller, dict) and str(seller.get("@type", "")).lower() in DEALER_SCHEMA_TYPES:
                return True
    return False


def parse_detail_page(body: str) -> AttributePatch:
    if not body or not body.strip():
        raise ParseError("Empty detail page")

    soup = BeautifulSoup(body, "html.parser")
    title = _meta_content(soup, property="og:title")
    labels = _extract_label_map(soup)
    if title is None and not labels:
        raise ParseError("Detail page has no listing content")

    color, body_type = _title_color_and_body(title)
    gearbox = _normalize_gearbox(labels.get(GEARBOX_LABEL))
    if gearbox is None:
        description = _meta_content(soup, name="description") or _meta_content(soup, property="og:description")
        gearbox = _normalize_gearbox(description)
    color = color or labels.get(COLOR_LABEL)
    body_type = body_type or labels.get(BODY_TYPE_LABEL)

    tax_exclusive = None
    tax_exclusive_price = None
    tax_match = TAX_EXCLUSIVE_RE.search(soup.get_text(" ").replace("\xa0", " "))
    if tax_match:
        tax_exclusive = True
        tax_exclusive_price = _to_int(tax_match.group(1))

    # Only companies can list a price excluding VAT.
    seller_type = SELLER_DEALER if tax_exclusive or _seller_is_dealer(soup) else None

    return AttributePatch(
        gearbox=gearbox,
        body_type=body_type,
        color=color,
        city=_city_from_maps_link(soup),
        tax_exclusive=tax_exclusive,
        tax_exclusive_price=tax_exclusive_price,
        seller_type=seller_type,
    )


def is_listing_removed_page(body: str) -> str | None:
    text = (body or "").lower()
    if any(marker in text for marker in SOLD_MARKERS):
        return REASON_SOLD
    if any(marker in text for marker in NOT_FOUND_MARKERS):
        return REASON_NOT_FOUND
    return None
