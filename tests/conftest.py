import base64
import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from blocket_watch.catalog import Catalog
from blocket_watch.config import Settings
from blocket_watch.db import init_db, make_engine, make_session_factory
from blocket_watch.errors import TransportError
from blocket_watch.scraper.client import FetchResponse


FIXTURES = Path(__file__).parent / "fixtures"
ITEM_URL = "https://www.blocket.se/mobility/item/{external_id}"


def read_fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


def make_doc(external_id: str, price: int | None = 100_000, **extra: Any) -> dict[str, Any]:
    doc = {
        "id": external_id,
        "make": "Volvo",
        "model": "V60",
        "year": 2019,
        "mileage": 9200,
        "fuel": "Diesel",
        "regno": "ABC123",
        "price": {"amount": price} if price is not None else None,
        "canonical_url": ITEM_URL.format(external_id=external_id),
        "timestamp": 1_700_000_000_000,
    }
    doc.update(extra)
    return doc


def encode_state(state: Any) -> str:
    encoded = base64.b64encode(json.dumps(state).encode("utf-8")).decode("ascii")
    return f'<html><body><script type="application/json">{encoded}</script></body></html>'


def make_search_page(docs: list[dict[str, Any]], *, last: int = 1, match_count: int | None = None) -> str:
    state = {
        "queries": [
            {
                "state": {
                    "data": {
                        "docs": docs,
                        "metadata": {
                            "paging": {"last": last},
                            "result_size": {"match_count": len(docs) if match_count is None else match_count},
                        },
                    }
                }
            }
        ]
    }
    return encode_state(state)


class FakeFetcher:
    """Serves canned responses by URL; unknown URLs fail like an unreachable host."""

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses: dict[str, Any] = dict(responses or {})
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch(self, url: str, *, retry=None, allow_404: bool = False) -> FetchResponse:
        with self._lock:
            self.calls.append(url)
        value = self.responses.get(url)
        if value is None:
            raise TransportError("connection refused", url=url, error_kind="connection")
        if isinstance(value, Exception):
            raise value
        status, text = (200, value) if isinstance(value, str) else value
        if status == 404 and not allow_404:
            raise TransportError("HTTP 404", url=url, status_code=404, error_kind="http_4xx")
        return FetchResponse(status_code=status, text=text, url=url)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def naive(value: datetime | None) -> datetime | None:
    # SQLite hands datetimes back without tzinfo.
    if value is None:
        return None
    return value.replace(tzinfo=None)


@pytest.fixture
def settings() -> Settings:
    return replace(
        Settings(),
        regions=("vasterbotten",),
        backoff_seconds=0.0,
        backoff_jitter_seconds=0.0,
        page_delay_seconds=0.0,
        filter_delay_seconds=0.0,
        enrichment_delay_seconds=0.0,
        enrichment_concurrency=2,
        verify_sample_size=0,
    )


@pytest.fixture
def catalog():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield Catalog(make_session_factory(engine), batch_size=2)
    engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()
