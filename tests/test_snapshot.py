from dataclasses import replace

import pytest

from blocket_watch.errors import TransportError
from blocket_watch.snapshot import SearchFilter, SnapshotBuilder
from conftest import FakeFetcher, encode_state, make_doc, make_search_page


def test_query_params_map_filter_to_site_vocabulary() -> None:
    search_filter = SearchFilter(
        region="vasterbotten",
        make="Volvo",
        model="V60",
        constraints={"price_max": 200_000, "year_min": 2015, "fuel": "Diesel", "gearbox": "Automat", "body_type": None},
    )

    assert search_filter.query_params(3) == {
        "location": "0.300024",
        "make": "volvo",
        "model": "v60",
        "price_to": 200_000,
        "year_from": 2015,
        "fuel": "diesel",
        "gearbox": "automatic",
        "page": 3,
    }
    assert "page" not in search_filter.query_params(1)
    assert search_filter.label == "vasterbotten/Volvo"
    assert SearchFilter(region="skane").label == "skane/all makes"


@pytest.mark.parametrize(
    "search_filter",
    [
        SearchFilter(region="atlantis"),
        SearchFilter(region="skane", constraints={"fuel": "kol"}),
        SearchFilter(region="skane", constraints={"colour": "red"}),
    ],
)
def test_query_params_reject_unknown_values(search_filter: SearchFilter) -> None:
    with pytest.raises(ValueError):
        search_filter.query_params()


def test_build_walks_pages_in_order_and_dedupes(settings) -> None:
    search_filter = SearchFilter(region="vasterbotten")
    fetcher = FakeFetcher()
    builder = SnapshotBuilder(fetcher, settings)
    pages = [
        make_search_page([make_doc("A1"), make_doc("A2")], last=3, match_count=5),
        make_search_page([make_doc("A2"), make_doc("A3")], last=3, match_count=5),
        make_search_page([make_doc("A4")], last=3, match_count=5),
    ]
    for page, body in enumerate(pages, start=1):
        fetcher.responses[builder.search_url(search_filter, page)] = body

    snapshot = builder.build(search_filter)

    assert [c.external_id for c in snapshot.candidates] == ["A1", "A2", "A3", "A4"]
    assert all(c.region == "vasterbotten" for c in snapshot.candidates)
    assert snapshot.duplicates == 1
    assert snapshot.total_pages == 3
    assert snapshot.match_count == 5
    assert snapshot.pages_fetched == 3
    assert snapshot.truncated is False
    assert fetcher.calls == [builder.search_url(search_filter, page) for page in (1, 2, 3)]


def test_build_empty_first_page_returns_empty_snapshot(settings) -> None:
    search_filter = SearchFilter(region="jamtland", make="Saab")
    fetcher = FakeFetcher()
    builder = SnapshotBuilder(fetcher, settings)
    fetcher.responses[builder.search_url(search_filter, 1)] = make_search_page([], last=1, match_count=0)

    snapshot = builder.build(search_filter)

    assert snapshot.candidates == []
    assert snapshot.truncated is False
    assert snapshot.error is None
    assert len(fetcher.calls) == 1


def test_build_stops_on_empty_page_before_last(settings) -> None:
    search_filter = SearchFilter(region="jamtland")
    fetcher = FakeFetcher()
    builder = SnapshotBuilder(fetcher, settings)
    fetcher.responses[builder.search_url(search_filter, 1)] = make_search_page([make_doc("J1")], last=4)
    fetcher.responses[builder.search_url(search_filter, 2)] = make_search_page([], last=4)

    snapshot = builder.build(search_filter)

    assert [c.external_id for c in snapshot.candidates] == ["J1"]
    assert snapshot.truncated is False
    assert len(fetcher.calls) == 2


def test_build_transport_failure_truncates(settings) -> None:
    search_filter = SearchFilter(region="norrbotten")
    fetcher = FakeFetcher()
    builder = SnapshotBuilder(fetcher, settings)
    page_two = builder.search_url(search_filter, 2)
    fetcher.responses[builder.search_url(search_filter, 1)] = make_search_page([make_doc("N1")], last=3)
    fetcher.responses[page_two] = TransportError("HTTP 503", url=page_two, status_code=503, retryable=True)

    snapshot = builder.build(search_filter)

    assert [c.external_id for c in snapshot.candidates] == ["N1"]
    assert snapshot.truncated is True
    assert snapshot.error == "page 2: HTTP 503"
    assert len(fetcher.calls) == 2


def test_build_unparseable_page_truncates(settings) -> None:
    search_filter = SearchFilter(region="norrbotten")
    fetcher = FakeFetcher()
    builder = SnapshotBuilder(fetcher, settings)
    fetcher.responses[builder.search_url(search_filter, 1)] = "<html><body>Captcha</body></html>"

    snapshot = builder.build(search_filter)

    assert snapshot.candidates == []
    assert snapshot.truncated is True
    assert snapshot.error.startswith("page 1:")


def test_build_page_cap_marks_truncated(settings) -> None:
    search_filter = SearchFilter(region="skane")
    fetcher = FakeFetcher()
    builder = SnapshotBuilder(fetcher, replace(settings, max_pages=2))
    for page in (1, 2, 3):
        fetcher.responses[builder.search_url(search_filter, page)] = make_search_page([make_doc(f"S{page}")], last=10)

    snapshot = builder.build(search_filter)

    assert [c.external_id for c in snapshot.candidates] == ["S1", "S2"]
    assert snapshot.truncated is True
    assert len(fetcher.calls) == 2


def test_build_unexpected_state_shape_truncates(settings) -> None:
    search_filter = SearchFilter(region="gotland")
    fetcher = FakeFetcher()
    builder = SnapshotBuilder(fetcher, settings)
    fetcher.responses[builder.search_url(search_filter, 1)] = make_search_page([make_doc("G1")], last=2)
    fetcher.responses[builder.search_url(search_filter, 2)] = encode_state({"queries": [{"state": "x"}]})

    snapshot = builder.build(search_filter)

    assert [c.external_id for c in snapshot.candidates] == ["G1"]
    assert snapshot.truncated is True
    assert snapshot.error.startswith("page 2:")
