from blocket_watch.reconciler import DUPLICATE, NEW, PRICE_CHANGED, REMOVED, UNCHANGED, Reconciler, classify
from blocket_watch.scraper.parser import RawListing
from blocket_watch.snapshot import SearchFilter, Snapshot
from conftest import naive


def _candidate(external_id: str, price: int | None = 100_000) -> RawListing:
    return RawListing(
        external_id=external_id,
        url=f"https://www.blocket.se/mobility/item/{external_id}",
        make="Volvo",
        model="V60",
        price=price,
        region="vasterbotten",
    )


def _snapshot(*candidates: RawListing, region: str = "vasterbotten") -> Snapshot:
    return Snapshot(search_filter=SearchFilter(region=region), candidates=list(candidates))


def _store(catalog, clock, external_id: str, price: int | None = 100_000, **values):
    row = {"external_id": external_id, "url": f"https://www.blocket.se/mobility/item/{external_id}", "price": price}
    row.update(values)
    return catalog.create_listing(row, seen_at=clock())


def test_classify() -> None:
    assert classify(_candidate("A1"), None) == NEW


def test_classify_against_catalog(catalog, clock) -> None:
    stored = _store(catalog, clock, "A1")

    assert classify(_candidate("A1", 100_000), stored) == UNCHANGED
    assert classify(_candidate("A1", 95_000), stored) == PRICE_CHANGED
    assert classify(_candidate("A1", None), stored) == UNCHANGED

    no_price = _store(catalog, clock, "A2", price=None)
    assert classify(_candidate("A2", 50_000), no_price) == PRICE_CHANGED

    catalog.mark_removed(stored.id, "sold", clock())
    assert classify(_candidate("A1"), catalog.find_by_external_id("A1")) == REMOVED


def test_new_candidates_are_queued_not_written(catalog, clock) -> None:
    result = Reconciler(catalog, clock=clock).reconcile(_snapshot(_candidate("N1")), set())

    assert result.classifications == {"N1": NEW}
    assert [unit.external_id for unit in result.new] == ["N1"]
    assert result.new[0].is_new
    assert result.new[0].candidate.price == 100_000
    assert catalog.find_by_external_id("N1") is None


def test_unchanged_price_touches_without_price_event(catalog, clock) -> None:
    stored = _store(catalog, clock, "U1", gearbox="Automat", city="Umeå")
    clock.advance(hours=6)

    result = Reconciler(catalog, clock=clock).reconcile(_snapshot(_candidate("U1")), set())

    assert result.unchanged == 1
    assert result.price_changes == 0
    assert result.enrich == []
    assert naive(catalog.find_by_external_id("U1").last_seen_at) == naive(clock())
    assert len(catalog.price_history(stored.id)) == 1


def test_price_drop_appends_one_event(catalog, clock) -> None:
    stored = _store(catalog, clock, "A123", price=100_000)
    clock.advance(days=1)

    result = Reconciler(catalog, clock=clock).reconcile(_snapshot(_candidate("A123", 95_000)), set())

    assert result.classifications == {"A123": PRICE_CHANGED}
    assert result.price_changes == 1
    updated = catalog.find_by_external_id("A123")
    assert updated.price == 95_000
    assert naive(updated.last_seen_at) == naive(clock())
    history = catalog.price_history(stored.id)
    assert [(event.listing_id, event.price) for event in history] == [(stored.id, 100_000), (stored.id, 95_000)]


def test_missing_candidate_price_is_not_a_change(catalog, clock) -> None:
    stored = _store(catalog, clock, "P1", price=120_000)

    result = Reconciler(catalog, clock=clock).reconcile(_snapshot(_candidate("P1", None)), set())

    assert result.unchanged == 1
    assert catalog.find_by_external_id("P1").price == 120_000
    assert len(catalog.price_history(stored.id)) == 1


def test_listing_in_two_filters_is_processed_once(catalog, clock) -> None:
    stored = _store(catalog, clock, "D1", price=100_000)
    reconciler = Reconciler(catalog, clock=clock)
    seen: set[str] = set()

    first = reconciler.reconcile(_snapshot(_candidate("D1", 90_000), _candidate("N2")), seen)
    second = reconciler.reconcile(_snapshot(_candidate("D1", 90_000), _candidate("N2"), region="jamtland"), seen)

    assert first.price_changes == 1
    assert len(first.new) == 1
    assert second.duplicates == 2
    assert second.price_changes == 0
    assert second.new == []
    assert second.classifications == {"D1": DUPLICATE, "N2": DUPLICATE}
    assert seen == {"D1", "N2"}
    assert len(catalog.price_history(stored.id)) == 2


def test_reconcile_twice_is_idempotent(catalog, clock) -> None:
    stored = _store(catalog, clock, "I1", price=100_000)
    snapshot = _snapshot(_candidate("I1", 80_000))
    reconciler = Reconciler(catalog, clock=clock)

    reconciler.reconcile(snapshot, set())
    again = reconciler.reconcile(snapshot, set())

    assert again.classifications == {"I1": UNCHANGED}
    assert again.new == []
    assert [event.price for event in catalog.price_history(stored.id)] == [100_000, 80_000]


def test_empty_snapshot_performs_no_mutations(catalog, clock) -> None:
    stored = _store(catalog, clock, "E1")
    before = catalog.find_by_external_id("E1").last_seen_at
    clock.advance(days=1)

    result = Reconciler(catalog, clock=clock).reconcile(_snapshot(), set())

    assert result.classifications == {}
    assert catalog.find_by_external_id("E1").last_seen_at == before
    assert len(catalog.price_history(stored.id)) == 1


def test_removed_listing_is_ignored(catalog, clock) -> None:
    stored = _store(catalog, clock, "R1")
    catalog.mark_removed(stored.id, "sold", clock())

    result = Reconciler(catalog, clock=clock).reconcile(_snapshot(_candidate("R1", 50_000)), set())

    assert result.skipped_removed == 1
    assert result.new == []
    relisted = catalog.find_by_external_id("R1")
    assert relisted.removed_reason == "sold"
    assert relisted.price == 100_000


def test_enrichment_queue_respects_no_data_sentinel(catalog, clock) -> None:
    _store(catalog, clock, "Q1", gearbox="Automat")
    attempted = _store(catalog, clock, "Q2")
    catalog.apply_enrichment(attempted.id, {}, status="no_data", attempted_at=clock())
    _store(catalog, clock, "Q3", gearbox="Manuell", city="Luleå")
    snapshot = _snapshot(_candidate("Q1"), _candidate("Q2"), _candidate("Q3"))

    result = Reconciler(catalog, clock=clock).reconcile(snapshot, set())

    assert [unit.external_id for unit in result.enrich] == ["Q1"]
    assert result.enrich[0].listing_id is not None
    assert result.new == []
