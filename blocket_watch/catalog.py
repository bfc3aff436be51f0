"""SQLAlchemy-backed listing catalog.

Every public method runs in its own session and commits before returning, so
each mutation is an independent per-listing write that can be retried safely.
Database failures surface as ``PersistenceError``.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Iterable, Iterator

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from blocket_watch.db.models import Listing, MarketStat, PriceEvent, RunLog
from blocket_watch.errors import PersistenceError

if TYPE_CHECKING:
    from blocket_watch.worker import RunSummary


LISTING_COLUMNS = frozenset(column.name for column in Listing.__table__.columns) - {"id"}
RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"


def _chunked(values: list[Any], size: int) -> Iterable[list[Any]]:
    for idx in range(0, len(values), size):
        yield values[idx : idx + size]


def _needs_enrichment_clause():
    return and_(
        Listing.enrichment_status.is_(None),
        or_(Listing.gearbox.is_(None), Listing.city.is_(None)),
    )


class Catalog:
    def __init__(self, session_factory: sessionmaker, *, source: str = "blocket", batch_size: int = 50) -> None:
        self._session_factory = session_factory
        self._source = source
        self._batch_size = batch_size

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(str(exc)) from exc
        finally:
            session.close()

    def _active(self):
        return select(Listing).where(Listing.source == self._source).where(Listing.removed_at.is_(None))

    def find_by_external_id(self, external_id: str) -> Listing | None:
        with self._session() as session:
            return session.scalar(select(Listing).where(Listing.external_id == external_id))

    def create_listing(self, values: dict[str, Any], *, seen_at: datetime) -> Listing:
        """Insert a new listing together with its opening price event."""
        row = {key: value for key, value in values.items() if key in LISTING_COLUMNS}
        row.setdefault("source", self._source)
        row["first_seen_at"] = seen_at
        row["last_seen_at"] = seen_at
        with self._session() as session:
            listing = Listing(**row)
            session.add(listing)
            session.flush()
            if listing.price is not None:
                session.add(PriceEvent(listing_id=listing.id, price=listing.price, observed_at=seen_at))
            return listing

    def touch(self, listing_id: int, seen_at: datetime) -> None:
        with self._session() as session:
            session.execute(update(Listing).where(Listing.id == listing_id).values(last_seen_at=seen_at))

    def record_price_change(self, listing_id: int, price: int, observed_at: datetime) -> None:
        with self._session() as session:
            session.add(PriceEvent(listing_id=listing_id, price=price, observed_at=observed_at))
            session.execute(
                update(Listing).where(Listing.id == listing_id).values(price=price, last_seen_at=observed_at)
            )

    def apply_enrichment(
        self,
        listing_id: int,
        changes: dict[str, Any],
        *,
        status: str | None,
        attempted_at: datetime,
    ) -> None:
        values = {key: value for key, value in changes.items() if key in LISTING_COLUMNS}
        if status is not None:
            values["enrichment_status"] = status
            values["enriched_at"] = attempted_at
        if not values:
            return
        with self._session() as session:
            session.execute(update(Listing).where(Listing.id == listing_id).values(**values))

    def mark_removed(self, listing_id: int, reason: str, removed_at: datetime) -> bool:
        with self._session() as session:
            result = session.execute(
                update(Listing)
                .where(Listing.id == listing_id)
                .where(Listing.removed_at.is_(None))
                .values(removed_at=removed_at, removed_reason=reason)
            )
            return bool(result.rowcount)

    def bulk_mark_removed(self, listing_ids: Iterable[int], reason: str, removed_at: datetime) -> int:
        ids = sorted(set(listing_ids))
        marked = 0
        for batch in _chunked(ids, self._batch_size):
            with self._session() as session:
                result = session.execute(
                    update(Listing)
                    .where(Listing.id.in_(batch))
                    .where(Listing.removed_at.is_(None))
                    .values(removed_at=removed_at, removed_reason=reason)
                )
                marked += int(result.rowcount or 0)
        return marked

    def list_active(self) -> list[Listing]:
        with self._session() as session:
            return list(session.scalars(self._active().order_by(Listing.id)))

    def list_active_not_seen_since(self, cutoff: datetime) -> list[Listing]:
        with self._session() as session:
            return list(session.scalars(self._active().where(Listing.last_seen_at < cutoff).order_by(Listing.id)))

    def list_needing_enrichment(self, limit: int, *, after_id: int = 0) -> list[Listing]:
        with self._session() as session:
            stmt = (
                self._active()
                .where(_needs_enrichment_clause())
                .where(Listing.id > after_id)
                .order_by(Listing.id)
                .limit(limit)
            )
            return list(session.scalars(stmt))

    def price_history(self, listing_id: int) -> list[PriceEvent]:
        with self._session() as session:
            stmt = (
                select(PriceEvent)
                .where(PriceEvent.listing_id == listing_id)
                .order_by(PriceEvent.observed_at, PriceEvent.id)
            )
            return list(session.scalars(stmt))

    def start_run(self, run_type: str, regions: list[str], makes: list[str], started_at: datetime) -> int:
        with self._session() as session:
            run = RunLog(
                run_type=run_type,
                status=RUN_RUNNING,
                regions=list(regions),
                makes=list(makes),
                started_at=started_at,
            )
            session.add(run)
            session.flush()
            return run.id

    def finish_run(
        self,
        run_id: int,
        summary: RunSummary,
        finished_at: datetime,
        error: str | None = None,
    ) -> bool:
        """Finalize a running RunLog row; returns False if it was already finalized."""
        with self._session() as session:
            result = session.execute(
                update(RunLog)
                .where(RunLog.id == run_id)
                .where(RunLog.status == RUN_RUNNING)
                .values(
                    status=RUN_FAILED if error else RUN_COMPLETED,
                    finished_at=finished_at,
                    found=summary.found,
                    new=summary.new,
                    updated=summary.updated,
                    price_changes=summary.price_changes,
                    enriched=summary.enriched,
                    no_data=summary.no_data,
                    removed=summary.removed,
                    errors=summary.errors,
                    degraded=summary.degraded,
                    truncated_filters=list(summary.truncated_filters),
                    error_message=error,
                )
            )
            return bool(result.rowcount)

    def get_run(self, run_id: int) -> RunLog | None:
        with self._session() as session:
            return session.get(RunLog, run_id)

    def save_market_stats(self, day: date, rows: list[dict[str, Any]]) -> int:
        if not rows:
            return 0
        with self._session() as session:
            insert = pg_insert if session.get_bind().dialect.name == "postgresql" else sqlite_insert
            for batch in _chunked([{"day": day, **row} for row in rows], self._batch_size):
                stmt = insert(MarketStat).values(batch)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[MarketStat.day, MarketStat.region, MarketStat.make],
                    set_={
                        "listing_count": stmt.excluded.listing_count,
                        "avg_price": stmt.excluded.avg_price,
                        "median_price": stmt.excluded.median_price,
                        "min_price": stmt.excluded.min_price,
                        "max_price": stmt.excluded.max_price,
                        "private_count": stmt.excluded.private_count,
                        "dealer_count": stmt.excluded.dealer_count,
                    },
                )
                session.execute(stmt)
        return len(rows)

    def market_stats(self, day: date) -> list[MarketStat]:
        with self._session() as session:
            stmt = select(MarketStat).where(MarketStat.day == day).order_by(MarketStat.region, MarketStat.make)
            return list(session.scalars(stmt))
