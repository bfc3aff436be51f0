from blocket_watch.db.models import Base, Listing, MarketStat, PriceEvent, RunLog, utcnow
from blocket_watch.db.session import init_db, make_engine, make_session_factory

__all__ = [
    "Base",
    "Listing",
    "MarketStat",
    "PriceEvent",
    "RunLog",
    "init_db",
    "make_engine",
    "make_session_factory",
    "utcnow",
]
