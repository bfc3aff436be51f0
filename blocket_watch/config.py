import os
from dataclasses import dataclass

from blocket_watch.retry import RetryPolicy


REMOVAL_POLICIES = ("bulk", "verify")
RUN_TYPES = ("full", "light")


def _env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None:
        raise RuntimeError(f"Missing required env var: {name}")
    return value


def _env_bool(name: str, default: str = "false") -> bool:
    return _env(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> tuple[str, ...]:
    return tuple(item.strip().lower() for item in _env(name, default).split(",") if item.strip())


def _env_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = _env(name, default).strip().lower()
    if value not in choices:
        raise RuntimeError(f"{name} must be one of {', '.join(choices)}, got {value!r}")
    return value


def build_database_url() -> str:
    explicit = os.getenv("DATABASE_URL")
    if explicit:
        if explicit.startswith("postgres://"):
            return explicit.replace("postgres://", "postgresql+psycopg2://", 1)
        return explicit
    postgres_user = _env("POSTGRES_USER", "blocket")
    postgres_password = _env("POSTGRES_PASSWORD", "blocket")
    postgres_host = _env("POSTGRES_HOST", "db")
    postgres_port = _env("POSTGRES_PORT", "5432")
    postgres_db = _env("POSTGRES_DB", "blocket_watch")
    return f"postgresql+psycopg2://{postgres_user}:{postgres_password}@{postgres_host}:{postgres_port}/{postgres_db}"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite://"
    source_name: str = "blocket"
    search_url: str = "https://www.blocket.se/mobility/search/car"
    item_url_template: str = "https://www.blocket.se/mobility/item/{external_id}"

    regions: tuple[str, ...] = ("norrbotten", "vasterbotten", "jamtland", "vasternorrland")
    makes: tuple[str, ...] = ()

    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 30.0
    search_max_retries: int = 3
    detail_max_retries: int = 2
    backoff_seconds: float = 1.0
    backoff_jitter_seconds: float = 0.5

    page_delay_seconds: float = 0.8
    filter_delay_seconds: float = 2.0
    max_pages: int = 500

    enrichment_concurrency: int = 5
    enrichment_delay_seconds: float = 0.2
    backfill_batch_size: int = 100

    removal_policy: str = "bulk"
    verify_sample_size: int = 10
    removal_batch_size: int = 50
    full_stale_after_days: int = 2
    light_stale_after_days: int = 3

    run_type: str = "full"
    interval_seconds: int = 12 * 60 * 60
    run_once: bool = False
    log_level: str = "INFO"

    @property
    def search_retry(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.search_max_retries,
            backoff_seconds=self.backoff_seconds,
            jitter_seconds=self.backoff_jitter_seconds,
        )

    @property
    def detail_retry(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.detail_max_retries,
            backoff_seconds=self.backoff_seconds,
            jitter_seconds=self.backoff_jitter_seconds,
        )

    @property
    def make_filters(self) -> tuple[str | None, ...]:
        # No configured makes means one search per region across all makes.
        return self.makes or (None,)


def load_settings() -> Settings:
    return Settings(
        database_url=build_database_url(),
        source_name=_env("BLOCKET_SOURCE_NAME", "blocket"),
        search_url=_env("BLOCKET_SEARCH_URL", "https://www.blocket.se/mobility/search/car"),
        item_url_template=_env("BLOCKET_ITEM_URL_TEMPLATE", "https://www.blocket.se/mobility/item/{external_id}"),
        regions=_env_list("BLOCKET_REGIONS", "norrbotten,vasterbotten,jamtland,vasternorrland"),
        makes=_env_list("BLOCKET_MAKES", ""),
        connect_timeout_seconds=float(_env("REQUEST_CONNECT_TIMEOUT_SECONDS", "10")),
        read_timeout_seconds=float(_env("REQUEST_READ_TIMEOUT_SECONDS", "30")),
        search_max_retries=int(_env("SEARCH_MAX_RETRIES", "3")),
        detail_max_retries=int(_env("DETAIL_MAX_RETRIES", "2")),
        backoff_seconds=float(_env("BACKOFF_SECONDS", "1.0")),
        backoff_jitter_seconds=float(_env("BACKOFF_JITTER_SECONDS", "0.5")),
        page_delay_seconds=float(_env("PAGE_DELAY_SECONDS", "0.8")),
        filter_delay_seconds=float(_env("FILTER_DELAY_SECONDS", "2.0")),
        max_pages=int(_env("MAX_PAGES", "500")),
        enrichment_concurrency=max(1, int(_env("ENRICHMENT_CONCURRENCY", "5"))),
        enrichment_delay_seconds=float(_env("ENRICHMENT_DELAY_SECONDS", "0.2")),
        backfill_batch_size=int(_env("BACKFILL_BATCH_SIZE", "100")),
        removal_policy=_env_choice("REMOVAL_POLICY", "bulk", REMOVAL_POLICIES),
        verify_sample_size=int(_env("VERIFY_SAMPLE_SIZE", "10")),
        removal_batch_size=int(_env("REMOVAL_BATCH_SIZE", "50")),
        full_stale_after_days=int(_env("FULL_STALE_AFTER_DAYS", "2")),
        light_stale_after_days=int(_env("LIGHT_STALE_AFTER_DAYS", "3")),
        run_type=_env_choice("WORKER_RUN_TYPE", "full", RUN_TYPES),
        interval_seconds=int(_env("WORKER_INTERVAL_SECONDS", str(12 * 60 * 60))),
        run_once=_env_bool("WORKER_RUN_ONCE"),
        log_level=_env("LOG_LEVEL", "INFO").upper(),
    )
