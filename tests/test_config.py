import pytest

from blocket_watch.config import build_database_url, load_settings


def test_load_settings_from_env(monkeypatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgres://user:secret@db:5432/blocket")
    monkeypatch.setenv("BLOCKET_REGIONS", "Skane, stockholm")
    monkeypatch.setenv("BLOCKET_MAKES", "Volvo,Kia")
    monkeypatch.setenv("REMOVAL_POLICY", "Verify")
    monkeypatch.setenv("WORKER_RUN_TYPE", "light")
    monkeypatch.setenv("WORKER_RUN_ONCE", "true")

    settings = load_settings()

    assert settings.database_url == "postgresql+psycopg2://user:secret@db:5432/blocket"
    assert settings.regions == ("skane", "stockholm")
    assert settings.make_filters == ("volvo", "kia")
    assert settings.removal_policy == "verify"
    assert settings.run_type == "light"
    assert settings.run_once is True
    assert settings.search_retry.max_attempts == 3
    assert settings.detail_retry.max_attempts == 2


def test_defaults_search_all_makes(monkeypatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("BLOCKET_MAKES", raising=False)
    monkeypatch.setenv("POSTGRES_HOST", "localhost")

    assert load_settings().make_filters == (None,)
    assert build_database_url().startswith("postgresql+psycopg2://")
    assert "@localhost:" in build_database_url()


def test_invalid_removal_policy_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("REMOVAL_POLICY", "guess")

    with pytest.raises(RuntimeError):
        load_settings()
