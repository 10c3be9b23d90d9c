# quest_engine/conftest.py
import pytest
from fastapi.testclient import TestClient

from quest_engine.core.config import settings
from quest_engine.features.catalog.loader import clear_catalog_cache, load_catalog
from quest_engine.features.engine import build_services, reset_services, set_services
from quest_engine.features.leaderboard.reducers import StaticProfileDirectory
from quest_engine.features.ledger.store import InMemoryChallengeStore, reset_store
from quest_engine.features.notifications.service import RecordingNotifier


@pytest.fixture(scope="function", autouse=True)
def isolated_engine(monkeypatch):
    """
    Every test starts from the in-memory store with no database configured.

    SQL tests opt in through the `sql_store` fixture.
    """
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    monkeypatch.setattr(settings, "DATABASE_URL", None)
    monkeypatch.setattr(settings, "NOTIFICATION_WEBHOOK_URL", None)
    reset_store()
    reset_services()
    clear_catalog_cache()
    yield
    reset_store()
    reset_services()


@pytest.fixture
def catalog():
    return load_catalog()


@pytest.fixture
def store():
    return InMemoryChallengeStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def profiles():
    return StaticProfileDirectory({"alice": "Alice Walker", "bob": "Bob", "carol": "  "})


@pytest.fixture
def services(store, catalog, notifier, profiles):
    """Engine services over a fresh in-memory store, installed for the API too."""
    built = build_services(store=store, catalog=catalog, notifier=notifier, profiles=profiles)
    set_services(built)
    return built


@pytest.fixture
def sql_store():
    """SqlChallengeStore over a shared in-memory sqlite connection."""
    from quest_engine.core.database import create_all_tables, dispose_engine, drop_all_tables, init_engine
    from quest_engine.features.ledger.store_sql import SqlChallengeStore

    init_engine("sqlite+pysqlite:///:memory:")
    create_all_tables()
    yield SqlChallengeStore()
    drop_all_tables()
    dispose_engine()


@pytest.fixture
def client(services):
    from quest_engine.main import app

    return TestClient(app)
