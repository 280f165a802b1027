import pytest

from tracker.app import create_app
from tracker.config import Settings
from tracker.db import SQLiteStore


@pytest.fixture
def store(tmp_path):
    s = SQLiteStore(str(tmp_path / "analytics.sqlite3"))
    s.open()
    s.ensure_schema()
    yield s
    s.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(sqlite_path=str(tmp_path / "app.sqlite3"))


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    return app.test_client()
