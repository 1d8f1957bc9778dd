import importlib
import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

# Ensure project root on path
sys.path.append(str(Path(__file__).resolve().parents[1]))

os.environ.setdefault("CALSHARE_SECRET_KEY", "test")
os.environ.setdefault("CALSHARE_DISABLE_CSRF", "1")

import calshare.users  # noqa: E402,F401  registers every table


@pytest.fixture(autouse=True)
def configure_tz(monkeypatch):
    monkeypatch.setenv("CALSHARE_TZ", "UTC")


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'stores.db'}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture
def app_module(tmp_path, monkeypatch):
    monkeypatch.setenv("CALSHARE_DB", str(tmp_path / "test.db"))
    if "calshare.app" in sys.modules:
        del sys.modules["calshare.app"]
    return importlib.import_module("calshare.app")
