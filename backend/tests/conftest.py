from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Generator

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="billtrack-tests-"))
os.environ.setdefault("BT_SQLITE_PATH", str(_TEST_ROOT / "app.db"))
os.environ.setdefault("BT_EXPORT_DIR", str(_TEST_ROOT / "exports"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from billtrack import models
from billtrack.config import settings
from billtrack.database import get_db
from billtrack.main import app
from billtrack.middleware import Identity
from billtrack.state import RuntimeState


@pytest.fixture(scope="session")
def temp_db_path() -> Generator[Path, None, None]:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "test.db"
        yield path


@pytest.fixture(scope="session")
def engine(temp_db_path: Path):
    url = f"sqlite:///{temp_db_path}"
    engine = create_engine(url, connect_args={"check_same_thread": False}, future=True)

    # pysqlite defers BEGIN on its own; emit it ourselves so SAVEPOINTs nest correctly.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    models.Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(scope="function")
def session(engine) -> Generator[Session, None, None]:
    connection = engine.connect()
    transaction = connection.begin()
    SessionTesting = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        future=True,
        join_transaction_mode="create_savepoint",
    )
    session = SessionTesting()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def state() -> RuntimeState:
    return RuntimeState(settings)


@pytest.fixture()
def identity() -> Identity:
    return Identity(user_id="alice", org_id="acme")


@pytest.fixture()
def headers(identity: Identity) -> dict[str, str]:
    return {settings.user_header: identity.user_id, settings.org_header: identity.org_id}


@pytest.fixture(scope="function")
def client(session: Session, state: RuntimeState) -> Generator[TestClient, None, None]:
    def override_get_db():
        yield session

    previous_state = app.state.runtime_state
    app.state.runtime_state = state
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.runtime_state = previous_state
