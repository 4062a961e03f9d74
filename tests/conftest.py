import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.pool import NullPool

from config.settings import TestingConfig
from singleuse import create_app
from singleuse.models import db
from singleuse.services import build_issuer, build_validator, grant_store

T0 = 1_700_000_000


class FixedClock:
    """Manually advanced time source, in epoch seconds."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FixedClock()


@pytest.fixture()
def app(clock):
    flask_app = create_app(TestingConfig)
    flask_app.config.update(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "RATELIMIT_ENABLED": False,
            "FORCE_HTTPS": False,
            "PUBLIC_BASE_URL": "https://cdn.example.com",
            "URL_SIGNING_KEY": "test-signing-key",
            "URL_SIGNING_KEY_ID": "k1",
        }
    )
    flask_app.extensions.setdefault("singleuse", {})["clock"] = clock
    with flask_app.app_context():
        # Ensure a clean schema per test run
        db.drop_all()
        db.create_all()
    yield flask_app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def store(app):
    return grant_store(app)


@pytest.fixture()
def issuer(app):
    return build_issuer(app)


@pytest.fixture()
def validator(app):
    return build_validator(app)


def make_file_engine(path):
    """File-backed SQLite engine whose transactions take the write lock up front.

    Each engine behaves like an independent process: no shared pool, and
    writers queue on SQLite's busy handler.
    """
    engine = create_engine(
        f"sqlite:///{path}",
        poolclass=NullPool,
        connect_args={"timeout": 30, "check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@pytest.fixture()
def file_db(tmp_path):
    path = tmp_path / "grants.db"
    engine = make_file_engine(path)
    db.metadata.create_all(engine)
    yield path
    engine.dispose()


@pytest.fixture()
def engine_factory(file_db):
    """Build fresh engines on the shared file database; disposed at teardown."""
    engines = []

    def _make():
        engine = make_file_engine(file_db)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.dispose()
