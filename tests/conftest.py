"""Pytest configuration and fixtures."""
from __future__ import annotations

import os
import sys
from contextlib import nullcontext
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("TASK_DISPATCH_MODE", "inline")
os.environ["ENABLE_GOOGLE"] = "false"
os.environ["ENABLE_SKIP_TRACE"] = "false"
os.environ.pop("GOOGLE_MAPS_API_KEY", None)
os.environ.pop("SKIP_TRACE_API_KEY", None)

from core.config import Settings
from core.db import Base
from core.models import Property, UploadJob, UploadJobStatus, Violation
from core.utils import utcnow
from ingestion.storage import UploadStorage
from services.geocoders import GeocodeOutcome
from services.task_dispatch import InlineDispatcher, TaskDispatcher

SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

CHICAGO_DALLAS_CSV = (
    "Case Number,Address,City,State,Zip,Violation Type,Status,Opened Date\n"
    "C-1,100 Main St,Chicago,IL,60601,Weeds and grass,Open,2024-01-05\n"
    "C-2,200 Oak Ave,Chicago,IL,60602,Roof leak,Open,2024-02-10\n"
    "D-1,300 Elm St,Dallas,TX,75201,Fence repair,Open,2024-03-01\n"
    'C-3,400 Pine St,"Illegal dumping on lot",IL,60603,Debris,Open,2024-03-15\n'
    "C-4,500 Lake Dr,chicago,IL,60604,Vacant and boarded,Open,2024-04-01\n"
    "D-2,600 Ross Ave,Dallas,TX,75202,Trash,Closed,2024-04-20\n"
)

SINGLE_CITY_CSV = (
    "Case Number,Address,City,State,Zip,Violation Type,Status,Opened Date\n"
    "A-1,10 First St,Austin,TX,78701,Weeds,Open,2024-01-01\n"
    "A-2,20 Second St,Austin,TX,78702,Fire damage to garage,Open,2024-01-02\n"
    "A-3,10 First St,Austin,TX,78701,Trash in yard,Open,2024-01-03\n"
)


@pytest.fixture(scope="session")
def engine():
    """Create a test database engine with working SAVEPOINTs."""
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy, not pysqlite, emit BEGIN so nested savepoints work
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture(scope="session")
def tables(engine):
    """Create all tables for testing."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(engine, tables) -> Session:
    """
    Returns a SQLAlchemy session for testing.

    Code under test commits freely; each commit releases a SAVEPOINT inside
    an outer transaction that is rolled back after the test.
    """
    connection = engine.connect()
    transaction = connection.begin()

    TestSession = sessionmaker(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )
    session = TestSession()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def storage(tmp_path) -> UploadStorage:
    return UploadStorage(tmp_path / "uploads")


class RecordingDispatcher(TaskDispatcher):
    """Records submissions without running anything."""

    def __init__(self, fail: bool = False):
        self.submitted: List[Tuple[str, Dict[str, Any]]] = []
        self.fail = fail

    def submit(self, name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if self.fail:
            raise RuntimeError("dispatch unavailable")
        self.submitted.append((name, dict(payload or {})))

    def names(self) -> List[str]:
        return [name for name, _ in self.submitted]


@pytest.fixture
def recorder() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def inline_dispatcher(db_session) -> InlineDispatcher:
    """Runs submitted tasks immediately in the test session."""
    return InlineDispatcher(session_factory=lambda: nullcontext(db_session))


@pytest.fixture
def make_settings():
    """Build Settings with field-name overrides."""
    def _make(**overrides) -> Settings:
        return Settings(**overrides)
    return _make


class FakeChain:
    """
    Stand-in for GeocoderChain.

    ``results`` maps an address to an outcome status: "geocoded", "failed",
    "timeout" or "skipped". Unknown addresses geocode to a fixed point.
    """

    names = ["fake"]

    def __init__(self, results: Optional[Dict[str, str]] = None):
        self.results = results or {}
        self.calls: List[int] = []
        self.closed = False

    def resolve(self, property_id, address, city, state, zip=None) -> GeocodeOutcome:
        self.calls.append(property_id)
        kind = self.results.get(address, "geocoded")
        if kind == "geocoded":
            return GeocodeOutcome(property_id, "geocoded", 41.88, -87.63, provider="fake")
        if kind == "skipped":
            return GeocodeOutcome(property_id, "skipped", reason="unusable")
        if kind == "timeout":
            return GeocodeOutcome(property_id, "failed", reason="fake: timeout", timed_out=True)
        return GeocodeOutcome(property_id, "failed", reason="no match")

    def close(self) -> None:
        self.closed = True


def add_property(
    session: Session,
    address: str = "100 Main St",
    city: str = "Chicago",
    state: str = "IL",
    zip: Optional[str] = "60601",
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    geocode_status: str = "pending",
) -> Property:
    prop = Property(
        address=address,
        city=city,
        state=state,
        zip=zip,
        normalized_key=f"{address}|{city}|{state}|{zip or ''}".lower(),
        latitude=latitude,
        longitude=longitude,
        geocode_status=geocode_status,
    )
    session.add(prop)
    session.flush()
    return prop


def add_upload_job(
    session: Session,
    status: str = UploadJobStatus.QUEUED.value,
    storage_path: Optional[str] = None,
    **fields,
) -> UploadJob:
    now = utcnow()
    values = dict(created_at=now, updated_at=now)
    values.update(fields)
    job = UploadJob(
        status=status,
        filename="violations.csv",
        storage_path=storage_path,
        **values,
    )
    session.add(job)
    session.commit()
    return job


def add_violation(session: Session, prop: Property, violation_type: str, **fields) -> Violation:
    violation = Violation(property_id=prop.id, violation_type=violation_type, **fields)
    session.add(violation)
    session.flush()
    return violation
