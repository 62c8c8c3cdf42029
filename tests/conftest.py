"""
Pytest fixtures for the reimbursement kernel test suite.

Provides:
- A session-scoped engine and schema, with a per-test session that rolls
  back everything at teardown
- A deterministic clock and fixed admin/owner identities
- Kernel services wired to the test session
- A file-backed database for boundary (workflow) tests that need real
  commits across several sessions

Environment Variables:
- DATABASE_URL: database for the shared engine.  Defaults to an in-memory
  SQLite database.  Point it at PostgreSQL to run the ``postgres``-marked
  concurrency tests as well.
"""

import json
import logging
import os
from collections.abc import Iterable
from datetime import datetime, timezone
from io import StringIO
from typing import Any, Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from reimbursement_config import Settings
from reimbursement_kernel.db.base import Base
from reimbursement_kernel.db.engine import (
    build_engine,
    create_tables,
    drop_tables,
    init_engine_from_url,
    reset_engine,
)
from reimbursement_kernel.domain.clock import DeterministicClock
from reimbursement_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from reimbursement_kernel.selectors.summary_selector import AggregationEngine
from reimbursement_kernel.services.audit_recorder import AuditRecorder
from reimbursement_kernel.services.consensus_engine import ConsensusEngine
from reimbursement_kernel.services.ledger_materializer import LedgerMaterializer
from reimbursement_kernel.services.ledger_store import LedgerStore
from reimbursement_services.collaborators import StaticDirectory
from reimbursement_services.workflow import ReimbursementWorkflow

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///:memory:"


def get_database_url() -> str:
    """Get database URL from environment, or use in-memory SQLite."""
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture reimbursement_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, consensus_engine):
            consensus_engine.submit(...)
            logs = captured_logs()
            assert any(r["message"] == "request_submitted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("reimbursement_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Session-scoped DB infrastructure
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """Single engine for the whole test session."""
    eng = init_engine_from_url(get_database_url(), echo=False, pool_size=30, max_overflow=20)
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session, drop once at end."""
    drop_tables(db_engine)
    create_tables(db_engine)
    yield
    drop_tables(db_engine)


@pytest.fixture(scope="function")
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Provide a database session that never really commits.

    The session joins an outer transaction on a dedicated connection;
    ``session.commit()`` only releases a savepoint, and the outer
    transaction is rolled back at teardown.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


@pytest.fixture
def postgres_engine(db_tables, db_engine):
    """The shared engine when it is PostgreSQL; rows committed by the test are removed afterwards."""
    if db_engine.dialect.name != "postgresql":
        pytest.skip("requires PostgreSQL (set DATABASE_URL)")
    yield db_engine
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(text(f"DELETE FROM {table.name}"))


# =============================================================================
# Clock and identities
# =============================================================================


@pytest.fixture
def deterministic_clock():
    """Clock fixed at 2024-01-15 12:00:00 UTC until advanced."""
    return DeterministicClock(datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def owner_id() -> UUID:
    return uuid4()


@pytest.fixture
def admin_ids() -> tuple[UUID, UUID, UUID]:
    return (uuid4(), uuid4(), uuid4())


@pytest.fixture
def admin_a(admin_ids):
    return admin_ids[0]


@pytest.fixture
def admin_b(admin_ids):
    return admin_ids[1]


@pytest.fixture
def admin_c(admin_ids):
    return admin_ids[2]


@pytest.fixture
def directory(admin_ids):
    return StaticDirectory(admins=admin_ids)


# =============================================================================
# Kernel services on the test session
# =============================================================================


@pytest.fixture
def auditor(session, deterministic_clock):
    return AuditRecorder(session, deterministic_clock)


@pytest.fixture
def materializer(session, deterministic_clock, auditor):
    return LedgerMaterializer(session, deterministic_clock, auditor)


@pytest.fixture
def consensus_engine(session, directory, deterministic_clock, auditor, materializer):
    return ConsensusEngine(
        session,
        directory,
        clock=deterministic_clock,
        auditor=auditor,
        materializer=materializer,
        required_approver_count=2,
    )


@pytest.fixture
def ledger_store(session, deterministic_clock, auditor):
    return LedgerStore(session, deterministic_clock, auditor, default_currency="AFN")


@pytest.fixture
def aggregation(session, deterministic_clock):
    return AggregationEngine(session, deterministic_clock)


@pytest.fixture
def create_draft(consensus_engine, owner_id):
    """Factory: create a draft request with sensible defaults."""

    def _create(**overrides: Any):
        params = {
            "owner_id": owner_id,
            "title": "Conference travel",
            "amount_min": "80",
            "amount_avg": "100",
            "amount_max": "120",
        }
        params.update(overrides)
        return consensus_engine.create(**params)

    return _create


@pytest.fixture
def create_pending(create_draft, consensus_engine):
    """Factory: create and submit a request."""

    def _create(**overrides: Any):
        draft = create_draft(**overrides)
        return consensus_engine.submit(draft.request_id, draft.owner_id)

    return _create


# =============================================================================
# Boundary (workflow) fixtures: real commits on a file database
# =============================================================================


class RecordingSink:
    """Notification sink that remembers deliveries and can fail for chosen users."""

    def __init__(self, failing_users: Iterable[UUID] = ()):
        self.failing_users = set(failing_users)
        self.delivered: list[dict[str, Any]] = []

    def notify(self, user_id, title, body, link=None, meta=None):
        if user_id in self.failing_users:
            raise ConnectionError(f"delivery to {user_id} failed")
        self.delivered.append(
            {"user_id": user_id, "title": title, "body": body, "link": link, "meta": meta or {}}
        )

    def recipients(self) -> list[UUID]:
        return [d["user_id"] for d in self.delivered]


@pytest.fixture
def file_session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """Session factory over a fresh SQLite file database."""
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'reimbursements.db'}")
    create_tables(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def make_sink():
    """Factory for RecordingSink instances (e.g. with failing recipients)."""
    return RecordingSink


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def workflow(file_session_factory, directory, deterministic_clock, recording_sink):
    return ReimbursementWorkflow(
        file_session_factory,
        directory,
        settings=Settings(),
        clock=deterministic_clock,
        notification_sink_factory=lambda session: recording_sink,
    )
