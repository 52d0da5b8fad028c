"""
Pytest fixtures for the stock ledger test suite.

Provides:
- Database sessions with per-test rollback isolation
- A deterministic clock, a test actor and an in-memory catalog
- Kernel service fixtures wired the way the operation boundary wires them
- Helpers that drive documents through their lifecycle

Environment Variables:
- DATABASE_URL: SQLAlchemy URL of the test database.
  If not set, an in-memory SQLite database is used.  Tests marked
  ``postgres`` run only when DATABASE_URL points at PostgreSQL.
"""

import json
import logging
import os
import threading
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session

from stock_config.schema import SequenceDefinition
from stock_kernel.db.base import Base
from stock_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from stock_kernel.domain.clock import DeterministicClock
from stock_kernel.domain.dtos import LineInput, MovementInput
from stock_kernel.domain.movement import MovementType
from stock_kernel.domain.ports import Actor, StaticCatalog
from stock_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from stock_kernel.selectors.balance_selector import BalanceSelector
from stock_kernel.selectors.movement_selector import MovementSelector
from stock_kernel.selectors.return_selector import ReturnSelector
from stock_kernel.services.balance_store import BalanceStore
from stock_kernel.services.batch_runner import BatchRunner
from stock_kernel.services.count_adjustment import CountAdjustmentService
from stock_kernel.services.movement_service import MovementService
from stock_kernel.services.posting_engine import PostingEngine
from stock_kernel.services.return_service import ReturnService
from stock_kernel.services.reversal_service import ReversalService
from stock_kernel.services.sequence_service import SequenceService

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()

DEFAULT_DATABASE_URL = "sqlite://"

MOVEMENT_SEQUENCE = SequenceDefinition(doc_type="MOVEMENT", prefix="MOV", pad_length=6)


def get_database_url() -> str:
    """Get database URL from environment, or use in-memory SQLite."""
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def _is_postgres_url(url: str) -> bool:
    return url.startswith("postgresql")


def pytest_collection_modifyitems(config, items):
    """Skip PostgreSQL-only tests on other backends."""
    if _is_postgres_url(get_database_url()):
        return
    skip_pg = pytest.mark.skip(reason="requires DATABASE_URL pointing at PostgreSQL")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip_pg)


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
    Capture stock_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, posting_engine):
            posting_engine.post(doc.id, actor_id)
            logs = captured_logs()
            assert any(r["message"] == "movement_posted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("stock_kernel")
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
# Session-scoped DB infrastructure (create engine + tables ONCE per suite)
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """Single engine for the entire test session.

    Pool is large enough for the PostgreSQL concurrency tests.
    """
    eng = init_engine_from_url(
        get_database_url(),
        echo=False,
        pool_size=30,
        max_overflow=20,
        pool_timeout=10,
    )
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session, drop once at end."""
    drop_tables(db_engine)
    create_tables(db_engine)
    yield
    drop_tables(db_engine)


def _truncate_all_tables(engine):
    """Delete all rows; used by tests that perform real commits."""
    table_names = [t.name for t in reversed(Base.metadata.sorted_tables)]
    with engine.connect() as conn:
        if engine.dialect.name == "postgresql":
            conn.execute(text("TRUNCATE " + ", ".join(table_names) + " CASCADE"))
        else:
            for name in table_names:
                conn.execute(text(f"DELETE FROM {name}"))
        conn.commit()


# =============================================================================
# Per-test session with automatic rollback
# =============================================================================


@pytest.fixture(scope="function")
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    The session joins an outer transaction on a dedicated connection.
    Any ``session.commit()`` inside the test releases a savepoint; at
    teardown the outer transaction is rolled back, undoing ALL data
    changes made during the test.
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


# =============================================================================
# Concurrency testing fixtures (real commits + cleanup)
# =============================================================================


@pytest.fixture(scope="function")
def pg_session_factory(db_engine, db_tables):
    """Provide a tracked session factory for creating sessions in concurrent threads.

    Each thread should create its own session using this factory.  On
    teardown every tracked session is closed and all data is removed.
    """
    factory = get_session_factory()
    created_sessions = []
    lock = threading.Lock()

    def tracked_factory() -> Session:
        with lock:
            s = factory()
            created_sessions.append(s)
            return s

    yield tracked_factory

    for s in created_sessions:
        s.close()
    _truncate_all_tables(db_engine)


# =============================================================================
# Actor, clock, catalog
# =============================================================================


@pytest.fixture
def test_actor_id() -> UUID:
    """Provide a consistent test actor ID."""
    return TEST_ACTOR_ID


@pytest.fixture
def actor(test_actor_id) -> Actor:
    return Actor(actor_id=test_actor_id, name="Test Operator")


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    """Clock fixed at 2025-03-15 09:00 UTC."""
    return DeterministicClock()


@pytest.fixture
def product_id() -> UUID:
    return uuid4()


@pytest.fixture
def second_product_id() -> UUID:
    return uuid4()


@pytest.fixture
def variant_id() -> UUID:
    """A variant of ``second_product_id``."""
    return uuid4()


@pytest.fixture
def location_a() -> UUID:
    return uuid4()


@pytest.fixture
def location_b() -> UUID:
    return uuid4()


@pytest.fixture
def catalog(product_id, second_product_id, variant_id, location_a, location_b) -> StaticCatalog:
    cat = StaticCatalog()
    cat.add_product(product_id, "Widget")
    cat.add_product(second_product_id, "Gadget")
    cat.add_variant(variant_id, second_product_id, "Red")
    cat.add_location(location_a)
    cat.add_location(location_b)
    return cat


# =============================================================================
# Kernel services
# =============================================================================


@pytest.fixture
def sequence_service(session, deterministic_clock) -> SequenceService:
    return SequenceService(session, deterministic_clock)


@pytest.fixture
def seeded_sequences(session, sequence_service):
    """Seed the MOVEMENT counter (MOV prefix, 6 digits)."""
    sequence_service.initialize_sequences([MOVEMENT_SEQUENCE])
    session.flush()


@pytest.fixture
def movement_service(session, deterministic_clock, catalog, sequence_service, seeded_sequences):
    return MovementService(
        session,
        deterministic_clock,
        catalog=catalog,
        sequence_service=sequence_service,
    )


@pytest.fixture
def balance_store(session, deterministic_clock) -> BalanceStore:
    return BalanceStore(session, deterministic_clock)


@pytest.fixture
def posting_engine(session, deterministic_clock, catalog, balance_store, movement_service):
    return PostingEngine(
        session,
        deterministic_clock,
        catalog=catalog,
        balance_store=balance_store,
        movement_service=movement_service,
    )


@pytest.fixture
def reversal_service(session, deterministic_clock, movement_service) -> ReversalService:
    return ReversalService(session, deterministic_clock, movement_service=movement_service)


@pytest.fixture
def return_service(session, deterministic_clock, movement_service) -> ReturnService:
    return ReturnService(session, deterministic_clock, movement_service=movement_service)


@pytest.fixture
def batch_runner(session, deterministic_clock, movement_service, posting_engine) -> BatchRunner:
    return BatchRunner(
        session,
        deterministic_clock,
        movement_service=movement_service,
        posting_engine=posting_engine,
        max_batch_size=5,
    )


@pytest.fixture
def count_service(session, deterministic_clock, movement_service) -> CountAdjustmentService:
    return CountAdjustmentService(session, deterministic_clock, movement_service=movement_service)


@pytest.fixture
def balance_selector(session) -> BalanceSelector:
    return BalanceSelector(session)


@pytest.fixture
def movement_selector(session) -> MovementSelector:
    return MovementSelector(session)


@pytest.fixture
def return_selector(session) -> ReturnSelector:
    return ReturnSelector(session)


# =============================================================================
# Lifecycle helpers
# =============================================================================


@pytest.fixture
def create_movement(movement_service, test_actor_id):
    """Create a DRAFT document: ``create_movement(MovementType.RECEIVE, line, ...)``."""

    def _create(movement_type: MovementType, *lines: LineInput, **header):
        return movement_service.create(
            MovementInput(type=movement_type, lines=tuple(lines), **header),
            test_actor_id,
        )

    return _create


@pytest.fixture
def approve(movement_service, test_actor_id):
    """Submit and approve an existing document."""

    def _approve(doc):
        movement_service.submit(doc.id, test_actor_id)
        movement_service.approve(doc.id, test_actor_id)
        return doc

    return _approve


@pytest.fixture
def post_new(create_movement, approve, posting_engine, test_actor_id):
    """Create, submit, approve and post a document in one call."""

    def _post(movement_type: MovementType, *lines: LineInput, **header):
        doc = create_movement(movement_type, *lines, **header)
        approve(doc)
        posting_engine.post(doc.id, test_actor_id)
        return doc

    return _post


@pytest.fixture
def on_hand(balance_selector):
    """Current stock qty: ``on_hand(product_id, location_id, variant_id=None)``."""

    def _on_hand(product: UUID, location: UUID, variant: UUID | None = None) -> Decimal:
        return balance_selector.stock_qty(product, location, variant)

    return _on_hand
