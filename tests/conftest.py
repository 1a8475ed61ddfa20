"""
Pytest fixtures for the funding workflow test suite.

Provides:
- A database engine created once per session (SQLite in memory by default)
- Per-test sessions isolated by an outer transaction that is rolled back
- Seeded roles and a set of users holding them
- Kernel services wired to a deterministic clock
- Structured-log capture

Environment Variables:
- DATABASE_URL: PostgreSQL connection URL.  When unset the suite runs on
  ``sqlite://``.
"""

import json
import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

from funding_config import get_active_config
from funding_kernel.db.engine import (
    create_tables,
    drop_tables,
    init_engine_from_url,
    reset_engine,
)
from funding_kernel.domain.actor import SystemActor, UserActor
from funding_kernel.domain.case_lifecycle import CaseStatus
from funding_kernel.domain.clock import DeterministicClock
from funding_kernel.domain.events import NotificationOutbox
from funding_kernel.domain.rbac import ADMIN, DONOR, MODERATOR, SPONSOR, SUPER_ADMIN, VOLUNTEER
from funding_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from funding_kernel.services.auditor_service import AuditorService
from funding_kernel.services.case_lifecycle_service import CaseLifecycleEngine
from funding_kernel.services.contribution_service import ContributionApprovalWorkflow
from funding_kernel.services.permission_cache import PermissionCache
from funding_kernel.services.permission_service import PermissionEvaluator
from funding_kernel.services.project_cycle_service import ProjectCycleManager
from funding_services.rbac_seed import seed_rbac

DEFAULT_DATABASE_URL = "sqlite://"


def get_database_url() -> str:
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
    Capture funding_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, cases):
            cases.change_status(...)
            logs = captured_logs()
            assert any(r["message"] == "case_status_changed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("funding_kernel")
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
# Database
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """Single engine for the entire test session."""
    eng = init_engine_from_url(get_database_url(), echo=False)
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session, drop once at end."""
    drop_tables()
    create_tables()
    yield
    drop_tables()


@pytest.fixture
def session_factory(db_tables, db_engine):
    """Factory of sessions joined to one outer, rolled-back transaction.

    ``commit()`` inside a session only releases a savepoint, so the
    workflow facade and the job scheduler can be tested with real
    commit/rollback behaviour and still leave no data behind.
    """
    conn = db_engine.connect()
    trans = conn.begin()

    def _factory() -> Session:
        return Session(
            bind=conn,
            join_transaction_mode="create_savepoint",
            expire_on_commit=False,
        )

    yield _factory
    try:
        trans.rollback()
    finally:
        conn.close()


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    """Provide a database session for testing."""
    sess = session_factory()
    yield sess
    sess.close()


# =============================================================================
# Kernel services
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock()


@pytest.fixture
def funding_config():
    return get_active_config(environ={})


@pytest.fixture
def permission_cache(clock, funding_config) -> PermissionCache:
    return PermissionCache(
        ttl_seconds=funding_config.rbac.permission_cache_ttl_seconds, clock=clock,
    )


@pytest.fixture
def auditor(session, clock) -> AuditorService:
    return AuditorService(session, clock)


@pytest.fixture
def evaluator(session, auditor, permission_cache, clock) -> PermissionEvaluator:
    return PermissionEvaluator(session, auditor, permission_cache, clock)


@pytest.fixture
def outbox() -> NotificationOutbox:
    return NotificationOutbox()


@pytest.fixture
def role_ids(session, evaluator, funding_config) -> dict[str, UUID]:
    """Install the default roles and permissions."""
    return seed_rbac(session, evaluator, funding_config.rbac)


@dataclass(frozen=True)
class Users:
    super_admin: UUID
    admin: UUID
    moderator: UUID
    sponsor: UUID
    volunteer: UUID
    donor: UUID
    other_donor: UUID
    nobody: UUID


@pytest.fixture
def users(evaluator, role_ids) -> Users:
    """One user per default role, plus a second donor and a user with no role."""
    created = Users(
        super_admin=uuid4(),
        admin=uuid4(),
        moderator=uuid4(),
        sponsor=uuid4(),
        volunteer=uuid4(),
        donor=uuid4(),
        other_donor=uuid4(),
        nobody=uuid4(),
    )
    for user_id, role_name in (
        (created.super_admin, SUPER_ADMIN),
        (created.admin, ADMIN),
        (created.moderator, MODERATOR),
        (created.sponsor, SPONSOR),
        (created.volunteer, VOLUNTEER),
        (created.donor, DONOR),
        (created.other_donor, DONOR),
    ):
        evaluator.bootstrap_role(user_id, role_name)
    return created


@pytest.fixture
def cases(session, auditor, evaluator, outbox, clock) -> CaseLifecycleEngine:
    return CaseLifecycleEngine(session, auditor, evaluator, outbox, clock)


@pytest.fixture
def contributions(session, auditor, evaluator, outbox, clock) -> ContributionApprovalWorkflow:
    return ContributionApprovalWorkflow(session, auditor, evaluator, outbox, clock)


@pytest.fixture
def projects(session, auditor, evaluator, outbox, clock) -> ProjectCycleManager:
    return ProjectCycleManager(session, auditor, evaluator, outbox, clock)


# =============================================================================
# Scenario helpers
# =============================================================================


@pytest.fixture
def published_case(cases, users, clock):
    """A one-time case with target 1000.00 created by the donor and published."""

    def _make(target: str = "1000.00", creator: UUID | None = None, case_type=None):
        creator = creator or users.donor
        kwargs = {"case_type": case_type} if case_type is not None else {}
        case = cases.create_case("School fees", Decimal(target), UserActor(creator), **kwargs)
        clock.advance(1)
        cases.change_status(case.case_id, CaseStatus.SUBMITTED, UserActor(creator))
        clock.advance(1)
        return cases.change_status(case.case_id, CaseStatus.PUBLISHED, UserActor(users.admin))

    return _make


@pytest.fixture
def system_actor() -> SystemActor:
    return SystemActor(job_name="test")
