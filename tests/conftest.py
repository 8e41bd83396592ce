"""
Shared pytest fixtures for the duty engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - admin / alice / bob / carol / dave: Caller identities
    - duty, assigned_duty, claim, review_claim: workflow stages built through
      the duty service
"""

import pytest

from dutyflow import create_app
from dutyflow.models import db as _db
from dutyflow.services import duty_service
from dutyflow.services.identity import Caller

GROUP_ID = "farewell-2026"


def _ok(result):
    """Unwrap a successful service result, failing loudly otherwise."""
    payload, err = result
    assert err is None, err
    return payload


# ── App & DB fixtures ────────────────────────────────────────────────────


def _reset_tables(recreate=True):
    """Drop (and optionally recreate) all tables with SQLite FK checks off.

    SQLite's DROP TABLE performs an implicit DELETE, which trips the
    self-referencing RESTRICT key on settlement_records once a test has
    written a compensation chain.
    """
    is_sqlite = _db.engine.dialect.name == "sqlite"
    if is_sqlite:
        raw = _db.engine.raw_connection()
        try:
            raw.driver_connection.execute("PRAGMA foreign_keys=OFF")
        finally:
            raw.close()
    try:
        _db.drop_all()
        if recreate:
            _db.create_all()
    finally:
        if is_sqlite:
            raw = _db.engine.raw_connection()
            try:
                raw.driver_connection.execute("PRAGMA foreign_keys=ON")
            finally:
                raw.close()


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _reset_tables(recreate=False)


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _reset_tables()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Callers ──────────────────────────────────────────────────────────────


@pytest.fixture()
def admin():
    return Caller("admin-1", "main_admin")


@pytest.fixture()
def alice():
    return Caller("alice", "student")


@pytest.fixture()
def bob():
    return Caller("bob", "student")


@pytest.fixture()
def carol():
    return Caller("carol", "student")


@pytest.fixture()
def dave():
    return Caller("dave", "student")


# ── Workflow stages ──────────────────────────────────────────────────────


@pytest.fixture()
def duty(admin):
    """A reimbursable duty in ``pending``."""
    payload = _ok(duty_service.create_duty(
        admin, GROUP_ID, "Buy farewell cake",
        description="Three-tier chocolate",
        expense_type="reimbursable",
        expected_amount="800.00",
    ))
    return payload["duty"]


@pytest.fixture()
def assigned_duty(admin, alice, duty):
    """The duty assigned to alice (``in_progress``)."""
    _ok(duty_service.assign_members(admin, duty["id"], [alice.user_id]))
    return duty


@pytest.fixture()
def claim(alice, assigned_duty):
    """Alice's pending 800.00 claim; duty in ``completed_pending_verification``."""
    payload = _ok(duty_service.submit_claim(
        alice, assigned_duty["id"], "800.00",
        description="Cake from the bakery", proof_reference="receipts/cake.jpg",
    ))
    return payload["claim"]


@pytest.fixture()
def review_claim(bob, carol, claim):
    """Claim approved by two peers; duty in ``admin_review``."""
    _ok(duty_service.cast_vote(bob, claim["id"], "approve"))
    payload = _ok(duty_service.cast_vote(carol, claim["id"], "approve"))
    assert payload["duty_status"] == "admin_review"
    return claim
