"""
Shared pytest fixtures for the Approval Workflow Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - org: the sample org chart seeded into the employees table
    - static_directory: the same org chart as an in-memory StaticDirectory
    - builder: ChainBuilder over static_directory with the test role holders
    - notifier: swap the engine's NotificationPort for the duration of a test
"""

import pytest

from approval_engine import create_app
from approval_engine.models import db as _db
from approval_engine.services.chain_builder import ChainBuilder
from approval_engine.services.directory import StaticDirectory
from approval_engine.services.directory_admin import seed_employees
from approval_engine.services.engine import get_engine, init_engine


# ── Org chart used across tests ──────────────────────────────────────────
#
#   president (Executive head, business head)
#   ├── finance   (Finance head, finance officer)
#   │   └── bob
#   ├── supply    (Supply Chain head, supply chain coordinator)
#   └── hana      (Engineering head, technical director)
#       └── alice (project manager)
#           └── jane

PRESIDENT = "president@corp.example"
FINANCE = "finance@corp.example"
BOB = "bob@corp.example"
SUPPLY = "supply@corp.example"
HANA = "hana@corp.example"
ALICE = "alice@corp.example"
JANE = "jane@corp.example"

ORG_CHART = [
    {"email": PRESIDENT, "name": "Grace Okafor", "department": "Executive",
     "capacities": ["business_head", "department_head"]},
    {"email": FINANCE, "name": "Frank Mbeki", "department": "Finance",
     "supervisor": PRESIDENT, "capacities": ["finance_officer", "department_head"]},
    {"email": BOB, "name": "Bob Tanaka", "department": "Finance", "supervisor": FINANCE},
    {"email": SUPPLY, "name": "Sue Lindqvist", "department": "Supply Chain",
     "supervisor": PRESIDENT, "capacities": ["supply_chain_coordinator", "department_head"]},
    {"email": HANA, "name": "Hana Petrova", "department": "Engineering",
     "supervisor": PRESIDENT, "capacities": ["department_head", "technical_director"]},
    {"email": ALICE, "name": "Alice Moreau", "department": "Engineering",
     "supervisor": HANA, "capacities": ["project_manager"]},
    {"email": JANE, "name": "Jane Adeyemi", "department": "Engineering", "supervisor": ALICE},
]

ROLE_HOLDERS = {
    "finance_officer": FINANCE,
    "business_head": PRESIDENT,
    "supply_chain_coordinator": SUPPLY,
}


# ── App & DB fixtures ────────────────────────────────────────────────────


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
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def org():
    """Seed the org chart into the employees table (used by SqlDirectory)."""
    seed_employees(ORG_CHART)
    return {row["email"]: row for row in ORG_CHART}


@pytest.fixture()
def static_directory():
    return StaticDirectory(ORG_CHART)


@pytest.fixture()
def builder(static_directory):
    return ChainBuilder(static_directory, ROLE_HOLDERS, grading_fallback_key=PRESIDENT)


@pytest.fixture()
def notifier(app):
    """Install a port for one test: ``notifier(port)``. The original is restored afterwards."""
    original = get_engine().notifier

    def _install(port):
        init_engine(app, directory=get_engine().directory, notifier=port)
        return port

    yield _install
    init_engine(app, directory=get_engine().directory, notifier=original)
