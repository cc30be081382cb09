"""
Shared pytest fixtures for the Approval Orbit test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - auth_headers: builds identity headers for API calls
    - make_pipeline: workflow + project + roster + assets in one call
"""

from types import SimpleNamespace

import pytest

from orbit import create_app
from orbit.models import db as _db
from orbit.models.workflow import STAGE_COLORS
from orbit.services import project_service, reviewer_service, workflow_service

ORG = "org-acme"
OTHER_ORG = "org-globex"
OWNER = "dave"
DESIGNER = "erin"


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


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def auth_headers():
    """Return a builder for the identity headers the API expects."""

    def _headers(user_id=OWNER, org=ORG, name=None, email=None):
        headers = {"X-User-Id": user_id, "X-Org-Id": org, "X-User-Name": name or user_id.title()}
        if email:
            headers["X-User-Email"] = email
        return headers

    return _headers


@pytest.fixture()
def make_pipeline():
    """Build a workflow, a project using it, its roster and some assets.

    ``reviewers`` maps stage order to a list of user ids.  Returns ids only
    so tests never hold ORM instances across commits.
    """

    def _make(stages=("Design", "Brand", "Legal"), reviewers=None, asset_count=1,
              owner=OWNER, org=ORG, project_name="Spring Campaign"):
        wf = workflow_service.create_workflow(org, {
            "name": f"{project_name} review",
            "stages": [
                {"order": i + 1, "name": name, "color": STAGE_COLORS[i % len(STAGE_COLORS)]}
                for i, name in enumerate(stages)
            ],
        }, created_by=owner)
        project = project_service.create_project(
            org, {"name": project_name, "workflow_id": wf.id},
            created_by=owner, created_by_email=f"{owner}@example.com",
        )
        for order, users in (reviewers or {}).items():
            for user in users:
                reviewer_service.add_reviewer(
                    project.id, order, user, user.title(),
                    user_email=f"{user}@example.com", added_by=owner, organization_id=org,
                )
        asset_ids = []
        for i in range(asset_count):
            asset, _ = project_service.create_asset(
                project.id, org, {"name": f"Hero banner {i + 1}"},
                created_by=DESIGNER, created_by_email=f"{DESIGNER}@example.com",
            )
            asset_ids.append(asset.id)
        return SimpleNamespace(
            workflow_id=wf.id,
            project_id=project.id,
            asset_ids=asset_ids,
            asset_id=asset_ids[0] if asset_ids else None,
            org=org,
            owner=owner,
        )

    return _make
