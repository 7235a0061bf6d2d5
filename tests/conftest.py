"""
Shared pytest fixtures for the workflow engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - project: Pre-created Project row (identifier DEMO)
    - manager / member / outsider: actors with manager, member and no role
    - recording_registry: handler registry capturing every dispatched event
    - workflow_service / work_service / transition_service: wired to it
    - generic_workflow: PENDING / DOING / DONE workflow in ``project``
"""

import pytest

from trackflow import create_app
from trackflow.core.state_machine import GENERIC_STATE_MACHINE
from trackflow.models import db as _db
from trackflow.models.project import Project
from trackflow.services.actor import PROJECT_ROLE_MANAGER, PROJECT_ROLE_MEMBER, Actor, project_role
from trackflow.services.event_service import EventEmitter, EventHandlerRegistry
from trackflow.services.transition_service import TransitionService
from trackflow.services.work_service import WorkCreation, WorkService
from trackflow.services.workflow_service import WorkflowCreation, WorkflowService


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


# ── Actors ───────────────────────────────────────────────────────────────


@pytest.fixture()
def project():
    """Create and commit a Project with identifier DEMO."""
    p = Project(name="Demo Project", identifier="DEMO")
    _db.session.add(p)
    _db.session.commit()
    return p


@pytest.fixture()
def manager(project):
    return Actor(
        id="u-manager", name="Mona Manager",
        roles=frozenset({project_role(PROJECT_ROLE_MANAGER, project.id)}),
    )


@pytest.fixture()
def member(project):
    return Actor(
        id="u-member", name="Max Member",
        roles=frozenset({project_role(PROJECT_ROLE_MEMBER, project.id)}),
    )


@pytest.fixture()
def outsider():
    return Actor(id="u-outsider", name="Olli Outsider", roles=frozenset({"member_other-project"}))


# ── Events & services ────────────────────────────────────────────────────


class RecordingHandler:
    """Handler that snapshots every event it sees."""

    def __init__(self):
        self.events = []

    def __call__(self, record):
        self.events.append(record.to_dict())
        return None

    def categories(self):
        return [e["event_category"] for e in self.events]


@pytest.fixture()
def recorder():
    return RecordingHandler()


@pytest.fixture()
def recording_registry(recorder):
    registry = EventHandlerRegistry()
    registry.register_handler(recorder, "recorder")
    return registry


@pytest.fixture()
def emitter(recording_registry):
    return EventEmitter(recording_registry)


@pytest.fixture()
def workflow_service(emitter):
    return WorkflowService(emitter=emitter)


@pytest.fixture()
def work_service(workflow_service, emitter):
    return WorkService(workflows=workflow_service, emitter=emitter)


@pytest.fixture()
def transition_service(workflow_service, emitter):
    return TransitionService(workflows=workflow_service, emitter=emitter)


@pytest.fixture()
def generic_workflow(workflow_service, project, manager):
    """PENDING (backlog) / DOING (in_process) / DONE (done) workflow."""
    return workflow_service.create_workflow(
        WorkflowCreation(
            name="Generic", project_id=project.id, state_machine=GENERIC_STATE_MACHINE,
        ),
        manager,
    )


@pytest.fixture()
def make_work(work_service, generic_workflow, project, member):
    """Factory creating works in ``generic_workflow`` through the service."""

    def _make(name="Task", state="PENDING", actor=None, priority_level=0):
        return work_service.create_work(
            WorkCreation(
                name=name, project_id=project.id, flow_id=generic_workflow.id,
                initial_state_name=state, priority_level=priority_level,
            ),
            actor or member,
        )

    return _make
