"""
Tests for TransitionService.create_work_state_transition and the ledger
it maintains.
"""

import threading

import pytest

from trackflow import create_app
from trackflow.config import TestingConfig
from trackflow.core.exceptions import (
    ArchiveStatusInvalidError,
    ConcurrentModificationError,
    ForbiddenError,
    NotFoundError,
    TransitionNotAcceptableError,
    WorkProcessStepStateInvalidError,
)
from trackflow.core.state_machine import (
    GENERIC_STATE_MACHINE,
    State,
    StateCategory,
    StateMachine,
    Transition,
)
from trackflow.models import db
from trackflow.models.event import EVENT_PROPERTY_UPDATED, EventRecord
from trackflow.models.project import Project
from trackflow.models.work import Work, WorkProcessStep
from trackflow.services.actor import PROJECT_ROLE_MANAGER, Actor, project_role
from trackflow.services.event_service import EventEmitter, EventHandlerRegistry, HandleResult
from trackflow.services.transition_service import TransitionService
from trackflow.services.work_service import WorkCreation, WorkService
from trackflow.services.workflow_service import WorkflowCreation, WorkflowService


def _work(work_id) -> Work:
    return db.session.get(Work, work_id)


def _steps(work_id):
    return (
        WorkProcessStep.query.filter_by(work_id=work_id)
        .order_by(WorkProcessStep.begin_time, WorkProcessStep.end_time.is_(None))
        .all()
    )


def _open_steps(work_id):
    return WorkProcessStep.query.filter_by(work_id=work_id, end_time=None).all()


class TestAcceptedTransition:
    def test_moves_work_and_ledger(self, transition_service, generic_workflow, make_work, member, recorder):
        work_id = make_work().work.id
        recorder.events.clear()

        step = transition_service.create_work_state_transition(
            generic_workflow.id, work_id, "PENDING", "DOING", member,
        )

        work = _work(work_id)
        assert work.state_name == "DOING"
        assert work.state_category == "in_process"
        assert work.state_begin_time is not None

        opened = _open_steps(work_id)
        assert len(opened) == 1
        assert opened[0].id == step.id
        assert opened[0].state_name == "DOING"
        assert opened[0].creator_id == member.id

        closed = WorkProcessStep.query.filter(
            WorkProcessStep.work_id == work_id, WorkProcessStep.end_time.isnot(None),
        ).one()
        assert closed.state_name == "PENDING"
        assert closed.next_state_name == "DOING"
        assert closed.next_state_category == "in_process"
        assert closed.end_time == opened[0].begin_time

        assert recorder.categories() == [EVENT_PROPERTY_UPDATED]
        change = recorder.events[0]["updated_properties"][0]
        assert (change["propertyName"], change["oldValue"], change["newValue"]) == (
            "StateName", "PENDING", "DOING",
        )

    def test_one_open_step_after_many_moves(self, transition_service, generic_workflow, make_work, member):
        work_id = make_work().work.id
        path = ["PENDING", "DOING", "PENDING", "DONE", "PENDING", "DOING", "DONE"]
        for source, target in zip(path, path[1:]):
            transition_service.create_work_state_transition(generic_workflow.id, work_id, source, target, member)
            assert len(_open_steps(work_id)) == 1
            assert _work(work_id).state_name == target

        assert WorkProcessStep.query.filter_by(work_id=work_id).count() == len(path)


class TestProcessTimes:
    def test_begin_time_set_once(self, transition_service, generic_workflow, make_work, member):
        work_id = make_work().work.id
        assert _work(work_id).process_begin_time is None

        transition_service.create_work_state_transition(generic_workflow.id, work_id, "PENDING", "DOING", member)
        began = _work(work_id).process_begin_time
        assert began is not None

        transition_service.create_work_state_transition(generic_workflow.id, work_id, "DOING", "PENDING", member)
        assert _work(work_id).process_begin_time == began

        transition_service.create_work_state_transition(generic_workflow.id, work_id, "PENDING", "DOING", member)
        assert _work(work_id).process_begin_time == began

    def test_end_time_set_on_done_and_cleared_on_leave(
        self, transition_service, generic_workflow, make_work, member,
    ):
        work_id = make_work().work.id
        transition_service.create_work_state_transition(generic_workflow.id, work_id, "PENDING", "DONE", member)
        work = _work(work_id)
        assert work.process_end_time is not None
        assert work.process_begin_time is not None

        transition_service.create_work_state_transition(generic_workflow.id, work_id, "DONE", "PENDING", member)
        assert _work(work_id).process_end_time is None


class TestRejectedTransition:
    def test_undeclared_edge_not_acceptable(
        self, transition_service, generic_workflow, make_work, member, recorder,
    ):
        work_id = make_work().work.id
        transition_service.create_work_state_transition(generic_workflow.id, work_id, "PENDING", "DONE", member)
        recorder.events.clear()
        before = EventRecord.query.count()

        with pytest.raises(TransitionNotAcceptableError):
            transition_service.create_work_state_transition(generic_workflow.id, work_id, "DONE", "DOING", member)

        assert _work(work_id).state_name == "DONE"
        assert recorder.events == []
        assert EventRecord.query.count() == before

    def test_only_forward_edges_defined(self, transition_service, workflow_service, project, work_service, member):
        from trackflow.services.work_service import WorkCreation

        flow = workflow_service.create_workflow(
            WorkflowCreation(
                name="Linear", project_id=project.id,
                state_machine=StateMachine(
                    states=[
                        State("PENDING", StateCategory.BACKLOG),
                        State("DOING", StateCategory.IN_PROCESS),
                        State("DONE", StateCategory.DONE),
                    ],
                    transitions=[
                        Transition("begin", "PENDING", "DOING"),
                        Transition("finish", "DOING", "DONE"),
                    ],
                ),
            ),
            member,
        )
        work_id = work_service.create_work(
            WorkCreation("w", project.id, flow.id, "DONE"), member,
        ).work.id
        with pytest.raises(TransitionNotAcceptableError) as exc:
            transition_service.create_work_state_transition(flow.id, work_id, "DONE", "DOING", member)
        assert exc.value.matched == 0

    def test_wildcard_matching_several_edges_not_acceptable(
        self, transition_service, generic_workflow, make_work, member,
    ):
        work_id = make_work().work.id
        with pytest.raises(TransitionNotAcceptableError) as exc:
            transition_service.create_work_state_transition(generic_workflow.id, work_id, "PENDING", "", member)
        assert exc.value.matched == 2

    def test_archived_work(self, transition_service, work_service, generic_workflow, make_work, member):
        work_id = make_work().work.id
        transition_service.create_work_state_transition(generic_workflow.id, work_id, "PENDING", "DONE", member)
        work_service.archive_works([work_id], member)

        with pytest.raises(ArchiveStatusInvalidError):
            transition_service.create_work_state_transition(generic_workflow.id, work_id, "DONE", "PENDING", member)
        assert _work(work_id).state_name == "DONE"

    def test_viewer_without_role_forbidden(self, transition_service, generic_workflow, make_work):
        work_id = make_work().work.id
        foreign = Actor(
            id="u-viewer", name="viewer", roles=frozenset({"member_elsewhere"}),
            permissions=frozenset({"system:view"}),
        )
        with pytest.raises(ForbiddenError):
            transition_service.create_work_state_transition(generic_workflow.id, work_id, "PENDING", "DOING", foreign)
        assert _work(work_id).state_name == "PENDING"

    def test_missing_work(self, transition_service, generic_workflow, member):
        with pytest.raises(NotFoundError):
            transition_service.create_work_state_transition(generic_workflow.id, "nope", "PENDING", "DOING", member)


class TestConcurrency:
    def test_stale_from_loses(self, transition_service, generic_workflow, make_work, member, manager, recorder):
        work_id = make_work().work.id
        recorder.events.clear()

        # both callers observed PENDING; the first one wins
        transition_service.create_work_state_transition(generic_workflow.id, work_id, "PENDING", "DOING", member)
        ledger_after_winner = [s.to_dict() for s in _steps(work_id)]

        with pytest.raises(ConcurrentModificationError) as exc:
            transition_service.create_work_state_transition(generic_workflow.id, work_id, "PENDING", "DONE", manager)
        assert not isinstance(exc.value, WorkProcessStepStateInvalidError)
        assert exc.value.actual == 0

        assert _work(work_id).state_name == "DOING"
        assert [s.to_dict() for s in _steps(work_id)] == ledger_after_winner
        assert len(recorder.events) == 1

    def test_missing_open_step_is_ledger_error(self, transition_service, generic_workflow, make_work, member):
        work_id = make_work().work.id
        WorkProcessStep.query.filter_by(work_id=work_id).delete()
        db.session.commit()

        with pytest.raises(WorkProcessStepStateInvalidError):
            transition_service.create_work_state_transition(generic_workflow.id, work_id, "PENDING", "DOING", member)
        # the state update of the same transaction was rolled back
        assert _work(work_id).state_name == "PENDING"


class TestConcurrentThreads:
    """Two threads race on the same work against a file-backed database."""

    @pytest.fixture()
    def file_app(self, tmp_path, monkeypatch):
        monkeypatch.setattr(
            TestingConfig, "SQLALCHEMY_DATABASE_URI", f"sqlite:///{tmp_path / 'race.db'}",
        )
        application = create_app("testing")
        yield application
        with application.app_context():
            db.session.remove()
            db.drop_all()

    @staticmethod
    def _seed(file_app):
        with file_app.app_context():
            project = Project(name="Race", identifier="RACE")
            db.session.add(project)
            db.session.commit()
            actor = Actor(
                id="u-racer", name="Rita Racer",
                roles=frozenset({project_role(PROJECT_ROLE_MANAGER, project.id)}),
            )
            emitter = EventEmitter(EventHandlerRegistry())
            workflow = WorkflowService(emitter=emitter).create_workflow(
                WorkflowCreation(name="Generic", project_id=project.id, state_machine=GENERIC_STATE_MACHINE),
                actor,
            )
            created = WorkService(emitter=emitter).create_work(
                WorkCreation(
                    name="Contended", project_id=project.id,
                    flow_id=workflow.id, initial_state_name="PENDING",
                ),
                actor,
            )
            return actor, workflow.id, created.work.id

    def test_exactly_one_racer_wins(self, file_app):
        actor, flow_id, work_id = self._seed(file_app)
        barrier = threading.Barrier(2)
        outcomes = {}

        def move(target):
            with file_app.app_context():
                service = TransitionService(emitter=EventEmitter(EventHandlerRegistry()))
                barrier.wait(timeout=5)
                try:
                    service.create_work_state_transition(flow_id, work_id, "PENDING", target, actor)
                    outcomes[target] = "won"
                except ConcurrentModificationError:
                    outcomes[target] = "lost"
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=move, args=(t,)) for t in ("DOING", "DONE")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert sorted(outcomes.values()) == ["lost", "won"]
        winner = next(target for target, outcome in outcomes.items() if outcome == "won")
        with file_app.app_context():
            assert db.session.get(Work, work_id).state_name == winner
            open_steps = WorkProcessStep.query.filter_by(work_id=work_id, end_time=None).all()
            assert [s.state_name for s in open_steps] == [winner]
            assert WorkProcessStep.query.filter_by(work_id=work_id).count() == 2


class TestDispatch:
    def test_handler_failure_does_not_roll_back(
        self, transition_service, recording_registry, generic_workflow, make_work, member,
    ):
        def broken(record):
            raise RuntimeError("index down")

        def rejecting(record):
            return HandleResult(success=False, message="nope", handler_identifier="rejecting")

        recording_registry.register_handler(broken, "broken")
        recording_registry.register_handler(rejecting, "rejecting")
        work_id = make_work().work.id

        transition_service.create_work_state_transition(generic_workflow.id, work_id, "PENDING", "DOING", member)

        assert _work(work_id).state_name == "DOING"
        assert len(_open_steps(work_id)) == 1
