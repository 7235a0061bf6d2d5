"""
Workflow Engine
Workflow Service — persistence of a workflow's state machine definition.

Operations:
    - create_workflow / detail_workflow / query_workflows
    - update_workflow_base / delete_workflow (reference-checked)
    - create_state / update_workflow_state (rename saga)
    - update_state_range_orders (conditional re-rank)
    - create_workflow_state_transitions / delete_workflow_state_transitions

Authorization:
    create_workflow, create_state, update_state_range_orders → any project role
    detail_workflow                                          → project view
    everything else                                          → project manager

Transaction policy: each public mutation is one ``unit_of_work()``; events
created inside it are dispatched only after commit.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable

from trackflow.core.exceptions import (
    ForbiddenError,
    NotFoundError,
    StateExistedError,
    StateInvalidError,
    TransitionExistedError,
    UnknownStateError,
    ValidationError,
    WorkflowIsReferencedError,
)
from trackflow.core.state_machine import State, StateCategory, StateMachine, Transition
from trackflow.models import db, new_id, utcnow
from trackflow.models.event import EVENT_EXTENSION_UPDATED, SOURCE_TYPE_WORK
from trackflow.models.work import Work, WorkProcessStep
from trackflow.models.workflow import (
    STATE_ORDER_BASE,
    Workflow,
    WorkflowDetail,
    WorkflowPropertyDefinition,
    WorkflowState,
    WorkflowStateTransition,
)
from trackflow.services.actor import PROJECT_ROLE_MANAGER, Actor
from trackflow.services.event_service import EventEmitter, UpdatedProperty
from trackflow.services.helpers.unit_of_work import conditional_update, unit_of_work

logger = logging.getLogger(__name__)


# ── Inputs ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class WorkflowCreation:
    name: str
    project_id: str
    state_machine: StateMachine
    theme_color: str = ""
    theme_icon: str = ""


@dataclass(frozen=True)
class WorkflowBaseUpdating:
    name: str
    theme_color: str = ""
    theme_icon: str = ""


@dataclass(frozen=True)
class StateCreating:
    name: str
    category: StateCategory | str
    order: int = 0
    transitions: tuple[Transition, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class WorkflowStateUpdating:
    """Rename ``origin_name`` to ``name``; ``order`` defaults to the current rank."""

    origin_name: str
    name: str
    order: int | None = None


@dataclass(frozen=True)
class StateOrderUpdating:
    state: str
    old_order: int
    new_order: int


def _category(value) -> StateCategory:
    try:
        return StateCategory(value)
    except ValueError:
        raise ValidationError(
            f"category must be one of: {', '.join(c.value for c in StateCategory)}",
            {"category": value},
        ) from None


class WorkflowService:
    """Owns workflows, their states, transitions and the rename cascade."""

    def __init__(
        self,
        emitter: EventEmitter | None = None,
        id_factory: Callable[[], str] = new_id,
        clock: Callable = utcnow,
    ):
        self.emitter = emitter or EventEmitter()
        self.id_factory = id_factory
        self.clock = clock

    # ── Lookups & guards ─────────────────────────────────────────────────

    def _get_workflow(self, workflow_id: str) -> Workflow:
        workflow = db.session.get(Workflow, workflow_id)
        if not workflow:
            raise NotFoundError(resource="Workflow", resource_id=workflow_id)
        return workflow

    @staticmethod
    def _require_project_role(actor: Actor, workflow: Workflow, action: str) -> None:
        if not actor.has_role_suffix(f"_{workflow.project_id}"):
            raise ForbiddenError(action, f"workflow {workflow.id}")

    @staticmethod
    def _require_manager(actor: Actor, workflow: Workflow, action: str) -> None:
        if not actor.has_project_role(PROJECT_ROLE_MANAGER, workflow.project_id):
            raise ForbiddenError(action, f"workflow {workflow.id}")

    @staticmethod
    def load_state_machine(workflow_id: str) -> StateMachine:
        """Reassemble the state machine from stored rows, states ordered by rank.

        Raises:
            StateInvalidError: a stored transition names a state that does not exist.
        """
        state_rows = (
            WorkflowState.query
            .filter_by(workflow_id=workflow_id)
            .order_by(WorkflowState.order.asc(), WorkflowState.id.asc())
            .all()
        )
        transition_rows = (
            WorkflowStateTransition.query
            .filter_by(workflow_id=workflow_id)
            .order_by(WorkflowStateTransition.id.asc())
            .all()
        )
        states = [row.to_state() for row in state_rows]
        names = {s.name for s in states}
        transitions = []
        for row in transition_rows:
            if row.from_state not in names or row.to_state not in names:
                raise StateInvalidError(
                    f"transition {row.from_state!r} -> {row.to_state!r} of workflow "
                    f"{workflow_id} references an unknown state"
                )
            transitions.append(row.to_transition())
        return StateMachine(states=states, transitions=transitions)

    # ── Workflow CRUD ────────────────────────────────────────────────────

    def create_workflow(self, creation: WorkflowCreation, actor: Actor) -> WorkflowDetail:
        """Persist a workflow with all its states and transitions atomically.

        States keep the caller's ordering; each is ranked
        ``STATE_ORDER_BASE + position``.

        Raises:
            ForbiddenError: actor has no role in the target project.
            ValidationError: empty name or malformed state machine.
            TransitionExistedError: two transitions share the same edge.
        """
        if not actor.has_role_suffix(f"_{creation.project_id}"):
            raise ForbiddenError("create workflow", f"project {creation.project_id}")
        if not (creation.name or "").strip():
            raise ValidationError("Workflow name is required", {"name": "required"})

        creation.state_machine.validate()
        now = self.clock()
        states = [
            State(s.name, _category(s.category), STATE_ORDER_BASE + idx + 1)
            for idx, s in enumerate(creation.state_machine.states)
        ]
        transitions = list(creation.state_machine.transitions)

        with unit_of_work():
            workflow = Workflow(
                id=self.id_factory(),
                name=creation.name.strip(),
                project_id=creation.project_id,
                theme_color=creation.theme_color,
                theme_icon=creation.theme_icon,
                create_time=now,
            )
            db.session.add(workflow)
            for s in states:
                db.session.add(WorkflowState(
                    workflow_id=workflow.id, name=s.name, category=s.category.value,
                    order=s.order, create_time=now,
                ))
            for t in transitions:
                db.session.add(WorkflowStateTransition(
                    workflow_id=workflow.id, name=t.name,
                    from_state=t.from_state, to_state=t.to_state, create_time=now,
                ))

        logger.info("Workflow created id=%s project=%s states=%d transitions=%d",
                    workflow.id, workflow.project_id, len(states), len(transitions),
                    extra={"workflow_id": workflow.id, "project_id": workflow.project_id})
        return WorkflowDetail(workflow, StateMachine(states=states, transitions=transitions))

    def detail_workflow(self, workflow_id: str, actor: Actor) -> WorkflowDetail:
        """Workflow header plus its state machine.

        Raises:
            NotFoundError, ForbiddenError, StateInvalidError
        """
        workflow = self._get_workflow(workflow_id)
        if not actor.has_project_view_perm(workflow.project_id):
            raise ForbiddenError("view workflow", f"workflow {workflow_id}")
        return WorkflowDetail(workflow, self.load_state_machine(workflow.id))

    def query_workflows(
        self,
        actor: Actor,
        project_id: str | None = None,
        name: str | None = None,
    ) -> list[Workflow]:
        """Workflows of the projects the actor belongs to, optionally filtered."""
        visible = actor.visible_projects()
        if not visible:
            return []
        q = Workflow.query.filter(Workflow.project_id.in_(visible))
        if project_id:
            q = q.filter(Workflow.project_id == project_id)
        if name:
            q = q.filter(Workflow.name.like(f"%{name}%"))
        return q.order_by(Workflow.create_time.asc()).all()

    def update_workflow_base(
        self, workflow_id: str, updating: WorkflowBaseUpdating, actor: Actor,
    ) -> Workflow:
        if not (updating.name or "").strip():
            raise ValidationError("Workflow name is required", {"name": "required"})
        with unit_of_work():
            workflow = self._get_workflow(workflow_id)
            self._require_manager(actor, workflow, "update workflow")
            workflow.name = updating.name.strip()
            workflow.theme_color = updating.theme_color
            workflow.theme_icon = updating.theme_icon
        logger.info("Workflow updated id=%s", workflow_id, extra={"workflow_id": workflow_id})
        return workflow

    def delete_workflow(self, workflow_id: str, actor: Actor) -> None:
        """Delete an unreferenced workflow and cascade its definition rows.

        Raises:
            NotFoundError, ForbiddenError
            WorkflowIsReferencedError: a work or process step still uses it.
        """
        with unit_of_work():
            workflow = self._get_workflow(workflow_id)
            self._require_manager(actor, workflow, "delete workflow")
            self._check_not_referenced(workflow.id)

            WorkflowState.query.filter_by(workflow_id=workflow.id).delete(synchronize_session=False)
            WorkflowStateTransition.query.filter_by(workflow_id=workflow.id).delete(
                synchronize_session=False,
            )
            WorkflowPropertyDefinition.query.filter_by(workflow_id=workflow.id).delete(
                synchronize_session=False,
            )
            db.session.delete(workflow)
        logger.info("Workflow deleted id=%s", workflow_id, extra={"workflow_id": workflow_id})

    @staticmethod
    def _check_not_referenced(workflow_id: str) -> None:
        if Work.query.filter_by(flow_id=workflow_id).first() is not None:
            raise WorkflowIsReferencedError(workflow_id, "work")
        if WorkProcessStep.query.filter_by(flow_id=workflow_id).first() is not None:
            raise WorkflowIsReferencedError(workflow_id, "work process step")

    # ── States ───────────────────────────────────────────────────────────

    def create_state(self, workflow_id: str, creating: StateCreating, actor: Actor) -> State:
        """Add a state, optionally together with transitions touching it.

        Raises:
            StateExistedError: name already used in this workflow.
            TransitionExistedError: a transition duplicates an existing edge.
            UnknownStateError: a transition endpoint does not exist.
        """
        category = _category(creating.category)
        if not (creating.name or "").strip():
            raise ValidationError("State name is required", {"name": "required"})

        now = self.clock()
        with unit_of_work():
            workflow = self._get_workflow(workflow_id)
            self._require_project_role(actor, workflow, "create state")

            if WorkflowState.query.filter_by(workflow_id=workflow.id, name=creating.name).first():
                raise StateExistedError(creating.name)
            db.session.add(WorkflowState(
                workflow_id=workflow.id, name=creating.name, category=category.value,
                order=creating.order, create_time=now,
            ))
            db.session.flush()

            names = {
                name for (name,) in
                WorkflowState.query.filter_by(workflow_id=workflow.id)
                .with_entities(WorkflowState.name).all()
            }
            edges = {
                (row.from_state, row.to_state) for row in
                WorkflowStateTransition.query.filter_by(workflow_id=workflow.id).all()
            }
            for t in creating.transitions:
                for endpoint in (t.from_state, t.to_state):
                    if endpoint not in names:
                        raise UnknownStateError(endpoint)
                if (t.from_state, t.to_state) in edges:
                    raise TransitionExistedError(t.from_state, t.to_state)
                edges.add((t.from_state, t.to_state))
                db.session.add(WorkflowStateTransition(
                    workflow_id=workflow.id, name=t.name,
                    from_state=t.from_state, to_state=t.to_state, create_time=now,
                ))

        logger.info("State created workflow=%s name=%s", workflow_id, creating.name,
                    extra={"workflow_id": workflow_id})
        return State(creating.name, category, creating.order)

    def update_workflow_state(
        self, workflow_id: str, updating: WorkflowStateUpdating, actor: Actor,
    ) -> State:
        """Rename (and/or re-rank) a state, cascading the new name everywhere.

        The rename runs as one transaction in this order:
            1. check origin exists and the new name is unused
            2. replace the WorkflowState row (category and create_time kept)
            3. rewrite WorkflowStateTransition.from_state / to_state
            4. rewrite Work.state_name, one EXTENSION_UPDATED event per work
            5. rewrite WorkProcessStep.state_name and next_state_name

        Raises:
            NotFoundError, ForbiddenError
            UnknownStateError: origin state does not exist.
            StateExistedError: target name already used.
        """
        if not (updating.name or "").strip():
            raise ValidationError("State name is required", {"name": "required"})

        events = []
        with unit_of_work():
            workflow = self._get_workflow(workflow_id)
            self._require_manager(actor, workflow, "update workflow state")

            origin = WorkflowState.query.filter_by(
                workflow_id=workflow.id, name=updating.origin_name,
            ).first()
            if not origin:
                raise UnknownStateError(updating.origin_name)
            order = updating.order if updating.order is not None else origin.order
            category = StateCategory(origin.category)

            if updating.name == updating.origin_name:
                origin.order = order
            else:
                if WorkflowState.query.filter_by(workflow_id=workflow.id, name=updating.name).first():
                    raise StateExistedError(updating.name)
                events = self._rename_state(workflow, origin, updating.name, order, actor)

        self.emitter.dispatch(events)
        logger.info("State updated workflow=%s %s -> %s", workflow_id,
                    updating.origin_name, updating.name,
                    extra={"workflow_id": workflow_id})
        return State(updating.name, category, order)

    def _rename_state(
        self,
        workflow: Workflow,
        origin: WorkflowState,
        new_name: str,
        order: int,
        actor: Actor,
    ) -> list:
        old_name = origin.name
        category = origin.category
        created = origin.create_time
        now = self.clock()

        # 2. definition row
        db.session.delete(origin)
        db.session.flush()
        db.session.add(WorkflowState(
            workflow_id=workflow.id, name=new_name, category=category,
            order=order, create_time=created,
        ))

        # 3. transitions, both sides
        WorkflowStateTransition.query.filter_by(
            workflow_id=workflow.id, from_state=old_name,
        ).update({"from_state": new_name}, synchronize_session=False)
        WorkflowStateTransition.query.filter_by(
            workflow_id=workflow.id, to_state=old_name,
        ).update({"to_state": new_name}, synchronize_session=False)

        # 4. works in the renamed state
        affected_works = (
            Work.query.filter_by(flow_id=workflow.id, state_name=old_name)
            .with_entities(Work.id, Work.identifier)
            .all()
        )
        Work.query.filter_by(flow_id=workflow.id, state_name=old_name).update(
            {"state_name": new_name, "state_category": category}, synchronize_session=False,
        )
        events = [
            self.emitter.create_event(
                source_type=SOURCE_TYPE_WORK,
                source_id=work_id,
                source_desc=identifier,
                category=EVENT_EXTENSION_UPDATED,
                actor=actor,
                timestamp=now,
                updated_properties=[UpdatedProperty("StateName", old_name, new_name)],
            )
            for work_id, identifier in affected_works
        ]

        # 5. ledger copies
        WorkProcessStep.query.filter_by(flow_id=workflow.id, state_name=old_name).update(
            {"state_name": new_name, "state_category": category}, synchronize_session=False,
        )
        WorkProcessStep.query.filter_by(flow_id=workflow.id, next_state_name=old_name).update(
            {"next_state_name": new_name, "next_state_category": category},
            synchronize_session=False,
        )
        return events

    def update_state_range_orders(
        self, workflow_id: str, orders: list[StateOrderUpdating], actor: Actor,
    ) -> None:
        """Re-rank states; each update must still see the caller's old rank.

        Raises:
            ConcurrentModificationError: some state's rank changed meanwhile;
                nothing of the batch is applied.
        """
        if not orders:
            return
        with unit_of_work():
            workflow = self._get_workflow(workflow_id)
            self._require_project_role(actor, workflow, "reorder states")
            for o in orders:
                conditional_update(
                    WorkflowState.query.filter_by(
                        workflow_id=workflow.id, name=o.state, order=o.old_order,
                    ),
                    {"order": o.new_order},
                    subject=f"state {o.state!r} order",
                )
        logger.info("State orders updated workflow=%s count=%d", workflow_id, len(orders))

    # ── Transitions ──────────────────────────────────────────────────────

    def create_workflow_state_transitions(
        self, workflow_id: str, transitions: list[Transition], actor: Actor,
    ) -> None:
        """Add edges (an existing edge between the same states is renamed).

        Raises:
            UnknownStateError: an endpoint is not a state of the workflow.
        """
        now = self.clock()
        with unit_of_work():
            workflow = self._get_workflow(workflow_id)
            self._require_manager(actor, workflow, "create transitions")

            names = {
                name for (name,) in
                WorkflowState.query.filter_by(workflow_id=workflow.id)
                .with_entities(WorkflowState.name).all()
            }
            for t in transitions:
                for endpoint in (t.from_state, t.to_state):
                    if endpoint not in names:
                        raise UnknownStateError(endpoint)
                existing = WorkflowStateTransition.query.filter_by(
                    workflow_id=workflow.id, from_state=t.from_state, to_state=t.to_state,
                ).first()
                if existing:
                    existing.name = t.name
                else:
                    db.session.add(WorkflowStateTransition(
                        workflow_id=workflow.id, name=t.name,
                        from_state=t.from_state, to_state=t.to_state, create_time=now,
                    ))
                db.session.flush()
        logger.info("Transitions created workflow=%s count=%d", workflow_id, len(transitions))

    def delete_workflow_state_transitions(
        self, workflow_id: str, transitions: list[Transition], actor: Actor,
    ) -> None:
        with unit_of_work():
            workflow = self._get_workflow(workflow_id)
            self._require_manager(actor, workflow, "delete transitions")
            for t in transitions:
                WorkflowStateTransition.query.filter_by(
                    workflow_id=workflow.id, from_state=t.from_state, to_state=t.to_state,
                ).delete(synchronize_session=False)
        logger.info("Transitions deleted workflow=%s count=%d", workflow_id, len(transitions))
