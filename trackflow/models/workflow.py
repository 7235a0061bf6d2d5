"""
Workflow Engine
Workflow definition models.

Models:
    - Workflow: project-scoped state machine header
    - WorkflowState: one named state (category + rank) of a workflow
    - WorkflowStateTransition: named directed edge between two state *names*
    - WorkflowPropertyDefinition: custom property declared on a workflow

Transitions and works reference states by name, not by surrogate key, so a
state rename is a manual cascade (see WorkflowService.update_workflow_state).
"""

from datetime import datetime, timezone

from trackflow.core.state_machine import State, StateCategory, StateMachine, Transition
from trackflow.models import db, iso, new_id

# States created together with a workflow are ranked base + position.
STATE_ORDER_BASE = 10000

PROPERTY_TYPES = {"text", "number"}


def _now():
    return datetime.now(timezone.utc)


class Workflow(db.Model):
    """Header row of a workflow; states and transitions hang off it."""

    __tablename__ = "workflows"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(100), nullable=False)
    project_id = db.Column(db.String(36), nullable=False, index=True)
    theme_color = db.Column(db.String(20), nullable=False, default="")
    theme_icon = db.Column(db.String(50), nullable=False, default="")
    create_time = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "project_id": self.project_id,
            "theme_color": self.theme_color,
            "theme_icon": self.theme_icon,
            "create_time": iso(self.create_time),
        }

    def __repr__(self):
        return f"<Workflow {self.id}: {self.name}>"


class WorkflowState(db.Model):
    """A state of a workflow. ``name`` is unique inside the workflow."""

    __tablename__ = "workflow_states"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "name", name="uq_workflow_state_name"),
        db.Index("idx_workflow_state_order", "workflow_id", "order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    category = db.Column(
        db.String(20), nullable=False,
        comment="backlog | in_process | done | rejected",
    )
    order = db.Column(db.Integer, nullable=False, default=0)
    create_time = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)

    def to_state(self) -> State:
        return State(self.name, StateCategory(self.category), self.order)

    def __repr__(self):
        return f"<WorkflowState {self.workflow_id}/{self.name} ({self.category})>"


class WorkflowStateTransition(db.Model):
    """Directed edge ``from_state`` → ``to_state`` of one workflow."""

    __tablename__ = "workflow_state_transitions"
    __table_args__ = (
        db.UniqueConstraint(
            "workflow_id", "from_state", "to_state", name="uq_workflow_transition_edge",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False, default="")
    from_state = db.Column(db.String(100), nullable=False)
    to_state = db.Column(db.String(100), nullable=False)
    create_time = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)

    def to_transition(self) -> Transition:
        return Transition(self.name, self.from_state, self.to_state)

    def __repr__(self):
        return f"<WorkflowStateTransition {self.from_state}->{self.to_state}>"


class WorkflowPropertyDefinition(db.Model):
    """Custom property a workflow's works may carry (value storage lives elsewhere)."""

    __tablename__ = "workflow_property_definitions"
    __table_args__ = (
        db.UniqueConstraint("workflow_id", "name", name="uq_workflow_property_name"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    workflow_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    type = db.Column(db.String(20), nullable=False, default="text", comment="text | number")
    title = db.Column(db.String(200), nullable=False, default="")

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "name": self.name,
            "type": self.type,
            "title": self.title,
        }


class WorkflowDetail:
    """A workflow header together with its assembled state machine."""

    def __init__(self, workflow: Workflow, state_machine: StateMachine):
        self.workflow = workflow
        self.state_machine = state_machine

    @property
    def id(self):
        return self.workflow.id

    @property
    def project_id(self):
        return self.workflow.project_id

    def find_state(self, name: str) -> State | None:
        return self.state_machine.find_state(name)

    def to_dict(self):
        result = self.workflow.to_dict()
        result["state_machine"] = self.state_machine.to_dict()
        return result
