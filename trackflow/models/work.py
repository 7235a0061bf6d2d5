"""
Workflow Engine
Work item models.

Models:
    - Work: one item moving through a workflow's states
    - WorkProcessStep: ledger entry for one contiguous stay in one state

Ledger invariant: exactly one WorkProcessStep per work has ``end_time`` NULL
(the open step). It is closed and a new one opened on every transition.
"""

from datetime import datetime, timezone

from trackflow.models import db, iso, new_id


class Work(db.Model):
    """Work item. ``state_category`` is a denormalized copy of the state's category."""

    __tablename__ = "works"
    __table_args__ = (
        db.Index("idx_work_lane", "project_id", "state_name", "order_in_state"),
        db.Index("idx_work_flow_state", "flow_id", "state_name"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    identifier = db.Column(
        db.String(40), nullable=False, unique=True,
        comment="Project-scoped human identifier, e.g. DEMO-12",
    )
    project_id = db.Column(db.String(36), nullable=False, index=True)
    flow_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    create_time = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    order_in_state = db.Column(
        db.BigInteger, nullable=False,
        comment="Rank inside the (project, state) lane; lower = higher priority",
    )
    state_name = db.Column(db.String(100), nullable=False)
    state_category = db.Column(db.String(20), nullable=False)
    state_begin_time = db.Column(db.DateTime(timezone=True), nullable=True)

    process_begin_time = db.Column(
        db.DateTime(timezone=True), nullable=True,
        comment="First time the work left the backlog category",
    )
    process_end_time = db.Column(
        db.DateTime(timezone=True), nullable=True,
        comment="Set on entering done, cleared on leaving it",
    )
    archive_time = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_archived(self) -> bool:
        return self.archive_time is not None

    def to_dict(self):
        return {
            "id": self.id,
            "identifier": self.identifier,
            "project_id": self.project_id,
            "flow_id": self.flow_id,
            "name": self.name,
            "create_time": iso(self.create_time),
            "order_in_state": self.order_in_state,
            "state_name": self.state_name,
            "state_category": self.state_category,
            "state_begin_time": iso(self.state_begin_time),
            "process_begin_time": iso(self.process_begin_time),
            "process_end_time": iso(self.process_end_time),
            "archive_time": iso(self.archive_time),
        }

    def __repr__(self):
        return f"<Work {self.identifier}: {self.state_name}>"


class WorkProcessStep(db.Model):
    """One interval a work spent in one state. Open while ``end_time`` is NULL."""

    __tablename__ = "work_process_steps"
    __table_args__ = (
        db.Index("idx_process_step_work", "work_id", "end_time"),
        db.Index("idx_process_step_flow_state", "flow_id", "state_name"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    work_id = db.Column(db.String(36), nullable=False)
    flow_id = db.Column(db.String(36), nullable=False)
    state_name = db.Column(db.String(100), nullable=False)
    state_category = db.Column(db.String(20), nullable=False)

    creator_id = db.Column(db.String(36), nullable=True)
    creator_name = db.Column(db.String(150), nullable=False, default="")
    begin_time = db.Column(db.DateTime(timezone=True), nullable=False)
    end_time = db.Column(db.DateTime(timezone=True), nullable=True)

    next_state_name = db.Column(db.String(100), nullable=True)
    next_state_category = db.Column(db.String(20), nullable=True)

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def to_dict(self):
        return {
            "work_id": self.work_id,
            "flow_id": self.flow_id,
            "state_name": self.state_name,
            "state_category": self.state_category,
            "creator_id": self.creator_id,
            "creator_name": self.creator_name,
            "begin_time": iso(self.begin_time),
            "end_time": iso(self.end_time),
            "next_state_name": self.next_state_name,
            "next_state_category": self.next_state_category,
        }

    def __repr__(self):
        return f"<WorkProcessStep {self.work_id}: {self.state_name}>"
