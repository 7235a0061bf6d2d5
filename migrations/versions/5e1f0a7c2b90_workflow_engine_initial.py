"""workflow_engine_initial

Creates the workflow engine tables:
  - projects                       — work identifier namespace + counter
  - workflows                      — state machine header per project
  - workflow_states                — named states (category + rank)
  - workflow_state_transitions     — directed edges between state names
  - workflow_property_definitions  — custom properties of a workflow
  - works                          — work items
  - work_process_steps             — per-state ledger of each work
  - events                         — append-only change records

Tables created conditionally (IF NOT EXISTS semantics) so the revision can
run against databases that already received them via db.create_all().

Revision ID: 5e1f0a7c2b90
Revises:
Create Date: 2026-10-18 09:12:40.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5e1f0a7c2b90"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Projects ─────────────────────────────────────────────────────────
    if "projects" not in existing:
        op.create_table(
            "projects",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("identifier", sa.String(length=20), nullable=False),
            sa.Column("next_work_id", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("identifier"),
        )

    # ── Workflow definition ──────────────────────────────────────────────
    if "workflows" not in existing:
        op.create_table(
            "workflows",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("theme_color", sa.String(length=20), nullable=False, server_default=""),
            sa.Column("theme_icon", sa.String(length=50), nullable=False, server_default=""),
            sa.Column("create_time", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflows_project_id", "workflows", ["project_id"])

    if "workflow_states" not in existing:
        op.create_table(
            "workflow_states",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("category", sa.String(length=20), nullable=False),
            sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("create_time", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workflow_id", "name", name="uq_workflow_state_name"),
        )
        op.create_index("ix_workflow_states_workflow_id", "workflow_states", ["workflow_id"])
        op.create_index("idx_workflow_state_order", "workflow_states", ["workflow_id", "order"])

    if "workflow_state_transitions" not in existing:
        op.create_table(
            "workflow_state_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False, server_default=""),
            sa.Column("from_state", sa.String(length=100), nullable=False),
            sa.Column("to_state", sa.String(length=100), nullable=False),
            sa.Column("create_time", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "workflow_id", "from_state", "to_state", name="uq_workflow_transition_edge",
            ),
        )
        op.create_index(
            "ix_workflow_state_transitions_workflow_id",
            "workflow_state_transitions", ["workflow_id"],
        )

    if "workflow_property_definitions" not in existing:
        op.create_table(
            "workflow_property_definitions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("workflow_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("type", sa.String(length=20), nullable=False, server_default="text"),
            sa.Column("title", sa.String(length=200), nullable=False, server_default=""),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workflow_id", "name", name="uq_workflow_property_name"),
        )
        op.create_index(
            "ix_workflow_property_definitions_workflow_id",
            "workflow_property_definitions", ["workflow_id"],
        )

    # ── Works ────────────────────────────────────────────────────────────
    if "works" not in existing:
        op.create_table(
            "works",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("identifier", sa.String(length=40), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("flow_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("create_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("order_in_state", sa.BigInteger(), nullable=False),
            sa.Column("state_name", sa.String(length=100), nullable=False),
            sa.Column("state_category", sa.String(length=20), nullable=False),
            sa.Column("state_begin_time", sa.DateTime(timezone=True), nullable=True),
            sa.Column("process_begin_time", sa.DateTime(timezone=True), nullable=True),
            sa.Column("process_end_time", sa.DateTime(timezone=True), nullable=True),
            sa.Column("archive_time", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("identifier"),
        )
        op.create_index("ix_works_project_id", "works", ["project_id"])
        op.create_index("ix_works_flow_id", "works", ["flow_id"])
        op.create_index("idx_work_lane", "works", ["project_id", "state_name", "order_in_state"])
        op.create_index("idx_work_flow_state", "works", ["flow_id", "state_name"])

    if "work_process_steps" not in existing:
        op.create_table(
            "work_process_steps",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("work_id", sa.String(length=36), nullable=False),
            sa.Column("flow_id", sa.String(length=36), nullable=False),
            sa.Column("state_name", sa.String(length=100), nullable=False),
            sa.Column("state_category", sa.String(length=20), nullable=False),
            sa.Column("creator_id", sa.String(length=36), nullable=True),
            sa.Column("creator_name", sa.String(length=150), nullable=False, server_default=""),
            sa.Column("begin_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
            sa.Column("next_state_name", sa.String(length=100), nullable=True),
            sa.Column("next_state_category", sa.String(length=20), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_process_step_work", "work_process_steps", ["work_id", "end_time"])
        op.create_index(
            "idx_process_step_flow_state", "work_process_steps", ["flow_id", "state_name"],
        )

    # ── Events ───────────────────────────────────────────────────────────
    if "events" not in existing:
        op.create_table(
            "events",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("source_type", sa.String(length=30), nullable=False),
            sa.Column("source_id", sa.String(length=36), nullable=False),
            sa.Column("source_desc", sa.String(length=200), nullable=False, server_default=""),
            sa.Column("event_category", sa.String(length=30), nullable=False),
            sa.Column("updated_properties", sa.JSON(), nullable=False),
            sa.Column("updated_relations", sa.JSON(), nullable=False),
            sa.Column("creator_id", sa.String(length=36), nullable=True),
            sa.Column("creator_name", sa.String(length=150), nullable=False, server_default=""),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.Column("synced", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_event_source", "events", ["source_type", "source_id"])
        op.create_index("idx_event_ts", "events", ["timestamp"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    for table in (
        "events",
        "work_process_steps",
        "works",
        "workflow_property_definitions",
        "workflow_state_transitions",
        "workflow_states",
        "workflows",
        "projects",
    ):
        if table in existing:
            op.drop_table(table)
