"""
Workflow Engine
Work Service — lifecycle of work items outside of state transitions.

Operations:
    - create_work: identifier allocation, initial state, opening ledger step
    - detail_work: lookup by id or human identifier
    - update_work: field changes (rejected once archived)
    - archive_works: idempotent archival from done / rejected
    - delete_work: removes the work together with its ledger
    - update_state_range_orders: conditional re-rank inside a state lane
    - load_works: id-ordered paging for the index resync

Each public mutation runs in one ``unit_of_work()`` together with the
EventRecords describing it; events are dispatched after commit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import func, or_

from trackflow.core.exceptions import (
    ArchiveStatusInvalidError,
    ForbiddenError,
    NotFoundError,
    StateCategoryInvalidError,
    StateInvalidError,
    UnknownStateError,
    ValidationError,
)
from trackflow.core.state_machine import TERMINAL_CATEGORIES, State, StateCategory
from trackflow.models import db, iso, new_id, utcnow
from trackflow.models.event import (
    EVENT_CREATED,
    EVENT_DELETED,
    EVENT_PROPERTY_UPDATED,
    SOURCE_TYPE_WORK,
)
from trackflow.models.work import Work, WorkProcessStep
from trackflow.models.workflow import Workflow
from trackflow.services.actor import Actor
from trackflow.services.event_service import EventEmitter, UpdatedProperty
from trackflow.services.helpers.unit_of_work import conditional_update, unit_of_work
from trackflow.services.identifier_service import IdentifierAllocator
from trackflow.services.workflow_service import WorkflowService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkCreation:
    name: str
    project_id: str
    flow_id: str
    initial_state_name: str
    # < 0 puts the work on top of its lane
    priority_level: int = 0


@dataclass(frozen=True)
class WorkUpdating:
    name: str


@dataclass(frozen=True)
class WorkOrderUpdating:
    id: str
    old_order: int
    new_order: int


@dataclass
class WorkDetail:
    """A work together with its resolved current state and workflow header."""

    work: Work
    state: State
    workflow: Workflow

    def to_dict(self):
        result = self.work.to_dict()
        result["state"] = self.state.to_dict()
        result["type"] = self.workflow.to_dict()
        return result


def epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class WorkService:
    def __init__(
        self,
        workflows: WorkflowService | None = None,
        emitter: EventEmitter | None = None,
        identifiers: IdentifierAllocator | None = None,
        id_factory: Callable[[], str] = new_id,
        clock: Callable = utcnow,
    ):
        self.emitter = emitter or EventEmitter()
        self.workflows = workflows or WorkflowService(emitter=self.emitter)
        self.identifiers = identifiers or IdentifierAllocator()
        self.id_factory = id_factory
        self.clock = clock

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _get_work_checked(work_id: str, actor: Actor, action: str) -> Work:
        work = db.session.get(Work, work_id)
        if not work:
            raise NotFoundError(resource="Work", resource_id=work_id)
        if not actor.has_any_project_role(work.project_id):
            raise ForbiddenError(action, f"work {work.identifier}")
        return work

    def _event(self, work: Work, category: str, actor: Actor, now, properties=None):
        return self.emitter.create_event(
            source_type=SOURCE_TYPE_WORK,
            source_id=work.id,
            source_desc=work.identifier,
            category=category,
            actor=actor,
            timestamp=now,
            updated_properties=properties,
        )

    # ── Create / read ────────────────────────────────────────────────────

    def create_work(self, creation: WorkCreation, actor: Actor) -> WorkDetail:
        """Create a work in ``initial_state_name`` and open its first ledger step.

        Raises:
            ForbiddenError: actor has no role in the project.
            NotFoundError: workflow or project does not exist.
            UnknownStateError: initial state is not part of the workflow.
            ConcurrentModificationError: identifier counter moved underneath us.
        """
        if not actor.has_any_project_role(creation.project_id):
            raise ForbiddenError("create work", f"project {creation.project_id}")
        if not (creation.name or "").strip():
            raise ValidationError("Work name is required", {"name": "required"})

        with unit_of_work():
            detail = self.workflows.detail_workflow(creation.flow_id, actor)
            initial = detail.find_state(creation.initial_state_name)
            if initial is None:
                raise UnknownStateError(creation.initial_state_name)

            now = self.clock()
            order_in_state = epoch_millis(now)
            if creation.priority_level < 0:
                top = (
                    db.session.query(func.min(Work.order_in_state))
                    .filter(Work.project_id == creation.project_id, Work.state_name == initial.name)
                    .scalar()
                )
                if top is not None:
                    order_in_state = top - 1

            category = StateCategory(initial.category)
            work = Work(
                id=self.id_factory(),
                identifier=self.identifiers.next_work_identifier(creation.project_id),
                project_id=creation.project_id,
                flow_id=detail.id,
                name=creation.name.strip(),
                create_time=now,
                order_in_state=order_in_state,
                state_name=initial.name,
                state_category=category.value,
                state_begin_time=now,
                process_begin_time=None if category == StateCategory.BACKLOG else now,
                process_end_time=now if category == StateCategory.DONE else None,
            )
            db.session.add(work)
            db.session.add(WorkProcessStep(
                id=self.id_factory(),
                work_id=work.id,
                flow_id=work.flow_id,
                state_name=initial.name,
                state_category=category.value,
                creator_id=actor.id,
                creator_name=actor.name,
                begin_time=now,
            ))
            db.session.flush()
            event = self._event(work, EVENT_CREATED, actor, now)

        self.emitter.dispatch([event])
        logger.info("Work created id=%s identifier=%s flow=%s state=%s",
                    work.id, work.identifier, work.flow_id, work.state_name,
                    extra={"work_id": work.id, "workflow_id": work.flow_id, "project_id": work.project_id})
        return WorkDetail(work, initial, detail.workflow)

    def detail_work(self, id_or_identifier: str, actor: Actor) -> WorkDetail:
        """
        Raises:
            NotFoundError, ForbiddenError
            StateInvalidError: the work's state is missing from its workflow.
        """
        work = Work.query.filter(
            or_(Work.id == id_or_identifier, Work.identifier == id_or_identifier),
        ).first()
        if not work:
            raise NotFoundError(resource="Work", resource_id=id_or_identifier)
        if not actor.has_project_view_perm(work.project_id):
            raise ForbiddenError("view work", f"work {work.identifier}")

        detail = self.workflows.detail_workflow(work.flow_id, actor)
        state = detail.find_state(work.state_name)
        if state is None:
            raise StateInvalidError(
                f"state {work.state_name!r} of work {work.identifier} is not in its workflow"
            )
        return WorkDetail(work, state, detail.workflow)

    def load_works(self, page: int, size: int) -> list[Work]:
        page = max(page, 1)
        return (
            Work.query.order_by(Work.id.asc())
            .offset((page - 1) * size)
            .limit(size)
            .all()
        )

    # ── Mutations ────────────────────────────────────────────────────────

    def update_work(self, work_id: str, updating: WorkUpdating, actor: Actor) -> Work:
        """Apply ``updating``; emits one PROPERTY_UPDATED only when something changed.

        Raises:
            ArchiveStatusInvalidError: the work is archived.
        """
        if not (updating.name or "").strip():
            raise ValidationError("Work name is required", {"name": "required"})

        event = None
        with unit_of_work():
            work = self._get_work_checked(work_id, actor, "update work")
            if work.is_archived:
                raise ArchiveStatusInvalidError(work.id)

            changes = []
            new_name = updating.name.strip()
            if new_name != work.name:
                changes.append(UpdatedProperty("Name", work.name, new_name))
                work.name = new_name

            if changes:
                db.session.flush()
                event = self._event(work, EVENT_PROPERTY_UPDATED, actor, self.clock(), changes)

        self.emitter.dispatch([event])
        logger.info("Work updated id=%s changed=%d", work_id, 1 if event else 0,
                    extra={"work_id": work_id})
        return work

    def archive_works(self, work_ids: list[str], actor: Actor) -> int:
        """Archive done/rejected works; already-archived ones are skipped.

        Returns the number of works archived by this call.

        Raises:
            StateCategoryInvalidError: some work is not in a terminal category
                (the whole batch is rolled back).
        """
        events = []
        with unit_of_work():
            now = self.clock()
            for work_id in work_ids:
                work = self._get_work_checked(work_id, actor, "archive work")
                if StateCategory(work.state_category) not in TERMINAL_CATEGORIES:
                    raise StateCategoryInvalidError(work.state_category)
                if work.is_archived:
                    continue
                work.archive_time = now
                db.session.flush()
                events.append(self._event(
                    work, EVENT_PROPERTY_UPDATED, actor, now,
                    [UpdatedProperty("ArchiveTime", None, iso(now))],
                ))

        self.emitter.dispatch(events)
        logger.info("Works archived count=%d of %d", len(events), len(work_ids))
        return len(events)

    def delete_work(self, work_id: str, actor: Actor) -> None:
        with unit_of_work():
            work = self._get_work_checked(work_id, actor, "delete work")
            event = self._event(work, EVENT_DELETED, actor, self.clock())
            WorkProcessStep.query.filter_by(work_id=work.id).delete(synchronize_session=False)
            db.session.delete(work)

        self.emitter.dispatch([event])
        logger.info("Work deleted id=%s", work_id, extra={"work_id": work_id})

    def update_state_range_orders(self, orders: list[WorkOrderUpdating], actor: Actor) -> None:
        """Re-rank works; each move must still see the caller's old rank.

        Raises:
            ConcurrentModificationError: some work's rank changed meanwhile;
                nothing of the batch is applied.
        """
        if not orders:
            return

        events = []
        with unit_of_work():
            now = self.clock()
            for o in orders:
                work = self._get_work_checked(o.id, actor, "reorder work")
                conditional_update(
                    Work.query.filter_by(id=o.id, order_in_state=o.old_order),
                    {"order_in_state": o.new_order},
                    subject=f"work {work.identifier} order",
                )
                events.append(self._event(
                    work, EVENT_PROPERTY_UPDATED, actor, now,
                    [UpdatedProperty("OrderInState", str(o.old_order), str(o.new_order))],
                ))

        self.emitter.dispatch(events)
        logger.info("Work orders updated count=%d", len(orders))
