"""
Workflow Engine
Transition Service — moves a work item between states of its workflow.

``create_work_state_transition`` is the only way a work changes state. It
runs in this order:

    1. Load the workflow; exactly one transition must match (from, to).
    2. Resolve both states and the target category.
    3. Transaction: load the work, check project role, reject if archived.
    4. Conditional update on (id, state_name == from) of the state fields
       and the process begin/end timestamps.
    5. Close the open ledger step (must match exactly one row).
    6. Open the next ledger step.
    7. Record a PROPERTY_UPDATED (StateName) event.
    8. Commit, then dispatch the event to handlers.

Two callers racing with the same stale ``from`` both pass step 1; the
second one matches zero rows in step 4 and rolls back completely.
"""

import logging
from typing import Callable

from trackflow.core.exceptions import (
    ArchiveStatusInvalidError,
    ForbiddenError,
    NotFoundError,
    TransitionNotAcceptableError,
    UnknownStateError,
    WorkProcessStepStateInvalidError,
)
from trackflow.core.state_machine import StateCategory
from trackflow.models import db, new_id, utcnow
from trackflow.models.event import EVENT_PROPERTY_UPDATED, SOURCE_TYPE_WORK
from trackflow.models.work import Work, WorkProcessStep
from trackflow.services.actor import Actor
from trackflow.services.event_service import EventEmitter, UpdatedProperty
from trackflow.services.helpers.unit_of_work import conditional_update, unit_of_work
from trackflow.services.workflow_service import WorkflowService

logger = logging.getLogger(__name__)


class TransitionService:
    def __init__(
        self,
        workflows: WorkflowService | None = None,
        emitter: EventEmitter | None = None,
        id_factory: Callable[[], str] = new_id,
        clock: Callable = utcnow,
    ):
        self.emitter = emitter or EventEmitter()
        self.workflows = workflows or WorkflowService(emitter=self.emitter)
        self.id_factory = id_factory
        self.clock = clock

    def create_work_state_transition(
        self,
        flow_id: str,
        work_id: str,
        from_state: str,
        to_state: str,
        actor: Actor,
    ) -> WorkProcessStep:
        """Move ``work_id`` from ``from_state`` to ``to_state``; returns the new open step.

        Raises:
            NotFoundError: workflow or work does not exist.
            ForbiddenError: actor has no role in the work's project.
            TransitionNotAcceptableError: zero or several edges match.
            ArchiveStatusInvalidError: the work is archived.
            ConcurrentModificationError: the work is no longer in ``from_state``.
            WorkProcessStepStateInvalidError: the ledger has no single open
                step for ``from_state``.
        """
        workflow = self.workflows.detail_workflow(flow_id, actor)
        matched = workflow.state_machine.available_transitions(from_state, to_state)
        if len(matched) != 1:
            raise TransitionNotAcceptableError(from_state, to_state, len(matched))

        source = workflow.find_state(from_state)
        if source is None:
            raise UnknownStateError(from_state)
        target = workflow.find_state(to_state)
        if target is None:
            raise UnknownStateError(to_state)
        target_category = StateCategory(target.category)

        now = self.clock()
        with unit_of_work():
            work = db.session.get(Work, work_id)
            if not work:
                raise NotFoundError(resource="Work", resource_id=work_id)
            if not actor.has_role_suffix(f"_{work.project_id}"):
                raise ForbiddenError("transition work", f"work {work.identifier}")
            if work.is_archived:
                raise ArchiveStatusInvalidError(work.id)

            values = {
                "state_name": target.name,
                "state_category": target_category.value,
                "state_begin_time": now,
            }
            if work.process_begin_time is None and target_category != StateCategory.BACKLOG:
                values["process_begin_time"] = now
            if target_category == StateCategory.DONE:
                if work.process_end_time is None:
                    values["process_end_time"] = now
            elif work.process_end_time is not None:
                values["process_end_time"] = None

            conditional_update(
                Work.query.filter_by(id=work.id, state_name=source.name),
                values,
                subject=f"work {work.identifier} state",
            )

            closed = WorkProcessStep.query.filter(
                WorkProcessStep.work_id == work.id,
                WorkProcessStep.flow_id == workflow.id,
                WorkProcessStep.state_name == source.name,
                WorkProcessStep.end_time.is_(None),
            ).update(
                {
                    "end_time": now,
                    "next_state_name": target.name,
                    "next_state_category": target_category.value,
                },
                synchronize_session=False,
            )
            if closed != 1:
                raise WorkProcessStepStateInvalidError(work.id, closed)

            step = WorkProcessStep(
                id=self.id_factory(),
                work_id=work.id,
                flow_id=work.flow_id,
                state_name=target.name,
                state_category=target_category.value,
                creator_id=actor.id,
                creator_name=actor.name,
                begin_time=now,
            )
            db.session.add(step)

            event = self.emitter.create_event(
                source_type=SOURCE_TYPE_WORK,
                source_id=work.id,
                source_desc=work.identifier,
                category=EVENT_PROPERTY_UPDATED,
                actor=actor,
                timestamp=now,
                updated_properties=[UpdatedProperty("StateName", source.name, target.name)],
            )

        self.emitter.dispatch([event])
        logger.info(
            "Work %s transitioned %s -> %s", work_id, source.name, target.name,
            extra={"work_id": work_id, "workflow_id": flow_id},
        )
        return step
