"""
Custom property definitions declared on a workflow.

A definition only describes a property (name, type, title); values live
with the works in an external store. Deleting a definition runs the
delete checks supplied at construction time, inside the delete
transaction, so another component can veto the removal (e.g. while some
view still filters on the property).
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from trackflow.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from trackflow.models import db, new_id
from trackflow.models.workflow import PROPERTY_TYPES, Workflow, WorkflowPropertyDefinition
from trackflow.services.actor import PROJECT_ROLE_MANAGER, Actor
from trackflow.services.helpers.unit_of_work import unit_of_work

logger = logging.getLogger(__name__)

# check(definition) raises to veto the delete
DeleteCheck = Callable[[WorkflowPropertyDefinition], None]


@dataclass(frozen=True)
class PropertyDefinition:
    name: str
    type: str = "text"
    title: str = ""


class PropertyDefinitionService:
    def __init__(
        self,
        delete_checks: Iterable[DeleteCheck] = (),
        id_factory: Callable[[], str] = new_id,
    ):
        self.delete_checks = list(delete_checks)
        self.id_factory = id_factory

    @staticmethod
    def _get_workflow(workflow_id: str) -> Workflow:
        workflow = db.session.get(Workflow, workflow_id)
        if not workflow:
            raise NotFoundError(resource="Workflow", resource_id=workflow_id)
        return workflow

    def create_property_definition(
        self, workflow_id: str, definition: PropertyDefinition, actor: Actor,
    ) -> WorkflowPropertyDefinition:
        """
        Raises:
            ValidationError: empty name or unsupported type.
            ConflictError: name already declared on this workflow.
        """
        if not (definition.name or "").strip():
            raise ValidationError("Property name is required", {"name": "required"})
        if definition.type not in PROPERTY_TYPES:
            raise ValidationError(
                f"type must be one of: {', '.join(sorted(PROPERTY_TYPES))}",
                {"type": definition.type},
            )

        with unit_of_work():
            workflow = self._get_workflow(workflow_id)
            if not actor.has_project_role(PROJECT_ROLE_MANAGER, workflow.project_id):
                raise ForbiddenError("create property definition", f"workflow {workflow_id}")
            if WorkflowPropertyDefinition.query.filter_by(
                workflow_id=workflow_id, name=definition.name,
            ).first():
                raise ConflictError("WorkflowPropertyDefinition", "name", definition.name)

            row = WorkflowPropertyDefinition(
                id=self.id_factory(),
                workflow_id=workflow_id,
                name=definition.name,
                type=definition.type,
                title=definition.title or definition.name,
            )
            db.session.add(row)

        logger.info("Property definition created workflow=%s name=%s", workflow_id, row.name)
        return row

    def query_property_definitions(
        self, workflow_id: str, actor: Actor,
    ) -> list[WorkflowPropertyDefinition]:
        workflow = self._get_workflow(workflow_id)
        if not actor.has_project_view_perm(workflow.project_id):
            raise ForbiddenError("view property definitions", f"workflow {workflow_id}")
        return (
            WorkflowPropertyDefinition.query
            .filter_by(workflow_id=workflow_id)
            .order_by(WorkflowPropertyDefinition.name.asc())
            .all()
        )

    def delete_property_definition(self, definition_id: str, actor: Actor) -> None:
        """Delete a definition; an unknown id is a no-op."""
        with unit_of_work():
            row = db.session.get(WorkflowPropertyDefinition, definition_id)
            if row is None:
                return
            workflow = self._get_workflow(row.workflow_id)
            if not actor.has_project_role(PROJECT_ROLE_MANAGER, workflow.project_id):
                raise ForbiddenError("delete property definition", f"workflow {workflow.id}")
            for check in self.delete_checks:
                check(row)
            db.session.delete(row)
        logger.info("Property definition deleted id=%s", definition_id)
