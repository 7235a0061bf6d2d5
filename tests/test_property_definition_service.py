"""
Tests for workflow property definitions and their delete checks.
"""

import pytest

from trackflow.core.exceptions import ConflictError, ForbiddenError, ValidationError
from trackflow.models import db
from trackflow.models.workflow import WorkflowPropertyDefinition
from trackflow.services.property_definition_service import (
    PropertyDefinition,
    PropertyDefinitionService,
)


class TestCreateAndQuery:
    def test_manager_creates(self, generic_workflow, manager, member):
        service = PropertyDefinitionService()
        row = service.create_property_definition(
            generic_workflow.id, PropertyDefinition("points", "number"), manager,
        )
        assert row.title == "points"

        listed = service.query_property_definitions(generic_workflow.id, member)
        assert [(d.name, d.type) for d in listed] == [("points", "number")]

    def test_duplicate_name(self, generic_workflow, manager):
        service = PropertyDefinitionService()
        service.create_property_definition(generic_workflow.id, PropertyDefinition("points"), manager)
        with pytest.raises(ConflictError):
            service.create_property_definition(generic_workflow.id, PropertyDefinition("points"), manager)

    def test_unsupported_type(self, generic_workflow, manager):
        with pytest.raises(ValidationError):
            PropertyDefinitionService().create_property_definition(
                generic_workflow.id, PropertyDefinition("due", "date"), manager,
            )

    def test_member_cannot_create(self, generic_workflow, member):
        with pytest.raises(ForbiddenError):
            PropertyDefinitionService().create_property_definition(
                generic_workflow.id, PropertyDefinition("points"), member,
            )

    def test_outsider_cannot_query(self, generic_workflow, outsider):
        with pytest.raises(ForbiddenError):
            PropertyDefinitionService().query_property_definitions(generic_workflow.id, outsider)


class TestDelete:
    def test_delete_runs_checks(self, generic_workflow, manager):
        checked = []
        service = PropertyDefinitionService(delete_checks=[lambda d: checked.append(d.name)])
        row = service.create_property_definition(generic_workflow.id, PropertyDefinition("points"), manager)

        service.delete_property_definition(row.id, manager)

        assert checked == ["points"]
        assert WorkflowPropertyDefinition.query.count() == 0

    def test_vetoing_check_keeps_definition(self, generic_workflow, manager):
        def in_use(definition):
            raise ConflictError("WorkflowPropertyDefinition", "name", definition.name,
                                message="property is used by a saved view")

        service = PropertyDefinitionService(delete_checks=[in_use])
        row = service.create_property_definition(generic_workflow.id, PropertyDefinition("points"), manager)
        row_id = row.id

        with pytest.raises(ConflictError):
            service.delete_property_definition(row_id, manager)
        assert db.session.get(WorkflowPropertyDefinition, row_id) is not None

    def test_missing_is_noop(self, manager):
        PropertyDefinitionService().delete_property_definition("missing", manager)

    def test_member_cannot_delete(self, generic_workflow, manager, member):
        service = PropertyDefinitionService()
        row = service.create_property_definition(generic_workflow.id, PropertyDefinition("points"), manager)
        with pytest.raises(ForbiddenError):
            service.delete_property_definition(row.id, member)
