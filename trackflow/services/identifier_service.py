"""
Work identifier allocation.

Human identifiers are ``{PROJECT.identifier}-{n}`` with ``n`` taken from the
project's ``next_work_id`` counter. The counter is consumed by a
conditional update on its expected current value, so two writers racing
for the same number cannot both succeed.
"""

import logging

from trackflow.core.exceptions import NotFoundError
from trackflow.models import db
from trackflow.models.project import Project
from trackflow.services.helpers.unit_of_work import conditional_update

logger = logging.getLogger(__name__)


class IdentifierAllocator:
    """Hands out project-scoped work identifiers inside the caller's transaction."""

    def next_work_identifier(self, project_id: str) -> str:
        """Consume the project's counter and return the identifier it stood for.

        Raises:
            NotFoundError: project does not exist.
            ConcurrentModificationError: another writer advanced the counter first.
        """
        project = db.session.get(Project, project_id)
        if not project:
            raise NotFoundError(resource="Project", resource_id=project_id)

        current = project.next_work_id
        conditional_update(
            Project.query.filter_by(id=project_id, next_work_id=current),
            {"next_work_id": current + 1},
            subject=f"project {project_id} work counter",
        )
        # the bulk update bypassed the identity map
        db.session.expire(project, ["next_work_id"])
        identifier = f"{project.identifier}-{current}"
        logger.debug("Allocated work identifier %s", identifier)
        return identifier
