"""
Acting identity and its permission predicates.

Sessions are built by the (external) authentication layer; the engine only
asks them boolean questions. Roles are plain strings of the form
``<role>_<project_id>`` (e.g. ``manager_9f1c…``), system permissions are
bare names (e.g. ``system:view``).

Usage:
    from trackflow.services.actor import Actor

    actor = Actor(id="u-1", name="alice", roles=frozenset({"manager_p1"}))
    actor.has_role_suffix("_p1")        # any role on project p1
    actor.has_project_view_perm("p1")
"""

from dataclasses import dataclass, field

PROJECT_ROLE_MANAGER = "manager"
PROJECT_ROLE_MEMBER = "member"

SYSTEM_VIEW_PERMISSION = "system:view"
SYSTEM_ADMIN_PERMISSION = "system:admin"


def project_role(role: str, project_id: str) -> str:
    return f"{role}_{project_id}"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller: identity plus granted roles and permissions."""

    id: str
    name: str
    roles: frozenset[str] = field(default_factory=frozenset)
    permissions: frozenset[str] = field(default_factory=frozenset)

    def has_role(self, role: str) -> bool:
        return role in self.roles or role in self.permissions

    def has_role_suffix(self, suffix: str) -> bool:
        """True if any granted role ends with ``suffix`` (``"_<project>"`` = any project role)."""
        return any(r.endswith(suffix) for r in self.roles)

    def has_project_role(self, role: str, project_id: str) -> bool:
        return project_role(role, project_id) in self.roles

    def has_any_project_role(self, project_id: str) -> bool:
        return self.has_role_suffix(f"_{project_id}")

    def has_project_view_perm(self, project_id: str) -> bool:
        return SYSTEM_VIEW_PERMISSION in self.permissions or self.has_any_project_role(project_id)

    def visible_projects(self) -> set[str]:
        """Project ids derived from role names (system viewers are not enumerated)."""
        projects = set()
        for role in self.roles:
            _, sep, project_id = role.partition("_")
            if sep and project_id:
                projects.add(project_id)
        return projects


# Internal identity used by background jobs (index resync).
INDEX_ROBOT = Actor(
    id="index-robot",
    name="index-robot",
    permissions=frozenset({SYSTEM_VIEW_PERMISSION}),
)
