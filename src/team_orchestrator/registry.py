"""Read-only role and team template registries."""

from collections.abc import Iterable, Iterator
from pathlib import Path
from types import MappingProxyType

from .config import load_roles, load_team_templates
from .models import Role, TeamTemplate


class RoleNotFoundError(ValueError):
    """Raised when a role id is not in the role registry."""

    def __init__(self, role_id: str):
        super().__init__(f"Role {role_id} not found")
        self.role_id = role_id


class TemplateNotFoundError(ValueError):
    """Raised when a team template id is not in the template registry."""

    def __init__(self, template_id: str):
        super().__init__(f"Team template {template_id} not found")
        self.template_id = template_id


class RoleRegistry:
    """Immutable table of roles keyed by id."""

    def __init__(self, roles: Iterable[Role]):
        table: dict[str, Role] = {}
        for role in roles:
            if role.id in table:
                raise ValueError(f"Duplicate role id '{role.id}'")
            table[role.id] = role
        self._roles = MappingProxyType(table)

    def lookup(self, role_id: str) -> Role:
        try:
            return self._roles[role_id]
        except KeyError:
            raise RoleNotFoundError(role_id) from None

    def list_all(self) -> list[Role]:
        return list(self._roles.values())

    def __contains__(self, role_id: object) -> bool:
        return role_id in self._roles

    def __len__(self) -> int:
        return len(self._roles)

    def __iter__(self) -> Iterator[Role]:
        return iter(self._roles.values())


class TeamTemplateRegistry:
    """Immutable table of team templates keyed by id."""

    def __init__(self, templates: Iterable[TeamTemplate]):
        table: dict[str, TeamTemplate] = {}
        for template in templates:
            if template.id in table:
                raise ValueError(f"Duplicate team template id '{template.id}'")
            table[template.id] = template
        self._templates = MappingProxyType(table)

    def lookup(self, template_id: str) -> TeamTemplate:
        try:
            return self._templates[template_id]
        except KeyError:
            raise TemplateNotFoundError(template_id) from None

    def list_all(self) -> list[TeamTemplate]:
        return list(self._templates.values())

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    def __len__(self) -> int:
        return len(self._templates)

    def __iter__(self) -> Iterator[TeamTemplate]:
        return iter(self._templates.values())


def load_registries(
    roles_file: str | Path | None = None, teams_file: str | Path | None = None
) -> tuple[RoleRegistry, TeamTemplateRegistry]:
    """Load both registries, validating template members against the roles."""
    roles = RoleRegistry(load_roles(roles_file))
    templates = TeamTemplateRegistry(
        load_team_templates(teams_file, known_roles={role.id for role in roles})
    )
    return roles, templates
