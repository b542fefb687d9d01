"""Role and team template configuration for the team orchestrator."""

import logging
from functools import lru_cache
from pathlib import Path

import yaml

from .models import Role, TeamTemplate

logger = logging.getLogger(__name__)

RESOURCES_DIR = Path(__file__).parent / "resources"
DEFAULT_ROLES_FILE = RESOURCES_DIR / "roles.yaml"
DEFAULT_TEAMS_FILE = RESOURCES_DIR / "teams.yaml"


@lru_cache(maxsize=8)
def _load_yaml(config_path: Path) -> dict:
    """Load a YAML configuration file.

    Returns:
        Parsed configuration dict

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If YAML parsing fails or the top level is not a mapping
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse configuration YAML {config_path}: {e}") from e

    if not isinstance(config, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")

    logger.debug(f"Loaded configuration from {config_path}")
    return config


def _read_prompt(role_id: str, prompts_dir: Path) -> str:
    prompt_file = prompts_dir / f"{role_id}.txt"
    if not prompt_file.exists():
        raise ValueError(f"Role '{role_id}' has no prompt and {prompt_file} does not exist")
    return prompt_file.read_text(encoding="utf-8").strip()


def load_roles(roles_file: str | Path | None = None) -> tuple[Role, ...]:
    """Load the role table.

    Roles without an inline ``prompt`` read it from ``prompts/<id>.txt`` next
    to the roles file.

    Args:
        roles_file: Path to a roles YAML file (None for the bundled table)

    Returns:
        Roles in file order

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If an entry is malformed or an id is duplicated
    """
    path = Path(roles_file) if roles_file else DEFAULT_ROLES_FILE
    entries = _load_yaml(path.resolve()).get("roles") or []
    prompts_dir = path.parent / "prompts"

    roles: list[Role] = []
    seen: set[str] = set()
    for entry in entries:
        role_id = entry.get("id")
        if not role_id or not entry.get("name"):
            raise ValueError(f"Role entry in {path} is missing 'id' or 'name': {entry}")
        if role_id in seen:
            raise ValueError(f"Duplicate role id '{role_id}' in {path}")
        seen.add(role_id)

        prompt = entry.get("prompt")
        if not prompt:
            prompt = _read_prompt(role_id, prompts_dir)

        roles.append(
            Role(
                id=role_id,
                name=entry["name"],
                description=entry.get("description", ""),
                color=entry.get("color", "#6b7280"),
                icon=entry.get("icon", ""),
                allowed_tools=tuple(entry.get("allowed_tools") or ()),
                prompt=prompt.strip(),
            )
        )

    logger.info(f"Loaded {len(roles)} roles from {path}")
    return tuple(roles)


def load_team_templates(
    teams_file: str | Path | None = None, known_roles: set[str] | None = None
) -> tuple[TeamTemplate, ...]:
    """Load the team template table.

    Args:
        teams_file: Path to a teams YAML file (None for the bundled table)
        known_roles: Role ids every template member must belong to

    Returns:
        Team templates in file order

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If an entry is malformed or references an unknown role
    """
    path = Path(teams_file) if teams_file else DEFAULT_TEAMS_FILE
    entries = _load_yaml(path.resolve()).get("teams") or []

    templates: list[TeamTemplate] = []
    seen: set[str] = set()
    for entry in entries:
        template_id = entry.get("id")
        if not template_id or not entry.get("roles"):
            raise ValueError(f"Team entry in {path} is missing 'id' or 'roles': {entry}")
        if template_id in seen:
            raise ValueError(f"Duplicate team template id '{template_id}' in {path}")
        seen.add(template_id)

        roles = tuple(entry["roles"])
        if known_roles is not None:
            unknown = [role_id for role_id in roles if role_id not in known_roles]
            if unknown:
                raise ValueError(
                    f"Team template '{template_id}' references unknown roles: {', '.join(unknown)}"
                )

        templates.append(
            TeamTemplate(
                id=template_id,
                name=entry.get("name", template_id),
                description=entry.get("description", ""),
                roles=roles,
                icon=entry.get("icon", ""),
            )
        )

    logger.info(f"Loaded {len(templates)} team templates from {path}")
    return tuple(templates)
