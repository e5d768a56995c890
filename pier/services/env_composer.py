"""Environment composition for applications using shared services.

Overrides are ordered ``KEY=VALUE`` strings. Precedence, low to high:

1. literal values from the project's ``.env``
2. ``${VAR:-default}`` placeholders in ``.env`` reduced to their default
3. shared-service connection variables and project-level (Pierfile) overrides
4. database-name variables derived from the project name, always last
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING

from pier.core.logging import get_logger

if TYPE_CHECKING:
    from pier.services.shared_infra import SharedService

logger = get_logger(__name__)

PROJECT_STATE_DIR = ".pier"
GENERATED_ENV_NAME = "env"
OVERRIDES_HEADER = "# Pier infrastructure overrides"

_PLACEHOLDER = re.compile(r"\$\{([^}]*)\}")


def split_pair(item: str) -> tuple[str, str] | None:
    """Split ``KEY=VALUE``; None for anything without a key."""
    key, sep, value = item.partition("=")
    key = key.strip()
    if not sep or not key:
        return None
    return key, value


def merge_env(*groups: Iterable[str]) -> list[str]:
    """Merge ``KEY=VALUE`` lists; later groups win, first-seen key order is kept."""
    merged: dict[str, str] = {}
    for group in groups:
        for item in group:
            pair = split_pair(item)
            if pair is not None:
                merged[pair[0]] = pair[1]
    return [f"{key}={value}" for key, value in merged.items()]


def to_env_list(values: Mapping[str, object]) -> list[str]:
    return [f"{key}={'' if value is None else value}" for key, value in values.items()]


def database_name_overrides(project_name: str) -> list[str]:
    db_name = project_name.replace("-", "_")
    return [f"DATABASE_NAME={db_name}", f"DB_DATABASE={db_name}"]


def compose_overrides(
    services: Iterable[SharedService],
    overrides: Mapping[str, object] | Iterable[str] | None = None,
    project_name: str | None = None,
) -> list[str]:
    """Build the ordered override list for a project.

    Args:
        services: Shared services the project depends on
        overrides: Project-level values (Pierfile ``env``), mapping or KEY=VALUE list
        project_name: When given, database-name variables are appended last

    Returns:
        Deduplicated ``KEY=VALUE`` list; a later source replaces an earlier value.
    """
    groups: list[list[str]] = [to_env_list(service.connection_env) for service in services]

    if isinstance(overrides, Mapping):
        groups.append(to_env_list(overrides))
    elif overrides:
        groups.append(list(overrides))

    if project_name:
        groups.append(database_name_overrides(project_name))

    return merge_env(*groups)


def resolve_default(value: str) -> str:
    """Reduce every ``${VAR:-default}`` to ``default`` and ``${VAR}`` to empty."""
    if "${" not in value:
        return value

    def _default(match: re.Match[str]) -> str:
        _, sep, default = match.group(1).partition(":-")
        return default if sep else ""

    return _PLACEHOLDER.sub(_default, value)


def generate_env_file(project_dir: Path, overrides: Iterable[str]) -> Path:
    """Merge the project's ``.env`` with overrides into ``.pier/env``.

    Comments, blank and malformed lines pass through unchanged. Keys that
    have an override take it; other values have placeholders resolved.
    Overrides missing from ``.env`` are appended under a marked section.

    Returns:
        Path to the generated file.
    """
    override_map = dict(pair for item in overrides if (pair := split_pair(item)) is not None)

    lines: list[str] = []
    seen: set[str] = set()

    source = project_dir / ".env"
    if source.is_file():
        for line in source.read_text(encoding="utf-8").splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                lines.append(line)
                continue

            pair = split_pair(stripped)
            if pair is None:
                lines.append(line)
                continue

            key, value = pair
            seen.add(key)
            if key in override_map:
                lines.append(f"{key}={override_map[key]}")
            else:
                lines.append(f"{key}={resolve_default(value.strip())}")

    lines.extend(["", OVERRIDES_HEADER])
    lines.extend(f"{key}={value}" for key, value in override_map.items() if key not in seen)

    state_dir = project_dir / PROJECT_STATE_DIR
    state_dir.mkdir(parents=True, exist_ok=True)
    target = state_dir / GENERATED_ENV_NAME
    target.write_text("\n".join(lines) + "\n", encoding="utf-8")

    logger.debug(
        f"Wrote {target}",
        extra={"path": str(target), "overrides": len(override_map), "from_dotenv": len(seen)},
    )
    return target


def read_env_lines(path: Path) -> list[str]:
    """Read ``KEY=VALUE`` entries from an env file, skipping comments."""
    entries = []
    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        pair = split_pair(stripped)
        if pair is not None:
            entries.append(f"{pair[0]}={pair[1]}")
    return entries
