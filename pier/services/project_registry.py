"""Project registry: pier's durable memory across invocations.

A JSON array at ``<home>/registry.json`` mapping project names to their last
known directory, port, dev command and framework. Every mutation rereads and
rewrites the whole file (last writer wins). An in-process lock serializes
tasks inside one process; an advisory ``flock`` on a sidecar lock file keeps
two concurrent CLI invocations from interleaving read-modify-write cycles.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from pier.core.exceptions import ProjectNotFoundError, RegistryError
from pier.core.logging import get_logger

logger = get_logger(__name__)


class ProjectType(StrEnum):
    """How a project was last brought up."""

    DOCKER = "docker"
    LINK = "link"
    RUN = "run"


class ProjectEntry(BaseModel):
    """One registry entry, serialized with camelCase ``lastUsed``."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    dir: str
    port: int = 0
    command: str | None = None
    type: ProjectType = ProjectType.DOCKER
    framework: str | None = None
    last_used: str | None = Field(default=None, alias="lastUsed")


_ENTRIES = TypeAdapter(list[ProjectEntry])


def utc_timestamp() -> str:
    """Current time as an RFC 3339 UTC timestamp."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class ProjectRegistry:
    """Name-keyed project store backed by a single JSON file."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, open(self._path.with_suffix(".lock"), "a") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def load(self) -> list[ProjectEntry]:
        """Read every entry; a missing file is an empty registry.

        Raises:
            RegistryError: If the file exists but is not a valid registry.
        """
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise RegistryError(f"reading {self._path}: {e}") from e

        if not raw.strip():
            return []
        try:
            return _ENTRIES.validate_json(raw)
        except PydanticValidationError as e:
            raise RegistryError(
                f"registry file {self._path} is corrupt",
                details={"errors": e.error_count()},
            ) from e

    def _save(self, entries: list[ProjectEntry]) -> None:
        payload = [entry.model_dump(mode="json", by_alias=True, exclude_none=True) for entry in entries]
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".registry.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                json.dump(payload, tmp, indent=2)
                tmp.write("\n")
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, name: str) -> ProjectEntry | None:
        return next((entry for entry in self.load() if entry.name == name), None)

    def register(self, entry: ProjectEntry) -> ProjectEntry:
        """Insert or replace an entry matching by name or directory.

        ``lastUsed`` is always set to now.
        """
        stored = entry.model_copy(update={"last_used": utc_timestamp()})
        with self._locked():
            entries = self.load()
            for index, existing in enumerate(entries):
                if existing.name == stored.name or existing.dir == stored.dir:
                    entries[index] = stored
                    break
            else:
                entries.append(stored)
            self._save(entries)

        logger.debug(
            f"Registered project {stored.name}",
            extra={"project": stored.name, "dir": stored.dir, "type": str(stored.type)},
        )
        return stored

    def remove(self, name: str) -> None:
        """Delete an entry by name.

        Raises:
            ProjectNotFoundError: If no entry has this name.
        """
        with self._locked():
            entries = self.load()
            kept = [entry for entry in entries if entry.name != name]
            if len(kept) == len(entries):
                raise ProjectNotFoundError(name)
            self._save(kept)
        logger.info(f"Removed project {name} from registry", extra={"project": name})

    def touch(self, name: str) -> bool:
        """Refresh ``lastUsed``; returns False if the name is unknown."""
        with self._locked():
            entries = self.load()
            for index, existing in enumerate(entries):
                if existing.name == name:
                    entries[index] = existing.model_copy(update={"last_used": utc_timestamp()})
                    self._save(entries)
                    return True
        return False
