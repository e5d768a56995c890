"""Bare-metal dev server processes tracked by PID file.

A project's dev server runs directly on the host in its own session (and
therefore its own process group), with stdout and stderr appended to
``<dir>/.pier/dev.log`` and its PID written to ``<dir>/.pier/dev.pid``.
A PID read back from disk is only trusted after a signal-0 probe, and
termination always signals the whole process group so that children spawned
by the dev server (watchers, bundlers) go down with it.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from pier.core.logging import get_logger
from pier.services.env_composer import PROJECT_STATE_DIR

logger = get_logger(__name__)

PID_FILE_NAME = "dev.pid"
LOG_FILE_NAME = "dev.log"

# Strong references to reaper tasks until they finish
_reapers: set[asyncio.Task[None]] = set()


def pid_is_alive(pid: int) -> bool:
    """Signal-0 probe; a process owned by someone else still counts as alive."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@dataclass(slots=True)
class DevProcessHandle:
    """Handle on a project's dev server process."""

    project_dir: Path
    pid: int | None = None

    @property
    def state_dir(self) -> Path:
        return self.project_dir / PROJECT_STATE_DIR

    @property
    def pid_path(self) -> Path:
        return self.state_dir / PID_FILE_NAME

    @property
    def log_path(self) -> Path:
        return self.state_dir / LOG_FILE_NAME

    @classmethod
    def load(cls, project_dir: Path) -> DevProcessHandle:
        """Read the PID file, if any. The PID is not verified here."""
        handle = cls(project_dir=project_dir)
        try:
            handle.pid = int(handle.pid_path.read_text(encoding="utf-8").strip())
        except FileNotFoundError:
            pass
        except ValueError:
            logger.warning(f"Ignoring malformed PID file {handle.pid_path}")
        return handle

    def is_alive(self) -> bool:
        return self.pid is not None and pid_is_alive(self.pid)

    async def start(self, command: str) -> int:
        """Spawn ``command`` in the project directory as a new process group.

        Returns:
            The child's PID.

        Raises:
            OSError: If the executable cannot be started.
        """
        argv = shlex.split(command)
        if not argv:
            raise ValueError("empty dev command")

        self.state_dir.mkdir(parents=True, exist_ok=True)
        log_file = open(self.log_path, "w", encoding="utf-8")  # noqa: SIM115
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.project_dir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError:
            log_file.close()
            raise

        self.pid = process.pid
        self.pid_path.write_text(str(process.pid), encoding="utf-8")

        task = asyncio.create_task(self.reap(process, log_file), name=f"reap-{process.pid}")
        _reapers.add(task)
        task.add_done_callback(_reapers.discard)

        logger.info(
            f"Started dev server (pid {process.pid}): {command}",
            extra={"pid": process.pid, "dir": str(self.project_dir), "log": str(self.log_path)},
        )
        return process.pid

    async def reap(self, process: asyncio.subprocess.Process, log_file: IO[str]) -> None:
        """Wait for the child, then close its log."""
        try:
            returncode = await process.wait()
        finally:
            log_file.close()
        logger.debug(
            f"Dev server {process.pid} exited with {returncode}",
            extra={"pid": process.pid, "returncode": returncode},
        )

    def terminate(self) -> bool:
        """SIGTERM the process group and delete the PID file.

        The PID file is removed whatever the signal outcome.

        Returns:
            True if the signal was delivered.
        """
        delivered = False
        if self.pid is not None and self.pid > 0:
            try:
                os.killpg(self.pid, signal.SIGTERM)
                delivered = True
            except (ProcessLookupError, PermissionError) as e:
                logger.debug(f"Could not signal process group {self.pid}: {e}")
        self.pid_path.unlink(missing_ok=True)
        if delivered:
            logger.info(f"Stopped dev server (pgid {self.pid})", extra={"pid": self.pid})
        return delivered
