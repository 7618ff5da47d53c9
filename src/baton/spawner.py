"""Start a fresh copy of the server that inherits the listening socket."""

from __future__ import annotations

import contextlib
import os
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import anyio
from anyio.abc import Process

from .errors import SpawnFailed
from .logging import get_logger

logger = get_logger(__name__)

# Set in a restarted child's environment; points at the parent's control channel.
HANDOFF_ENV = "BATON_HANDOFF_SOCKET"


@dataclass(slots=True)
class ProcessHandle:
    process: Process

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    async def wait(self) -> int:
        return await self.process.wait()

    def terminate(self) -> None:
        if self.process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            self.process.terminate()
        logger.info("spawner.terminated", pid=self.pid)


def current_command() -> list[str]:
    """The command line that started this interpreter."""
    return [sys.executable, *sys.orig_argv[1:]]


async def spawn(
    command: Sequence[str],
    *,
    listener_fd: int,
    control_socket: str | Path,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> ProcessHandle:
    """Launch *command* with stdio inherited and *listener_fd* kept open.

    The descriptor keeps its number in the child, so the record sent over the
    control channel can name it directly. Returns without waiting for the
    child.
    """
    if not command:
        raise SpawnFailed("empty command")
    child_env = dict(os.environ if env is None else env)
    child_env[HANDOFF_ENV] = str(control_socket)
    try:
        process = await anyio.open_process(
            list(command),
            stdin=None,
            stdout=None,
            stderr=None,
            cwd=cwd if cwd is not None else os.getcwd(),
            env=child_env,
            pass_fds=(listener_fd,),
        )
    except OSError as exc:
        raise SpawnFailed(f"cannot start {command[0]!r}: {exc}") from exc
    logger.info(
        "spawner.started",
        pid=process.pid,
        command=command[0],
        listener_fd=listener_fd,
    )
    return ProcessHandle(process)
