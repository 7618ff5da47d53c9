"""Restart coordinator: one hand-off cycle at a time, driven by restart requests.

A cycle opens the control channel, spawns a child, waits for it to ask for
the listener, sends the listener record and only then lets the parent shut
down. Any failure aborts the cycle and leaves the parent serving.
"""

from __future__ import annotations

import socket
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import anyio

from .channel import ControlChannel, receive_request, send_record
from .errors import RestartError
from .listener import export_listener
from .logging import get_logger
from .settings import BatonSettings
from .spawner import ProcessHandle, current_command, spawn

logger = get_logger(__name__)


class RestartState(str, Enum):
    IDLE = "idle"
    CHANNEL_OPENING = "channel_opening"
    WAITING_FOR_CHILD = "waiting_for_child"
    HANDOFF_IN_FLIGHT = "handoff_in_flight"
    COMPLETED = "completed"
    ABORTED = "aborted"


class SpawnFn(Protocol):
    def __call__(
        self,
        command: Sequence[str],
        *,
        listener_fd: int,
        control_socket: str | Path,
    ) -> Awaitable[ProcessHandle]: ...


CompletedFn = Callable[[], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class RestartOutcome:
    state: RestartState
    error: BaseException | None = None
    child_pid: int | None = None
    # Whatever the completion hook returned (the parent's shutdown result).
    shutdown: Any = None

    @property
    def ok(self) -> bool:
        return self.state is RestartState.COMPLETED


class RestartCoordinator:
    def __init__(
        self,
        settings: BatonSettings,
        listener: socket.socket,
        *,
        spawn: SpawnFn = spawn,
        command: Sequence[str] | None = None,
        on_completed: CompletedFn | None = None,
    ) -> None:
        self._settings = settings
        self._listener = listener
        self._spawn = spawn
        self._command = list(command) if command is not None else current_command()
        self._on_completed = on_completed
        self._state = RestartState.IDLE
        self._requests_send, self._requests_receive = (
            anyio.create_memory_object_stream[None](1)
        )

    @property
    def state(self) -> RestartState:
        return self._state

    def trigger(self) -> bool:
        """Ask for a restart cycle; ignored while one is queued or running."""
        if self._state not in (RestartState.IDLE, RestartState.ABORTED):
            logger.info("restart.trigger.ignored", state=self._state.value)
            return False
        try:
            self._requests_send.send_nowait(None)
        except anyio.WouldBlock:
            logger.info("restart.trigger.ignored", state="queued")
            return False
        except anyio.BrokenResourceError:
            logger.info("restart.trigger.ignored", state="stopped")
            return False
        logger.info("restart.trigger.accepted")
        return True

    async def run(self) -> RestartOutcome:
        """Serve restart requests until a cycle completes."""
        async with self._requests_receive:
            async for _ in self._requests_receive:
                outcome = await self.run_cycle()
                if outcome.ok:
                    return outcome
        return RestartOutcome(self._state)

    async def run_cycle(self) -> RestartOutcome:
        self._transition(RestartState.CHANNEL_OPENING)
        settings = self._settings
        child: ProcessHandle | None = None
        try:
            async with await ControlChannel.open(settings.control_socket) as channel:
                child = await self._spawn(
                    self._command,
                    listener_fd=self._listener.fileno(),
                    control_socket=channel.path,
                )
                deadline = anyio.current_time() + settings.child_timeout
                self._transition(RestartState.WAITING_FOR_CHILD, child_pid=child.pid)

                stream = await channel.accept(settings.child_timeout)
                async with stream:
                    message = await receive_request(
                        stream, deadline - anyio.current_time()
                    )
                    logger.debug("restart.cycle.request", message=type(message).__name__)
                    self._transition(RestartState.HANDOFF_IN_FLIGHT)
                    record = export_listener(self._listener)
                    await send_record(stream, record)
                logger.info(
                    "restart.cycle.record_sent",
                    child_pid=child.pid,
                    addr=record.addr,
                    fd=record.fd,
                )
        except RestartError as exc:
            if child is not None:
                child.terminate()
            return self._abort(exc, child)
        except anyio.get_cancelled_exc_class():
            if child is not None and self._state is not RestartState.HANDOFF_IN_FLIGHT:
                child.terminate()
            raise

        self._transition(RestartState.COMPLETED)
        result = None
        if self._on_completed is not None:
            result = await self._on_completed()
        logger.info("restart.cycle.completed", child_pid=child.pid)
        return RestartOutcome(RestartState.COMPLETED, child_pid=child.pid, shutdown=result)

    def _transition(self, state: RestartState, **fields: Any) -> None:
        logger.debug(
            "restart.cycle.state", previous=self._state.value, state=state.value, **fields
        )
        self._state = state

    def _abort(self, exc: RestartError, child: ProcessHandle | None) -> RestartOutcome:
        logger.warning(
            "restart.cycle.aborted",
            error=str(exc),
            error_type=type(exc).__name__,
            during=self._state.value,
        )
        self._state = RestartState.ABORTED
        return RestartOutcome(
            RestartState.ABORTED,
            error=exc,
            child_pid=child.pid if child is not None else None,
        )
