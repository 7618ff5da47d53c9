"""Process runtime: acquire the listener, serve, and react to signals.

Three tasks share one task group: the signal watcher, the restart
coordinator and the shutdown waiter. They talk through memory object
streams; whichever of the coordinator or the shutdown waiter finishes
first reports its result on ``done`` and the group is cancelled.
"""

from __future__ import annotations

import contextlib
import os
import signal
import socket
from collections.abc import Mapping
from pathlib import Path

import anyio
from anyio.abc import TaskStatus
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from .channel import request_listener
from .coordinator import RestartCoordinator, SpawnFn
from .listener import bind_listener, import_listener
from .logging import get_logger
from .server import HTTPServer, build_app
from .settings import BatonSettings
from .shutdown import ShutdownResult, is_shutting_down, request_shutdown, shutdown
from .spawner import HANDOFF_ENV, spawn

logger = get_logger(__name__)

RESTART_SIGNAL = signal.SIGHUP
STOP_SIGNALS = (signal.SIGTERM, signal.SIGINT)


async def acquire_listener(
    settings: BatonSettings, environ: Mapping[str, str] | None = None
) -> socket.socket:
    """Inherit the listener from a restarting parent, or bind a fresh one."""
    environ = os.environ if environ is None else environ
    control_socket = environ.get(HANDOFF_ENV)
    if control_socket:
        record = await request_listener(control_socket, settings.child_timeout)
        sock = import_listener(record.fd, record.filename)
        logger.info("runtime.listener.inherited", addr=record.addr, fd=record.fd)
        return sock
    return bind_listener(settings.addr)


def write_pid_file(path: Path | None) -> None:
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{os.getpid()}\n", encoding="utf-8")


def read_pid_file(path: Path) -> int:
    return int(path.read_text(encoding="utf-8").strip())


def remove_pid_file(path: Path | None) -> None:
    """Remove the pid file unless a restarted child has already claimed it."""
    if path is None:
        return
    with contextlib.suppress(FileNotFoundError, ValueError):
        if read_pid_file(path) == os.getpid():
            path.unlink()


def send_restart(pid: int) -> None:
    os.kill(pid, RESTART_SIGNAL)


async def _watch_signals(
    coordinator: RestartCoordinator,
    stop_send: MemoryObjectSendStream[int],
    *,
    task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
) -> None:
    async with stop_send:
        with anyio.open_signal_receiver(RESTART_SIGNAL, *STOP_SIGNALS) as signals:
            task_status.started()
            async for signum in signals:
                name = signal.Signals(signum).name
                if signum == RESTART_SIGNAL:
                    if is_shutting_down():
                        logger.info("runtime.restart.ignored", signal=name)
                        continue
                    coordinator.trigger()
                elif request_shutdown():
                    logger.info("runtime.shutdown.signal", signal=name)
                    stop_send.send_nowait(signum)


async def _run_restarts(
    coordinator: RestartCoordinator,
    done_send: MemoryObjectSendStream[ShutdownResult | None],
) -> None:
    async with done_send:
        outcome = await coordinator.run()
        # None means a stop signal got there first; its waiter reports instead.
        if outcome.shutdown is not None:
            await done_send.send(outcome.shutdown)


async def _wait_for_stop(
    server: HTTPServer,
    timeout: float,
    stop_receive: MemoryObjectReceiveStream[int],
    done_send: MemoryObjectSendStream[ShutdownResult | None],
) -> None:
    async with stop_receive, done_send:
        try:
            await stop_receive.receive()
        except anyio.EndOfStream:
            return
        await done_send.send(await shutdown(server, timeout))


async def serve(
    settings: BatonSettings,
    *,
    spawn: SpawnFn = spawn,
    environ: Mapping[str, str] | None = None,
    task_status: TaskStatus[str] = anyio.TASK_STATUS_IGNORED,
) -> ShutdownResult | None:
    """Serve until a stop signal or a completed restart hands the listener on."""
    listener = await acquire_listener(settings, environ)
    server = HTTPServer(build_app(settings), listener)
    try:
        await server.start()
    except OSError:
        listener.close()
        raise
    write_pid_file(settings.pid_file)

    async def shutdown_after_handoff() -> ShutdownResult | None:
        if not request_shutdown():
            return None
        return await shutdown(server, settings.shutdown_timeout)

    coordinator = RestartCoordinator(
        settings, listener, spawn=spawn, on_completed=shutdown_after_handoff
    )
    stop_send, stop_receive = anyio.create_memory_object_stream[int](1)
    done_send, done_receive = anyio.create_memory_object_stream[ShutdownResult | None](2)

    result: ShutdownResult | None = None
    try:
        async with anyio.create_task_group() as tg:
            await tg.start(_watch_signals, coordinator, stop_send)
            tg.start_soon(_run_restarts, coordinator, done_send.clone())
            tg.start_soon(
                _wait_for_stop, server, settings.shutdown_timeout, stop_receive, done_send
            )
            task_status.started(server.addr)
            async with done_receive:
                result = await done_receive.receive()
            tg.cancel_scope.cancel()
    finally:
        remove_pid_file(settings.pid_file)
        if not server.closed:
            with anyio.CancelScope(shield=True):
                await server.close()
    logger.info("runtime.exited", result=type(result).__name__)
    return result
