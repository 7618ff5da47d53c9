"""Graceful shutdown: stop accepting, drain in-flight requests, then close."""

from __future__ import annotations

import threading
from dataclasses import dataclass

import anyio

from .logging import get_logger
from .server import HTTPServer

logger = get_logger(__name__)

# Process-level shutdown state. Thread-safe via threading.Event so it can be
# consulted from signal handlers as well as from the event loop.
_shutdown_requested = threading.Event()


@dataclass(frozen=True, slots=True)
class Drained:
    elapsed: float


@dataclass(frozen=True, slots=True)
class ForcedTermination:
    """The drain timeout expired with *remaining* requests still running."""

    remaining: int
    elapsed: float


ShutdownResult = Drained | ForcedTermination


def request_shutdown() -> bool:
    """Mark the process as shutting down.

    Returns ``False`` when a shutdown had already been requested.
    """
    if _shutdown_requested.is_set():
        return False
    _shutdown_requested.set()
    logger.info("shutdown.requested")
    return True


def is_shutting_down() -> bool:
    """Check whether a graceful shutdown has been requested."""
    return _shutdown_requested.is_set()


def reset_shutdown() -> None:
    """Reset shutdown state. Only for testing."""
    _shutdown_requested.clear()


async def shutdown(server: HTTPServer, timeout: float) -> ShutdownResult:
    """Stop accepting at once and wait up to *timeout* for requests to finish.

    Requests still running when the timeout expires are cut off; that is
    reported as :class:`ForcedTermination` rather than raised.
    """
    started = anyio.current_time()
    await server.stop_accepting()
    with anyio.move_on_after(timeout):
        await server.wait_idle()
    remaining = server.inflight
    await server.close()
    elapsed = anyio.current_time() - started

    if remaining:
        logger.warning(
            "shutdown.forced",
            remaining=remaining,
            timeout=timeout,
            elapsed=round(elapsed, 3),
        )
        return ForcedTermination(remaining=remaining, elapsed=elapsed)
    logger.info("shutdown.drained", elapsed=round(elapsed, 3))
    return Drained(elapsed=elapsed)
