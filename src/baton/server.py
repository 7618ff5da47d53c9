"""HTTP server (aiohttp-based, runs as an anyio task on a pre-bound socket)."""

from __future__ import annotations

import os
import socket
from collections.abc import Awaitable, Callable
from pathlib import Path

import anyio
from aiohttp import web
from aiohttp.abc import AbstractStreamWriter

from .listener import format_sockname
from .logging import get_logger
from .settings import BatonSettings

logger = get_logger(__name__)

# Grace given to aiohttp for cancelling handlers still running after the drain.
FORCE_CLOSE_GRACE_S = 0.5

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class SiteFileResponse(web.FileResponse):
    """A file response that can be sent before the handler chain returns.

    ``FileResponse.prepare`` sends the file on every call; once sent, later
    calls made by aiohttp itself are no-ops.
    """

    async def prepare(self, request: web.BaseRequest) -> AbstractStreamWriter | None:
        if self.prepared:
            return None
        return await super().prepare(request)


class InflightTracker:
    """Counts requests whose response has not been fully written yet."""

    def __init__(self) -> None:
        self._count = 0
        self._idle: anyio.Event | None = None

    @property
    def count(self) -> int:
        return self._count

    @web.middleware
    async def middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        """Count a request until its response has been written in full.

        File bodies are streamed after the handler returns, so the response
        is sent here rather than by aiohttp once the middleware has exited.
        """
        self._count += 1
        try:
            response = await handler(request)
            if not response.prepared:
                try:
                    await response.prepare(request)
                    await response.write_eof()
                except ConnectionError:
                    logger.debug("server.client_gone", path=request.path)
            return response
        finally:
            self._count -= 1
            if self._count == 0 and self._idle is not None:
                self._idle.set()
                self._idle = None

    async def wait_idle(self) -> None:
        while self._count:
            if self._idle is None:
                self._idle = anyio.Event()
            await self._idle.wait()


INFLIGHT_KEY = web.AppKey("inflight", InflightTracker)


def build_app(settings: BatonSettings, *, tracker: InflightTracker | None = None) -> web.Application:
    """Build the aiohttp application: health endpoint plus the static site."""
    tracker = tracker or InflightTracker()

    async def handle_health(request: web.Request) -> web.Response:
        return web.json_response(
            {"status": "ok", "pid": os.getpid(), "inflight": tracker.count}
        )

    app = web.Application(middlewares=[tracker.middleware])
    app[INFLIGHT_KEY] = tracker
    app.router.add_get("/health", handle_health)

    if settings.root is not None:
        root = Path(settings.root).resolve()

        async def handle_site(request: web.Request) -> web.StreamResponse:
            target = (root / request.match_info["path"]).resolve()
            if not target.is_relative_to(root):
                raise web.HTTPNotFound()
            if target.is_dir():
                target = target / "index.html"
            if not target.is_file():
                raise web.HTTPNotFound()
            return SiteFileResponse(target)

        app.router.add_get("/{path:.*}", handle_site)
    return app


class HTTPServer:
    """An aiohttp runner serving one application on an existing listener."""

    def __init__(self, app: web.Application, listener: socket.socket) -> None:
        self.app = app
        self.listener = listener
        self.addr = format_sockname(listener)
        self._tracker = app.get(INFLIGHT_KEY) or InflightTracker()
        self._runner = web.AppRunner(
            app, access_log=None, shutdown_timeout=FORCE_CLOSE_GRACE_S
        )
        self._site: web.SockSite | None = None
        self._closed = False

    @property
    def inflight(self) -> int:
        return self._tracker.count

    @property
    def accepting(self) -> bool:
        return self._site is not None

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        await self._runner.setup()
        self._site = web.SockSite(self._runner, self.listener)
        await self._site.start()
        logger.info("server.started", addr=self.addr, pid=os.getpid())

    async def stop_accepting(self) -> None:
        if self._site is None:
            return
        site, self._site = self._site, None
        await site.stop()
        logger.info("server.accept_stopped", addr=self.addr, inflight=self.inflight)

    async def wait_idle(self) -> None:
        await self._tracker.wait_idle()

    async def close(self) -> None:
        """Close every connection; handlers still running are cancelled."""
        if self._closed:
            return
        self._closed = True
        self._site = None
        await self._runner.cleanup()
        self.listener.close()
        logger.info("server.closed", addr=self.addr)
