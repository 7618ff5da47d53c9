"""Tests for graceful shutdown."""

from __future__ import annotations

import contextlib
import os
import socket
from pathlib import Path

import aiohttp
import anyio
import pytest
from aiohttp import web

from baton.listener import bind_listener
from baton.server import INFLIGHT_KEY, HTTPServer, InflightTracker, build_app
from baton.settings import BatonSettings
from baton.shutdown import (
    Drained,
    ForcedTermination,
    is_shutting_down,
    request_shutdown,
    reset_shutdown,
    shutdown,
)


class TestShutdownState:
    def setup_method(self) -> None:
        reset_shutdown()

    def teardown_method(self) -> None:
        reset_shutdown()

    def test_initially_not_shutting_down(self) -> None:
        assert is_shutting_down() is False

    def test_request_shutdown_sets_state(self) -> None:
        assert request_shutdown() is True
        assert is_shutting_down() is True

    def test_double_request_is_refused(self) -> None:
        assert request_shutdown() is True
        assert request_shutdown() is False
        assert is_shutting_down() is True

    def test_reset_clears_state(self) -> None:
        request_shutdown()
        reset_shutdown()
        assert is_shutting_down() is False


def _slow_app(delay: float) -> web.Application:
    tracker = InflightTracker()

    async def slow(request: web.Request) -> web.Response:
        await anyio.sleep(delay)
        return web.Response(text="done")

    app = web.Application(middlewares=[tracker.middleware])
    app[INFLIGHT_KEY] = tracker
    app.router.add_get("/slow", slow)
    return app


async def _start(delay: float) -> tuple[HTTPServer, int]:
    listener = bind_listener("127.0.0.1:0")
    server = HTTPServer(_slow_app(delay), listener)
    await server.start()
    return server, listener.getsockname()[1]


async def _wait_inflight(server: HTTPServer, count: int) -> None:
    with anyio.fail_after(5):
        while server.inflight != count:
            await anyio.sleep(0.01)


class TestGracefulShutdown:
    @pytest.mark.anyio
    async def test_idle_server_drains_immediately(self) -> None:
        server, port = await _start(0)
        result = await shutdown(server, 1.0)
        assert isinstance(result, Drained)
        assert server.closed
        with pytest.raises(OSError):
            socket.create_connection(("127.0.0.1", port), timeout=1).close()

    @pytest.mark.anyio
    async def test_inflight_request_completes(self) -> None:
        server, port = await _start(0.2)
        responses: list[tuple[int, str]] = []

        async def client() -> None:
            async with aiohttp.ClientSession() as session:
                async with session.get(f"http://127.0.0.1:{port}/slow") as resp:
                    responses.append((resp.status, await resp.text()))

        async with anyio.create_task_group() as tg:
            tg.start_soon(client)
            await _wait_inflight(server, 1)
            result = await shutdown(server, 5.0)

        assert isinstance(result, Drained)
        assert result.elapsed < 5.0
        assert responses == [(200, "done")]

    @pytest.mark.anyio
    async def test_slow_request_is_forced(self) -> None:
        server, port = await _start(30)
        failures: list[BaseException] = []

        async def client() -> None:
            timeout = aiohttp.ClientTimeout(total=10)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                try:
                    async with session.get(f"http://127.0.0.1:{port}/slow") as resp:
                        await resp.read()
                except aiohttp.ClientError as exc:
                    failures.append(exc)

        async with anyio.create_task_group() as tg:
            tg.start_soon(client)
            await _wait_inflight(server, 1)
            result = await shutdown(server, 0.2)

        assert result == ForcedTermination(remaining=1, elapsed=result.elapsed)
        assert result.elapsed >= 0.2
        assert len(failures) == 1

    @pytest.mark.anyio
    async def test_new_connections_refused_while_draining(self) -> None:
        server, port = await _start(0.5)

        async def client() -> None:
            async with aiohttp.ClientSession() as session:
                async with session.get(f"http://127.0.0.1:{port}/slow") as resp:
                    await resp.read()

        async with anyio.create_task_group() as tg:
            tg.start_soon(client)
            await _wait_inflight(server, 1)
            tg.start_soon(shutdown, server, 5.0)
            with anyio.fail_after(5):
                while server.accepting:
                    await anyio.sleep(0.01)
            await anyio.sleep(0.05)
            with pytest.raises(OSError):
                await anyio.connect_tcp("127.0.0.1", port)


async def _start_site(tmp_path: Path, payload: bytes) -> tuple[HTTPServer, str]:
    site = tmp_path / "public"
    site.mkdir()
    (site / "release.tar").write_bytes(payload)
    settings = BatonSettings(control_socket=tmp_path / "ctl.sock", root=site)
    listener = bind_listener("127.0.0.1:0")
    server = HTTPServer(build_app(settings), listener)
    await server.start()
    return server, f"http://127.0.0.1:{listener.getsockname()[1]}/release.tar"


class TestStaticDownloads:
    @pytest.mark.anyio
    async def test_download_in_progress_is_drained(self, tmp_path: Path) -> None:
        payload = os.urandom(1024) * (32 * 1024)
        server, url = await _start_site(tmp_path, payload)
        received = bytearray()
        first_chunk = anyio.Event()

        async def client() -> None:
            async with aiohttp.ClientSession() as session:
                async with session.get(url) as resp:
                    async for chunk in resp.content.iter_chunked(256 * 1024):
                        received.extend(chunk)
                        first_chunk.set()
                        await anyio.sleep(0.005)

        async with anyio.create_task_group() as tg:
            tg.start_soon(client)
            with anyio.fail_after(5):
                await first_chunk.wait()
            assert server.inflight == 1
            result = await shutdown(server, 10.0)

        assert isinstance(result, Drained)
        assert len(received) == len(payload)
        assert bytes(received) == payload

    @pytest.mark.anyio
    async def test_download_outliving_timeout_is_forced(self, tmp_path: Path) -> None:
        payload = os.urandom(1024) * (32 * 1024)
        server, url = await _start_site(tmp_path, payload)
        first_chunk = anyio.Event()

        async def client() -> None:
            async with aiohttp.ClientSession() as session:
                with contextlib.suppress(aiohttp.ClientError):
                    async with session.get(url) as resp:
                        async for _ in resp.content.iter_chunked(64 * 1024):
                            first_chunk.set()
                            await anyio.sleep(0.05)

        async with anyio.create_task_group() as tg:
            tg.start_soon(client)
            with anyio.fail_after(5):
                await first_chunk.wait()
            result = await shutdown(server, 0.2)
            tg.cancel_scope.cancel()

        assert result == ForcedTermination(remaining=1, elapsed=result.elapsed)
        assert server.closed
