"""Tests for the HTTP application and server wrapper."""

from __future__ import annotations

import os
from pathlib import Path

import aiohttp
import anyio
import pytest
from aiohttp.test_utils import TestClient, TestServer

from baton.listener import bind_listener
from baton.server import INFLIGHT_KEY, HTTPServer, InflightTracker, build_app
from baton.settings import BatonSettings


def _settings(tmp_path: Path, **overrides) -> BatonSettings:
    return BatonSettings(control_socket=tmp_path / "ctl.sock", **overrides)


@pytest.mark.anyio
async def test_health_endpoint(tmp_path: Path) -> None:
    app = build_app(_settings(tmp_path))
    async with TestClient(TestServer(app)) as cl:
        resp = await cl.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data == {"status": "ok", "pid": os.getpid(), "inflight": 1}


@pytest.mark.anyio
async def test_static_site_served_from_root(tmp_path: Path) -> None:
    site = tmp_path / "public"
    (site / "posts").mkdir(parents=True)
    (site / "index.html").write_text("<h1>home</h1>", encoding="utf-8")
    (site / "posts" / "graceful-server-restart.html").write_text(
        "<p>restart</p>", encoding="utf-8"
    )
    app = build_app(_settings(tmp_path, root=site))
    async with TestClient(TestServer(app)) as cl:
        resp = await cl.get("/")
        assert resp.status == 200
        assert await resp.text() == "<h1>home</h1>"

        resp = await cl.get("/posts/graceful-server-restart.html")
        assert resp.status == 200
        assert "restart" in await resp.text()

        resp = await cl.get("/posts/missing.html")
        assert resp.status == 404


@pytest.mark.anyio
async def test_root_without_site_is_not_found(tmp_path: Path) -> None:
    app = build_app(_settings(tmp_path))
    async with TestClient(TestServer(app)) as cl:
        resp = await cl.get("/")
        assert resp.status == 404


def test_app_exposes_tracker(tmp_path: Path) -> None:
    tracker = InflightTracker()
    app = build_app(_settings(tmp_path), tracker=tracker)
    assert app[INFLIGHT_KEY] is tracker
    assert tracker.count == 0


@pytest.mark.anyio
async def test_wait_idle_returns_immediately_when_idle() -> None:
    tracker = InflightTracker()
    with anyio.fail_after(1):
        await tracker.wait_idle()


@pytest.mark.anyio
async def test_http_server_on_existing_listener(tmp_path: Path) -> None:
    listener = bind_listener("127.0.0.1:0")
    port = listener.getsockname()[1]
    server = HTTPServer(build_app(_settings(tmp_path)), listener)
    assert server.addr == f"127.0.0.1:{port}"

    await server.start()
    try:
        assert server.accepting
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://127.0.0.1:{port}/health") as resp:
                assert resp.status == 200
    finally:
        await server.close()

    assert server.closed
    assert not server.accepting
    assert listener.fileno() == -1
    # Closing twice is harmless.
    await server.close()


@pytest.mark.anyio
async def test_http_server_on_unix_listener(tmp_path: Path) -> None:
    path = tmp_path / "web.sock"
    server = HTTPServer(build_app(_settings(tmp_path)), bind_listener(f"unix:{path}"))
    await server.start()
    try:
        connector = aiohttp.UnixConnector(path=str(path))
        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.get("http://baton/health") as resp:
                assert resp.status == 200
    finally:
        await server.close()


@pytest.mark.anyio
async def test_subdirectory_serves_its_index(tmp_path: Path) -> None:
    site = tmp_path / "public"
    (site / "posts").mkdir(parents=True)
    (site / "posts" / "index.html").write_text("<ul>posts</ul>", encoding="utf-8")
    app = build_app(_settings(tmp_path, root=site))
    async with TestClient(TestServer(app)) as cl:
        resp = await cl.get("/posts/")
        assert resp.status == 200
        assert await resp.text() == "<ul>posts</ul>"


@pytest.mark.anyio
async def test_symlink_outside_root_is_not_served(tmp_path: Path) -> None:
    site = tmp_path / "public"
    site.mkdir()
    secret = tmp_path / "secret.txt"
    secret.write_text("hunter2", encoding="utf-8")
    (site / "leak.txt").symlink_to(secret)
    app = build_app(_settings(tmp_path, root=site))
    async with TestClient(TestServer(app)) as cl:
        resp = await cl.get("/leak.txt")
        assert resp.status == 404


@pytest.mark.anyio
async def test_file_body_is_sent_once(tmp_path: Path) -> None:
    site = tmp_path / "public"
    site.mkdir()
    (site / "a.txt").write_text("a", encoding="utf-8")
    tracker = InflightTracker()
    app = build_app(_settings(tmp_path, root=site), tracker=tracker)
    async with TestClient(TestServer(app)) as cl:
        resp = await cl.get("/a.txt")
        assert resp.status == 200
        assert await resp.text() == "a"
        assert tracker.count == 0
