"""Shared fixtures: a local aiohttp server and a client session that routes
every hostname to it."""

from __future__ import annotations

import asyncio
import socket

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.abc import AbstractResolver
from aiohttp.test_utils import TestServer


class LocalResolver(AbstractResolver):
    """Resolves any hostname to 127.0.0.1 so tests can use real FQDNs."""

    async def resolve(self, host, port=0, family=socket.AF_INET):
        return [{
            "hostname": host,
            "host": "127.0.0.1",
            "port": port,
            "family": socket.AF_INET,
            "proto": 0,
            "flags": socket.AI_NUMERICHOST,
        }]

    async def close(self) -> None:
        pass


RECEIVED = web.AppKey("received", list)


def _make_app() -> web.Application:
    app = web.Application()
    app[RECEIVED] = []

    async def record(request: web.Request) -> None:
        body = await request.text()
        app[RECEIVED].append({
            "method": request.method,
            "host": request.host,
            "path": request.path,
            "headers": request.headers.copy(),
            "body": body,
        })

    async def ok(request: web.Request) -> web.Response:
        await record(request)
        return web.Response(text="ok")

    async def missing(request: web.Request) -> web.Response:
        await record(request)
        return web.Response(status=404, text="not found")

    async def server_error(request: web.Request) -> web.Response:
        await record(request)
        return web.Response(status=500, text="boom")

    async def slow(request: web.Request) -> web.Response:
        await record(request)
        await asyncio.sleep(1.0)
        return web.Response(text="late")

    async def slow_body(request: web.Request) -> web.StreamResponse:
        await record(request)
        response = web.StreamResponse()
        response.content_length = 8
        await response.prepare(request)
        await response.write(b"part")
        await asyncio.sleep(1.0)
        await response.write(b"rest")
        return response

    app.router.add_route("*", "/ok", ok)
    app.router.add_route("*", "/missing", missing)
    app.router.add_route("*", "/error", server_error)
    app.router.add_route("*", "/slow", slow)
    app.router.add_route("*", "/slow-body", slow_body)
    return app


@pytest_asyncio.fixture
async def server():
    test_server = TestServer(_make_app())
    await test_server.start_server()
    yield test_server
    await test_server.close()


@pytest_asyncio.fixture
async def session():
    connector = aiohttp.TCPConnector(resolver=LocalResolver())
    async with aiohttp.ClientSession(connector=connector) as client_session:
        yield client_session


@pytest.fixture
def received(server):
    """Requests the local server has seen, in arrival order."""
    return server.app[RECEIVED]
