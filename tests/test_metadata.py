from __future__ import annotations

import asyncio

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from clipwatch.metadata import (
    IndexMetadata,
    MetadataError,
    base_component,
    fetch_index_metadata,
    parse_index_payload,
)


def test_parse_payload_reduces_line_to_basename():
    meta = parse_index_payload({"scriptName": "foo", "line": "bar/42"})
    assert meta == IndexMetadata("foo", "42")
    assert meta.filename_stem("20240102030405") == "foo_42_20240102030405"


def test_parse_payload_sanitizes_and_defaults():
    meta = parse_index_payload({"scriptName": 'a:b*c?"d', "line": "C:\\work\\run\\17"})
    assert meta == IndexMetadata("a-b-c--d", "17")

    meta = parse_index_payload({})
    assert meta == IndexMetadata("unknown", "unknown")

    meta = parse_index_payload({"scriptName": "", "line": "///"})
    assert meta == IndexMetadata("unknown", "unknown")


def test_parse_payload_rejects_non_object():
    with pytest.raises(MetadataError):
        parse_index_payload(["scriptName", "foo"])


def test_base_component():
    assert base_component("a/b\\c") == "c"
    assert base_component(42) == "42"
    assert base_component("") == "unknown"


def _index_app(status: int, body: str) -> web.Application:
    async def index(_: web.Request) -> web.Response:
        return web.Response(status=status, text=body, content_type="application/json")

    app = web.Application()
    app.router.add_get("/api/index", index)
    return app


def _fetch(app: web.Application):
    async def runner():
        server = TestServer(app)
        await server.start_server()
        try:
            async with aiohttp.ClientSession() as session:
                return await fetch_index_metadata(session, f"{server.host}:{server.port}", timeout=5)
        finally:
            await server.close()

    return asyncio.run(runner())


def test_fetch_success():
    meta = _fetch(_index_app(200, '{"scriptName": "checkout", "line": "steps/12"}'))
    assert meta == IndexMetadata("checkout", "12")


def test_fetch_non_200_is_failure():
    with pytest.raises(MetadataError, match="HTTP 500"):
        _fetch(_index_app(500, '{"scriptName": "x", "line": "1"}'))


def test_fetch_invalid_json_is_failure():
    with pytest.raises(MetadataError, match="invalid JSON"):
        _fetch(_index_app(200, "<html>not json</html>"))


def test_fetch_unreachable_is_failure():
    async def runner():
        from aiohttp.test_utils import unused_port

        async with aiohttp.ClientSession() as session:
            return await fetch_index_metadata(session, f"127.0.0.1:{unused_port()}", timeout=2)

    with pytest.raises(MetadataError):
        asyncio.run(runner())
