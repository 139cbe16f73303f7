from __future__ import annotations

import json
from typing import Any

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from agosync._transport import AgoTransport, looks_like_html, normalize_url, parse_program_listing
from agosync.ago_format import UploadMetadata
from agosync.exceptions import AgoDeviceCommandError, AgoTransportError

_CONTENT = json.dumps({"category": "BW", "name": "B&W", "steps": [{"name": "DEV", "time_min": 1}]})


def test_normalize_url() -> None:
    assert normalize_url("10.10.10.1", "/api/files") == "http://10.10.10.1/api/files"
    assert normalize_url("10.10.10.1", "api/files") == "http://10.10.10.1/api/files"
    assert normalize_url("10.10.10.1", "http://other/upload") == "http://other/upload"


def test_looks_like_html() -> None:
    assert looks_like_html("  <!DOCTYPE html><html></html>")
    assert looks_like_html("<HTML>")
    assert not looks_like_html('{"ok": true}')


def test_parse_program_listing_shapes() -> None:
    assert [p.filename for p in parse_program_listing(["_P_C0_1.txt", " ", 3])] == ["_P_C0_1.txt"]

    wrapped = parse_program_listing({"files": [{"filename": "_P_C0_2.txt", "name": "HP5 DDX"}]})
    assert wrapped[0].filename == "_P_C0_2.txt"
    assert wrapped[0].display_name == "HP5 DDX"

    assert parse_program_listing({"unexpected": True}) == []
    assert parse_program_listing("nope") == []


class FakeAgo:
    """Minimal stand-in for the device's HTTP surface."""

    def __init__(self, *, accept_post: bool = True, accept_put: bool = True, accept_legacy: bool = False) -> None:
        self.accept_post = accept_post
        self.accept_put = accept_put
        self.accept_legacy = accept_legacy
        self.requests: list[tuple[str, str]] = []
        self.bodies: list[Any] = []
        self.files = ["_P_C0_0000aaaa.txt"]

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self.index)
        app.router.add_get("/api/files/programs/custom", self.listing)
        app.router.add_route("*", "/api/files/programs/custom/{name}", self.program)
        app.router.add_post("/legacy/upload", self.legacy)
        return app

    async def index(self, request: web.Request) -> web.Response:
        return web.Response(text="<!doctype html><html></html>", content_type="text/html")

    async def listing(self, request: web.Request) -> web.Response:
        self.requests.append((request.method, request.path))
        return web.json_response(self.files)

    async def program(self, request: web.Request) -> web.Response:
        self.requests.append((request.method, request.path))
        name = request.match_info["name"]
        if request.method == "DELETE":
            if name in self.files:
                self.files.remove(name)
                return web.Response(status=204)
            return web.Response(status=404, text="not found")
        if (request.method == "POST" and self.accept_post) or (request.method == "PUT" and self.accept_put):
            self.bodies.append(await request.json())
            self.files.append(name)
            return web.json_response({"ok": True})
        # Unknown routes fall through to the single-page app.
        return web.Response(text="<!doctype html><html></html>", content_type="text/html")

    async def legacy(self, request: web.Request) -> web.Response:
        self.requests.append((request.method, request.path))
        if not self.accept_legacy:
            return web.Response(status=404)
        form = await request.post()
        self.bodies.append(dict(form))
        return web.Response(text="stored")


async def _serve(device: FakeAgo) -> TestServer:
    server = TestServer(device.app())
    await server.start_server()
    return server


@pytest.mark.asyncio
async def test_probe_list_and_delete() -> None:
    device = FakeAgo()
    server = await _serve(device)
    ip = f"{server.host}:{server.port}"
    try:
        async with aiohttp.ClientSession() as session:
            transport = AgoTransport(session, probe_timeout=1.0, http_timeout=2.0)

            assert await transport.probe(ip)
            programs = await transport.list_programs(ip)
            assert [p.filename for p in programs] == ["_P_C0_0000aaaa.txt"]

            assert await transport.delete_program(ip, "_P_C0_0000aaaa.txt") == "Deleted _P_C0_0000aaaa.txt"
            with pytest.raises(AgoDeviceCommandError) as excinfo:
                await transport.delete_program(ip, "_P_C0_0000aaaa.txt")
            assert excinfo.value.status_code == 404
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_probe_of_unreachable_device_is_false() -> None:
    async with aiohttp.ClientSession() as session:
        transport = AgoTransport(session, probe_timeout=0.5)
        assert not await transport.probe("127.0.0.1:9")


@pytest.mark.asyncio
async def test_list_of_unreachable_device_raises_transport_error() -> None:
    async with aiohttp.ClientSession() as session:
        transport = AgoTransport(session, http_timeout=0.5)
        with pytest.raises(AgoTransportError):
            await transport.list_programs("127.0.0.1:9")


@pytest.mark.asyncio
async def test_upload_posts_custom_program_payload() -> None:
    device = FakeAgo()
    server = await _serve(device)
    ip = f"{server.host}:{server.port}"
    try:
        async with aiohttp.ClientSession() as session:
            transport = AgoTransport(session)
            result = await transport.upload_program(
                ip,
                endpoint="/api/files/programs/custom",
                field_name="json",
                filename="HP5_DDX.json",
                content=_CONTENT,
                metadata=UploadMetadata(film_stock="HP5", developer="DDX", dilution="1+4"),
            )
    finally:
        await server.close()

    assert result.device_filename.startswith("_P_C0_")
    assert device.requests[-1] == ("POST", f"/api/files/programs/custom/{result.device_filename}")
    assert device.bodies[-1]["designator"] == "C2"
    assert device.bodies[-1]["expanded_title"] == " - DDX 1+4"


@pytest.mark.asyncio
async def test_upload_falls_back_to_put_when_post_returns_html() -> None:
    device = FakeAgo(accept_post=False)
    server = await _serve(device)
    ip = f"{server.host}:{server.port}"
    try:
        async with aiohttp.ClientSession() as session:
            result = await AgoTransport(session).upload_program(
                ip,
                endpoint="/api/files/programs/custom",
                field_name="json",
                filename="HP5_DDX.json",
                content=_CONTENT,
                metadata=UploadMetadata(),
            )
    finally:
        await server.close()

    assert "(PUT)" in result.message
    assert [method for method, _ in device.requests] == ["POST", "PUT"]


@pytest.mark.asyncio
async def test_upload_uses_legacy_endpoint_only_when_overridden() -> None:
    device = FakeAgo(accept_post=False, accept_put=False, accept_legacy=True)
    server = await _serve(device)
    ip = f"{server.host}:{server.port}"
    try:
        async with aiohttp.ClientSession() as session:
            transport = AgoTransport(session)
            with pytest.raises(AgoDeviceCommandError) as excinfo:
                await transport.upload_program(
                    ip,
                    endpoint="/api/files/programs/custom",
                    field_name="json",
                    filename="HP5_DDX.json",
                    content=_CONTENT,
                    metadata=UploadMetadata(),
                )
            assert str(excinfo.value).startswith("Upload failed. Tried:")

            result = await transport.upload_program(
                ip,
                endpoint="/legacy/upload",
                field_name="recipe",
                filename="HP5_DDX.json",
                content=_CONTENT,
                metadata=UploadMetadata(),
            )
    finally:
        await server.close()

    assert "compatibility endpoint" in result.message
    assert "recipe" in device.bodies[-1]


@pytest.mark.asyncio
async def test_upload_rejects_invalid_recipe_json() -> None:
    async with aiohttp.ClientSession() as session:
        with pytest.raises(AgoDeviceCommandError):
            await AgoTransport(session).upload_program(
                "127.0.0.1:9",
                endpoint="/api/files/programs/custom",
                field_name="json",
                filename="x.json",
                content="{}",
                metadata=UploadMetadata(),
            )
