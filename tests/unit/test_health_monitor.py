"""Health monitor tests against a local aiohttp server."""

import asyncio
import socket

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from debugbridge.infrastructure.health import HealthMonitor, endpoint_url, extract_field, version_token


@pytest_asyncio.fixture
async def devtools_server():
    release = asyncio.Event()

    async def version(request):
        return web.json_response({"Browser": "Chrome/141.0.7390.123", "Protocol-Version": "1.3"})

    async def no_field(request):
        return web.json_response({"Protocol-Version": "1.3"})

    async def not_found(request):
        return web.json_response({"Browser": "Chrome/1.0"}, status=404)

    async def garbage(request):
        return web.Response(text="<html>not devtools</html>")

    async def oversized(request):
        padding = "x" * 20000
        return web.Response(
            text='{"Browser": "HeadlessChrome/120.0.6099.5", "webSocketDebuggerUrl": "' + padding + '"}',
            content_type="application/json",
        )

    async def slow(request):
        try:
            await asyncio.wait_for(release.wait(), timeout=3.0)
        except asyncio.TimeoutError:
            pass
        return web.json_response({"Browser": "Chrome/1.0"})

    app = web.Application()
    app.router.add_get("/json/version", version)
    app.router.add_get("/no-field", no_field)
    app.router.add_get("/missing", not_found)
    app.router.add_get("/garbage", garbage)
    app.router.add_get("/oversized", oversized)
    app.router.add_get("/slow", slow)

    server = TestServer(app)
    await server.start_server()
    yield server
    release.set()
    await server.close()


@pytest_asyncio.fixture
async def monitor():
    mon = HealthMonitor(timeout_secs=0.5, max_body_bytes=4096)
    yield mon
    await mon.close()


@pytest.mark.asyncio
async def test_valid_body_reports_version(devtools_server, monitor):
    result = await monitor.check(devtools_server.host, devtools_server.port)

    assert result.responding is True
    assert result.version == "141.0.7390.123"
    assert monitor.last_result is result


@pytest.mark.asyncio
async def test_missing_field_is_not_responding(devtools_server, monitor):
    result = await monitor.poll(str(devtools_server.make_url("/no-field")))
    assert result.responding is False
    assert result.version == ""


@pytest.mark.asyncio
async def test_non_200_is_not_responding(devtools_server, monitor):
    assert (await monitor.poll(str(devtools_server.make_url("/missing")))).responding is False


@pytest.mark.asyncio
async def test_non_json_body_is_not_responding(devtools_server, monitor):
    assert (await monitor.poll(str(devtools_server.make_url("/garbage")))).responding is False


@pytest.mark.asyncio
async def test_truncated_body_still_yields_version(devtools_server, monitor):
    result = await monitor.poll(str(devtools_server.make_url("/oversized")))

    assert result.responding is True
    assert result.version == "120.0.6099.5"


@pytest.mark.asyncio
async def test_slow_endpoint_is_bounded_by_timeout(devtools_server, monitor):
    loop = asyncio.get_running_loop()
    started = loop.time()

    result = await monitor.poll(str(devtools_server.make_url("/slow")))

    assert result.responding is False
    assert loop.time() - started < monitor.timeout_secs + 1.0


@pytest.mark.asyncio
async def test_refused_connection_is_not_responding(monitor):
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    result = await monitor.check("127.0.0.1", port)
    assert result.responding is False


@pytest.mark.asyncio
async def test_session_is_rebuilt_after_close(devtools_server, monitor):
    await monitor.check(devtools_server.host, devtools_server.port)
    await monitor.close()

    result = await monitor.check(devtools_server.host, devtools_server.port)
    assert result.responding is True


def test_endpoint_url():
    assert endpoint_url("127.0.0.1", 9222) == "http://127.0.0.1:9222/json/version"


@pytest.mark.parametrize(
    "body, expected",
    [
        ('{"Browser": "Chrome/1.2.3"}', "Chrome/1.2.3"),
        ('{"Browser": 12}', None),
        ("[1, 2]", None),
        ('{"Protocol-Version": "1.3"}', None),
        ('{"Browser" : "Edg/130.0", "webSocketDebuggerUrl": "ws://12', "Edg/130.0"),
        ('{"Browser": "Chrome/1.2', None),
        ("", None),
    ],
)
def test_extract_field(body, expected):
    assert extract_field(body) == expected


def test_version_token():
    assert version_token("Chrome/141.0.7390.123") == "141.0.7390.123"
    assert version_token("Firefox") == "Firefox"
