"""
Debug Endpoint Health Monitor.
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Polls the browser's DevTools metadata endpoint (``/json/version``) and
reports whether it answers and which version it runs.
"""

from __future__ import annotations

import asyncio
import json
import logging

import aiohttp

from ...domain.models import HealthResult

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/json/version"
DEFAULT_FIELD = "Browser"


def endpoint_url(host: str, port: int, path: str = DEFAULT_PATH) -> str:
    return f"http://{host}:{port}{path}"


def _scan_field(body: str, field: str) -> str | None:
    """Field name, the colon after it, then the first quoted string."""
    idx = body.find(f'"{field}"')
    if idx < 0:
        return None
    colon = body.find(":", idx + len(field) + 2)
    if colon < 0:
        return None
    start = body.find('"', colon)
    if start < 0:
        return None
    end = body.find('"', start + 1)
    if end < 0:
        return None
    return body[start + 1:end]


def extract_field(body: str, field: str = DEFAULT_FIELD) -> str | None:
    """Return the string value of ``field`` or None.

    A regular JSON decode is tried first; a body that does not decode (for
    instance one cut off at the read cap) falls back to a tolerant scan.
    """
    try:
        data = json.loads(body)
    except ValueError:
        return _scan_field(body, field)
    if isinstance(data, dict):
        value = data.get(field)
        return value if isinstance(value, str) else None
    return None


def version_token(value: str) -> str:
    """``Name/1.2.3.4`` -> ``1.2.3.4``."""
    _, sep, rest = value.partition("/")
    return rest if sep else value


class HealthMonitor:
    """
    Bounded-timeout poller for the debug endpoint.

    Every failure mode (refused, timeout, bad status, bad body, missing field)
    is reported as ``responding=False``; nothing is raised.

    Example:
        >>> monitor = HealthMonitor(timeout_secs=2.0)
        >>> result = await monitor.check("127.0.0.1", 9222)
        >>> result.responding, result.version
        (True, '141.0.7390.123')
    """

    def __init__(
        self,
        timeout_secs: float = 2.0,
        max_body_bytes: int = 4096,
        version_field: str = DEFAULT_FIELD,
        path: str = DEFAULT_PATH,
    ) -> None:
        self.timeout_secs = timeout_secs
        self.max_body_bytes = max_body_bytes
        self.version_field = version_field
        self.path = path
        self._session: aiohttp.ClientSession | None = None
        self.last_result = HealthResult.unavailable()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_secs),
                headers={"Cache-Control": "no-cache"},
            )
        return self._session

    async def _read_capped(self, resp: aiohttp.ClientResponse) -> bytes:
        body = bytearray()
        while len(body) < self.max_body_bytes:
            chunk = await resp.content.read(self.max_body_bytes - len(body))
            if not chunk:
                break
            body.extend(chunk)
        return bytes(body)

    async def poll(self, url: str) -> HealthResult:
        """Issue one GET against ``url`` and classify the answer."""
        session = self._get_session()
        try:
            async with asyncio.timeout(self.timeout_secs):
                async with session.get(url, allow_redirects=False) as resp:
                    if resp.status != 200:
                        logger.debug("Health endpoint %s answered %d", url, resp.status)
                        return self._store(HealthResult.unavailable())
                    raw = await self._read_capped(resp)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
            logger.debug("Health endpoint %s unavailable: %s", url, exc or type(exc).__name__)
            return self._store(HealthResult.unavailable())

        value = extract_field(raw.decode("utf-8", errors="replace"), self.version_field)
        if value is None:
            logger.debug("Health endpoint %s: no %r field in body", url, self.version_field)
            return self._store(HealthResult.unavailable())
        return self._store(HealthResult(responding=True, version=version_token(value)))

    async def check(self, host: str, port: int) -> HealthResult:
        return await self.poll(endpoint_url(host, port, self.path))

    def _store(self, result: HealthResult) -> HealthResult:
        self.last_result = result
        return result

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
