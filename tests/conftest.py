from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest

from debugbridge.core.errors import LaunchError
from debugbridge.domain.models import HealthResult, SupervisorState


class FakePortProxy:
    """Stands in for the netsh wrapper; tracks which rules exist right now."""

    def __init__(self, log: list | None = None, fail_add: tuple[str, ...] = (), fail_delete: tuple[str, ...] = (), add_delay: float = 0.0) -> None:
        self.log = log if log is not None else []
        self.add_delay = add_delay
        self.fail_add = set(fail_add)
        self.fail_delete = set(fail_delete)
        self.installed: set[tuple[str, int]] = set()
        self.duplicates: list[tuple[str, int]] = []
        self.command = ["fake-portproxy"]
        self.timeout_secs = 1.0

    async def add(self, listen_address, listen_port, connect_address, connect_port) -> bool:
        self.log.append(("add", listen_address, listen_port))
        if listen_address in self.fail_add:
            return False
        key = (listen_address, listen_port)
        if key in self.installed:
            self.duplicates.append(key)
        self.installed.add(key)
        if self.add_delay:
            # Rule is applied; the command just has not returned yet
            await asyncio.sleep(self.add_delay)
        return True

    async def delete(self, listen_address, listen_port) -> bool:
        self.log.append(("delete", listen_address, listen_port))
        if listen_address in self.fail_delete:
            return False
        self.installed.discard((listen_address, listen_port))
        return True


class FakeSupervisor:
    """ProcessSupervisor double with a switchable liveness answer."""

    def __init__(self, log: list | None = None, fail: bool = False) -> None:
        self.log = log if log is not None else []
        self.fail = fail
        self.alive = True
        self.state = SupervisorState.IDLE
        self.launches: list[tuple[str, int]] = []
        self.terminate_grace_secs = 1.0
        self.staging_prefix = "test_"
        self._pid = 4000

    @property
    def running(self) -> bool:
        return self.state == SupervisorState.RUNNING

    @property
    def pid(self) -> int | None:
        return self._pid if self.running else None

    def launch(self, path, debug_port, extra_args=()):
        if self.running:
            self.terminate()
        self.log.append(("launch", path, debug_port))
        if self.fail:
            raise LaunchError(f"failed to launch {path}: boom")
        self._pid += 1
        self.launches.append((path, debug_port))
        self.alive = True
        self.state = SupervisorState.RUNNING
        return SimpleNamespace(pid=self._pid)

    def is_alive(self) -> bool:
        return self.running and self.alive

    def terminate(self) -> None:
        self.log.append(("terminate",))
        self.state = SupervisorState.IDLE


class FakeMonitor:
    def __init__(self, result: HealthResult | None = None) -> None:
        self.result = result or HealthResult(responding=True, version="141.0.7390.123")
        self.checks: list[tuple[str, int]] = []
        self.closed = 0
        self.timeout_secs = 2.0
        self.max_body_bytes = 4096
        self.version_field = "Browser"
        self.path = "/json/version"

    async def check(self, host, port) -> HealthResult:
        self.checks.append((host, port))
        return self.result

    async def close(self) -> None:
        self.closed += 1


@pytest.fixture
def make_tool():
    return FakePortProxy


@pytest.fixture
def make_supervisor():
    return FakeSupervisor


@pytest.fixture
def make_monitor():
    return FakeMonitor


@pytest.fixture
def fake_tool() -> FakePortProxy:
    return FakePortProxy()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"
