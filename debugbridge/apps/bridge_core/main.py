from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from datetime import UTC, datetime
from functools import partial
from typing import Any, Awaitable, Callable

from ...config import BridgeConfig, ConfigStore
from ...core.errors import LaunchError
from ...core.events import EventBus, EventType
from ...domain.models import HealthResult, StatusSnapshot
from ...domain.status import aggregate
from ...infrastructure.forwarding import ForwardRuleManager, PortProxyTool
from ...infrastructure.health import HealthMonitor
from ...tools.iface_utils import list_non_loopback_ipv4
from ...tools.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[Any]]


class BridgeService:
    """
    Owns the configuration, the forwarding rules, the supervised browser and
    the health monitor, and keeps the status snapshot in sync with them.

    Everything runs on one event loop. Lifecycle sequences (reconcile,
    launch, teardown, restart) are serialized through a single lock so a
    liveness-triggered teardown never interleaves with a restart.
    """

    def __init__(
        self,
        cfg: BridgeConfig,
        store: ConfigStore | None = None,
        *,
        rules: ForwardRuleManager | None = None,
        supervisor: ProcessSupervisor | None = None,
        monitor: HealthMonitor | None = None,
        bus: EventBus | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.rules = rules or ForwardRuleManager(
            PortProxyTool(cfg.forwarding.command, cfg.forwarding.command_timeout_secs),
            address_source=partial(list_non_loopback_ipv4, cfg.forwarding.max_interfaces),
        )
        self.supervisor = supervisor or ProcessSupervisor(
            terminate_grace_secs=cfg.supervisor.terminate_grace_secs,
            staging_prefix=cfg.supervisor.staging_prefix,
        )
        self.monitor = monitor or HealthMonitor(
            timeout_secs=cfg.health.timeout_secs,
            max_body_bytes=cfg.health.max_body_bytes,
            version_field=cfg.health.version_field,
            path=cfg.health.path,
        )
        self.bus = bus or EventBus()
        self._sleep = sleep

        self.health = HealthResult.unavailable()
        self.snapshot: StatusSnapshot = self._compute_snapshot()
        self.last_error = ""
        self.restarts_total = 0

        self.stop_event = asyncio.Event()
        self._lifecycle = asyncio.Lock()
        self._health_wakeup = asyncio.Event()
        self._reload_requested = False
        self._config_mtime = store.mtime() if store else None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def _compute_snapshot(self) -> StatusSnapshot:
        return aggregate(
            self.cfg.configured,
            self.supervisor.running,
            self.rules.active_ports(),
            self.health.responding,
            self.health.version,
        )

    async def update_status(self) -> StatusSnapshot:
        previous = self.snapshot
        self.snapshot = self._compute_snapshot()
        if self.snapshot.lines != previous.lines:
            logger.info("Status: %s", " | ".join(self.snapshot.lines))
            await self.bus.emit(EventType.STATUS_CHANGED, data=self.snapshot.to_dict())
        self._write_status()
        return self.snapshot

    def _write_status(self) -> None:
        """Persist the snapshot for the CLI. Never fails the caller."""
        try:
            payload = {
                **self.snapshot.to_dict(),
                "pid": os.getpid(),
                "browser_pid": self.supervisor.pid,
                "state": self.supervisor.state.value,
                "last_error": self.last_error,
                "forwards": [
                    {"rule": rule.describe(), "active": rule.active} for rule in self.rules.rules
                ],
                "updated_at": datetime.now(UTC).isoformat(),
            }
            self.cfg.state_dir.mkdir(parents=True, exist_ok=True)
            self.cfg.status_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.debug("status file write failed: %s", exc)

    # ------------------------------------------------------------------
    # Lifecycle steps (callers hold self._lifecycle)
    # ------------------------------------------------------------------
    async def _in_executor(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run blocking supervisor work (process scans, grace waits) off the loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    async def _reconcile(self) -> None:
        rules = await self.rules.reconcile(self.cfg.debug_port, self.cfg.destination_address)
        await self.bus.emit(
            EventType.FORWARDS_RECONCILED,
            data={"total": len(rules), "active": self.rules.active_count},
        )

    async def _launch(self) -> bool:
        try:
            proc = await self._in_executor(self.supervisor.launch, self.cfg.executable_path, self.cfg.debug_port)
        except LaunchError as exc:
            self.last_error = str(exc)
            logger.error("Launch failed: %s", exc)
            await self.bus.emit(EventType.LAUNCH_FAILED, data={"error": self.last_error})
            return False
        self.last_error = ""
        await self.bus.emit(EventType.PROCESS_LAUNCHED, data={"pid": proc.pid})
        return True

    async def _teardown(self) -> None:
        removed = await self.rules.cleanup_all()
        if removed:
            await self.bus.emit(EventType.FORWARDS_CLEARED, data={"removed": removed})
        await self._in_executor(self.supervisor.terminate)
        self.health = HealthResult.unavailable()

    async def _bring_up(self) -> bool:
        await self._reconcile()
        return await self._launch()

    async def _restart_locked(self) -> bool:
        await self._teardown()
        await self._sleep(self.cfg.supervisor.settle_delay_secs)
        self.restarts_total += 1
        return await self._bring_up()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Reconcile and launch when configured, then publish the first status."""
        if self.cfg.configured:
            async with self._lifecycle:
                await self._bring_up()
        else:
            logger.info("No executable configured; waiting for configuration")
        await self.bus.emit(EventType.SERVICE_STARTED)
        await self.poll_health()

    async def restart(self) -> bool:
        """Terminate, settle, reconcile, relaunch."""
        async with self._lifecycle:
            ok = await self._restart_locked()
        await self.poll_health()
        return ok

    async def poll_health(self) -> StatusSnapshot:
        if self.cfg.configured and self.supervisor.running:
            self.health = await self.monitor.check(self.cfg.destination_address, self.cfg.debug_port)
        else:
            self.health = HealthResult.unavailable()
        return await self.update_status()

    async def check_liveness(self) -> bool:
        """Tear down once the resource group has no active member left."""
        if not self.supervisor.running:
            return False
        async with self._lifecycle:
            if not self.supervisor.running:
                return False
            if await self._in_executor(self.supervisor.is_alive):
                return True
            pid = self.supervisor.pid
            logger.info("Browser process group exited (pid=%s)", pid)
            await self._teardown()
            await self.bus.emit(EventType.PROCESS_EXITED, data={"pid": pid})
        await self.update_status()
        return False

    async def apply_config(self, new: BridgeConfig) -> None:
        """Move the running system onto ``new``."""
        old = self.cfg
        self.cfg = new
        await self._apply_tuning(old, new)

        needs_restart = old.process_settings() != new.process_settings()
        async with self._lifecycle:
            if not new.configured:
                if self.supervisor.running or self.rules.active_count:
                    logger.info("Executable cleared; stopping browser and removing forwards")
                    await self._teardown()
            elif needs_restart and self.supervisor.running:
                logger.info("Process settings changed; restarting")
                await self._restart_locked()
            elif not self.supervisor.running:
                await self._bring_up()

        if old.poll_interval_seconds != new.poll_interval_seconds:
            self._health_wakeup.set()
        await self.bus.emit(EventType.CONFIG_RELOADED, data={"restart": needs_restart})
        await self.poll_health()

    async def _apply_tuning(self, old: BridgeConfig, new: BridgeConfig) -> None:
        self.rules.tool.command = list(new.forwarding.command)
        self.rules.tool.timeout_secs = new.forwarding.command_timeout_secs
        self.supervisor.terminate_grace_secs = new.supervisor.terminate_grace_secs
        self.supervisor.staging_prefix = new.supervisor.staging_prefix
        if old.health != new.health:
            self.monitor.timeout_secs = new.health.timeout_secs
            self.monitor.max_body_bytes = new.health.max_body_bytes
            self.monitor.version_field = new.health.version_field
            self.monitor.path = new.health.path
            # The session carries the timeout; rebuild it on next poll
            await self.monitor.close()

    def request_reload(self) -> None:
        self._reload_requested = True

    async def check_config_changed(self) -> bool:
        """Reload the store when its file changed or a reload was requested."""
        if self.store is None:
            return False
        mtime = self.store.mtime()
        if not self._reload_requested and mtime == self._config_mtime:
            return False
        self._reload_requested = False
        self._config_mtime = mtime
        new = self.store.load()
        if new == self.cfg:
            return False
        logger.info("Configuration changed on disk; applying")
        await self.apply_config(new)
        return True

    async def shutdown(self) -> None:
        """Best-effort teardown of rules, process group and HTTP session. Never raises."""
        await self.bus.emit(EventType.SERVICE_STOPPING)
        try:
            async with self._lifecycle:
                await self._teardown()
        except Exception:
            logger.exception("Error during shutdown teardown")
        try:
            await self.monitor.close()
        except Exception:
            logger.debug("monitor close failed", exc_info=True)
        try:
            await self.update_status()
        except Exception:
            logger.debug("final status update failed", exc_info=True)

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------
    async def _health_loop(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._health_wakeup.wait(), timeout=self.cfg.poll_interval_seconds)
            except asyncio.TimeoutError:
                await self.poll_health()
            else:
                # Interval changed: restart the countdown
                self._health_wakeup.clear()

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cfg.supervisor.liveness_interval_secs)
            await self.check_liveness()
            await self.check_config_changed()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        handlers: dict[int, Callable[[], None]] = {
            signal.SIGINT: self.stop_event.set,
            signal.SIGTERM: self.stop_event.set,
        }
        if hasattr(signal, "SIGHUP"):
            handlers[signal.SIGHUP] = self.request_reload
        for signum, callback in handlers.items():
            try:
                loop.add_signal_handler(signum, callback)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows event loops: fall back to plain handlers
                signal.signal(signum, lambda _s, _f, cb=callback: loop.call_soon_threadsafe(cb))

    def _write_pidfile(self) -> None:
        try:
            self.cfg.state_dir.mkdir(parents=True, exist_ok=True)
            self.cfg.pid_file.write_text(str(os.getpid()), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not write pidfile %s: %s", self.cfg.pid_file, exc)

    def _remove_pidfile(self) -> None:
        try:
            self.cfg.pid_file.unlink(missing_ok=True)
        except OSError:
            pass

    async def run(self, install_signals: bool = True) -> None:
        """Run until stop_event is set. Teardown always runs on the way out."""
        if install_signals:
            self._install_signal_handlers()
        await self.bus.start()
        self._write_pidfile()
        tasks: list[asyncio.Task] = []
        try:
            await self.start()
            tasks = [
                asyncio.create_task(self._health_loop(), name="health-tick"),
                asyncio.create_task(self._liveness_loop(), name="liveness-tick"),
            ]
            stopper = asyncio.create_task(self.stop_event.wait(), name="stop")
            done, _pending = await asyncio.wait([*tasks, stopper], return_when=asyncio.FIRST_COMPLETED)
            stopper.cancel()
            for task in done:
                if task is not stopper and task.exception() is not None:
                    raise task.exception()  # type: ignore[misc]
        finally:
            # An in-flight reconcile or restart runs to completion before the ticks stop
            async with self._lifecycle:
                for task in tasks:
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.shutdown()
            self._remove_pidfile()
            await self.bus.stop()


def service_loop(cfg: BridgeConfig, store: ConfigStore | None = None, on_status: Callable[[dict], None] | None = None) -> None:
    """Blocking entry point used by the CLI."""

    async def _main() -> None:
        service = BridgeService(cfg, store)
        if on_status is not None:
            async def _forward(event) -> None:
                on_status(event.data)
            service.bus.subscribe(EventType.STATUS_CHANGED, _forward)
        await service.run()

    asyncio.run(_main())
