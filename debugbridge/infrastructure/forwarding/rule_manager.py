"""
Forward Rule Manager.

Keeps one v4tov4 port-proxy rule per non-loopback interface address so the
browser's debug port (which only binds to loopback) is reachable from every
network the host is attached to.

Features:
- Reconciliation: drop every installed rule, re-enumerate, reinstall
- Per-interface independence: one failing adapter never aborts the batch
- Idempotent cleanup, safe to call on every teardown path
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence

from ...domain.models import ForwardRule
from ...tools.iface_utils import list_non_loopback_ipv4

logger = logging.getLogger(__name__)

AddressSource = Callable[[], list[str]]


class PortProxyTool:
    """Thin async wrapper around the OS rule tool (``netsh interface portproxy``)."""

    def __init__(self, command: Sequence[str] = ("netsh", "interface", "portproxy"), timeout_secs: float = 5.0) -> None:
        self.command = list(command)
        self.timeout_secs = timeout_secs

    async def _run(self, *args: str) -> int | None:
        """Run the tool with output suppressed. Returns the exit code, or None if it never completed."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError) as exc:
            logger.warning("Rule tool %s unavailable: %s", self.command[0], exc)
            return None
        except OSError as exc:
            logger.warning("Rule tool failed to start: %s", exc)
            return None

        try:
            return await asyncio.wait_for(proc.wait(), timeout=self.timeout_secs)
        except asyncio.TimeoutError:
            logger.warning("Rule tool timed out after %.1fs: %s", self.timeout_secs, " ".join(args))
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return None
        except asyncio.CancelledError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise

    async def add(self, listen_address: str, listen_port: int, connect_address: str, connect_port: int) -> bool:
        code = await self._run(
            "add", "v4tov4",
            f"listenaddress={listen_address}",
            f"listenport={listen_port}",
            f"connectaddress={connect_address}",
            f"connectport={connect_port}",
        )
        return code == 0

    async def delete(self, listen_address: str, listen_port: int) -> bool:
        code = await self._run(
            "delete", "v4tov4",
            f"listenaddress={listen_address}",
            f"listenport={listen_port}",
        )
        if code not in (None, 0):
            logger.debug("delete %s:%d exited with %d", listen_address, listen_port, code)
        return code is not None


class ForwardRuleManager:
    """
    Tracks the forwarding rules installed for the debug port.

    Usage:
        manager = ForwardRuleManager(PortProxyTool())
        await manager.reconcile(9222, "127.0.0.1")
        ...
        await manager.cleanup_all()
    """

    def __init__(self, tool: PortProxyTool, address_source: AddressSource = list_non_loopback_ipv4) -> None:
        self.tool = tool
        self.address_source = address_source
        self._rules: list[ForwardRule] = []
        self._lock = asyncio.Lock()
        self.reconciles_total = 0
        self.install_failures_total = 0
        self.remove_failures_total = 0

    @property
    def rules(self) -> list[ForwardRule]:
        return list(self._rules)

    @property
    def active_rules(self) -> list[ForwardRule]:
        return [rule for rule in self._rules if rule.active]

    @property
    def active_count(self) -> int:
        return len(self.active_rules)

    def active_ports(self) -> list[int]:
        return [rule.listen_port for rule in self._rules if rule.active]

    async def reconcile(self, port: int, destination: str) -> list[ForwardRule]:
        """Replace every installed rule with one per current interface address.

        Partial success is a normal outcome: rules whose install failed stay
        inactive and the rest are kept.
        """
        async with self._lock:
            await self._cleanup_locked()

            addresses = self.address_source()
            rules = [
                ForwardRule(
                    listen_address=address,
                    listen_port=port,
                    destination_address=destination,
                    destination_port=port,
                )
                for address in addresses
            ]
            self._rules = rules

            for rule in rules:
                try:
                    added = await self.tool.add(rule.listen_address, rule.listen_port, rule.destination_address, rule.destination_port)
                except asyncio.CancelledError:
                    # The tool may already have applied it; keep it tracked so cleanup removes it
                    rule.mark_installed()
                    raise
                if added:
                    rule.mark_installed()
                    logger.info("Forward installed: %s", rule.describe())
                else:
                    self.install_failures_total += 1
                    logger.warning("Forward install failed: %s", rule.describe())

            self.reconciles_total += 1
            logger.info(
                "Reconciled forwards for port %d: %d/%d active",
                port,
                self.active_count,
                len(rules),
            )
            return list(rules)

    async def cleanup_all(self) -> int:
        """Remove every active rule. Idempotent; never raises. Returns removals attempted."""
        async with self._lock:
            return await self._cleanup_locked()

    async def _cleanup_locked(self) -> int:
        attempted = 0
        for rule in self._rules:
            if not rule.active:
                continue
            attempted += 1
            try:
                removed = await self.tool.delete(rule.listen_address, rule.listen_port)
            except Exception:
                logger.exception("Forward removal raised: %s", rule.describe())
                removed = False
            if removed:
                logger.info("Forward removed: %s", rule.describe())
            else:
                self.remove_failures_total += 1
                logger.warning("Forward removal failed: %s", rule.describe())
            rule.mark_removed()
        return attempted

    async def purge(self, port: int) -> int:
        """Delete any rule for ``port`` on every current address, tracked or not.

        Used to recover from a previous run that exited without cleanup.
        """
        async with self._lock:
            await self._cleanup_locked()
            count = 0
            for address in self.address_source():
                if await self.tool.delete(address, port):
                    count += 1
            return count
