from __future__ import annotations

import asyncio
import importlib.metadata as md
import json
import logging
import sys
from pathlib import Path

import psutil
import typer
from rich.console import Console

from .apps.bridge_core.main import service_loop
from .config import BridgeConfig, ConfigStore, load_config, resolve_config_path
from .core.errors import ConfigError

# Typer application: tests import this
app = typer.Typer(no_args_is_help=True, add_completion=False, help="debugbridge CLI")
console = Console()

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _setup_logging(cfg: BridgeConfig, level: str | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if cfg.logging.file:
        cfg.logging.file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(cfg.logging.file, encoding="utf-8"))
    logging.basicConfig(
        level=(level or cfg.logging.level).upper(),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )


def _store(config: Path | None) -> ConfigStore:
    return ConfigStore(resolve_config_path(config))


def _service_pid(cfg: BridgeConfig) -> int | None:
    """Pid from the pidfile, or None when the file is missing or its process is gone."""
    try:
        pid = int(cfg.pid_file.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None
    return pid if psutil.pid_exists(pid) else None


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Entry point for `debugbridge` command."""
    if ctx.invoked_subcommand is None:
        console.print("debugbridge CLI - use `debugbridge --help` to see commands.")
        raise typer.Exit(code=0)


@app.command()
def version() -> None:
    """Print version information."""
    try:
        dist_version = md.version("debugbridge")
    except md.PackageNotFoundError:
        from . import __version__
        dist_version = __version__
    console.print(f"debugbridge {dist_version}")


@app.command()
def run(
    config: Path | None = typer.Option(None, "--config", "-c"),
    log_level: str | None = typer.Option(None, "--log-level"),
) -> None:
    """Launch the browser, install forwards and supervise until interrupted."""
    store = _store(config)
    cfg = store.initialize()
    _setup_logging(cfg, log_level)
    console.print(f"Using config: {store.path}")
    if not cfg.configured:
        console.print("[yellow]No executable configured.[/yellow] Set one with `debugbridge config-set executablePath PATH`.")

    def _show(data: dict) -> None:
        console.print(" | ".join(line for line in data.get("lines", []) if line))

    try:
        service_loop(cfg, store, on_status=_show)
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        console.print(f"[red]Fatal:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    console.print("debugbridge stopped.")


@app.command()
def status(config: Path | None = typer.Option(None, "--config", "-c")) -> None:
    """Show the status last written by a running service."""
    cfg = _store(config).load()
    if not cfg.status_file.exists():
        console.print("No status file found. Is debugbridge running?")
        raise typer.Exit(code=1)
    pid = _service_pid(cfg)
    if pid is None:
        console.print("debugbridge is not running (last status is stale).")
        raise typer.Exit(code=1)
    data = json.loads(cfg.status_file.read_text(encoding="utf-8"))
    for line in data.get("lines", []):
        if line:
            console.print(line)
    console.print({
        "service_pid": pid,
        "state": data.get("state"),
        "browser_pid": data.get("browser_pid"),
        "forwards": data.get("forwards", []),
        "last_error": data.get("last_error") or None,
        "updated_at": data.get("updated_at"),
    })


@app.command(name="config-show")
def config_show(config: Path | None = typer.Option(None, "--config", "-c")) -> None:
    """Print the effective configuration."""
    store = _store(config)
    console.print(f"Using config: {store.path}")
    console.print(store.load().to_store_dict())


@app.command(name="config-set")
def config_set(
    key: str = typer.Argument(..., help="executablePath|debugPort|destinationAddress|pollIntervalSeconds"),
    value: str = typer.Argument(...),
    config: Path | None = typer.Option(None, "--config", "-c"),
) -> None:
    """Set one launcher setting; a running service picks the change up."""
    store = _store(config)
    try:
        cfg = store.set(key, value)
    except ConfigError as exc:
        console.print(f"[red]Invalid value:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    console.print(f"{key} updated in {store.path}")
    console.print(cfg.to_store_dict())


@app.command(name="config-validate")
def config_validate(path: Path = typer.Argument(Path("configs/debugbridge.yml"))) -> None:
    """Validate a config file and show its key settings."""
    resolved = resolve_config_path(path)
    console.print(f"Using config: {resolved}")
    try:
        cfg = load_config(resolved)
    except Exception as exc:
        console.print(f"Config validation failed: {exc}")
        raise typer.Exit(code=1) from exc
    console.print("Config OK.")
    console.print(f"- executable: {cfg.executable_path or '(not configured)'}")
    console.print(f"- debug port: {cfg.debug_port}")
    console.print(f"- destination: {cfg.destination_address}")
    console.print(f"- poll interval: {cfg.poll_interval_seconds}s")


@app.command(name="config-which")
def config_which(config: Path | None = typer.Option(None, "--config", "-c")) -> None:
    """Print resolved config path by priority rules."""
    console.print(str(resolve_config_path(config)))


@app.command()
def interfaces() -> None:
    """List the addresses forwarding rules would be installed on."""
    from .tools.iface_utils import list_interfaces

    for iface in list_interfaces():
        usable = iface.is_up and not iface.is_loopback
        marker = "[green]forward[/green]" if usable else "[dim]skip[/dim]"
        console.print(f"{iface.name:<16} {iface.address:<15} {marker}")


@app.command(name="forwards-cleanup")
def forwards_cleanup(config: Path | None = typer.Option(None, "--config", "-c")) -> None:
    """Delete forwarding rules for the configured port on every interface."""
    from functools import partial

    from .infrastructure.forwarding import ForwardRuleManager, PortProxyTool
    from .tools.iface_utils import list_non_loopback_ipv4

    cfg = _store(config).load()
    manager = ForwardRuleManager(
        PortProxyTool(cfg.forwarding.command, cfg.forwarding.command_timeout_secs),
        address_source=partial(list_non_loopback_ipv4, cfg.forwarding.max_interfaces),
    )
    count = asyncio.run(manager.purge(cfg.debug_port))
    console.print({"port": cfg.debug_port, "deleted": count})


@app.command()
def health(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
    config: Path | None = typer.Option(None, "--config", "-c"),
) -> None:
    """Poll the debug endpoint once."""
    from .infrastructure.health import HealthMonitor, endpoint_url

    cfg = _store(config).load()
    host = host or cfg.destination_address
    port = port or cfg.debug_port
    monitor = HealthMonitor(
        timeout_secs=cfg.health.timeout_secs,
        max_body_bytes=cfg.health.max_body_bytes,
        version_field=cfg.health.version_field,
        path=cfg.health.path,
    )

    async def _once():
        try:
            return await monitor.check(host, port)
        finally:
            await monitor.close()

    result = asyncio.run(_once())
    console.print({
        "url": endpoint_url(host, port, cfg.health.path),
        "responding": result.responding,
        "version": result.version,
    })
    if not result.responding:
        raise typer.Exit(code=1)


def launch() -> None:
    """Entry point when executed as a module/script."""
    cli()


# Click command export (entrypoint)
cli = typer.main.get_command(app)

__all__ = ["app", "cli"]

if __name__ == "__main__":
    sys.exit(launch())
