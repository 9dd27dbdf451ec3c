from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_DESTINATION = "127.0.0.1"
DEFAULT_DEBUG_PORT = 9222
DEFAULT_POLL_INTERVAL = 60
MIN_POLL_INTERVAL = 5

# Keys understood by the key/value store, camelCase first.
CORE_KEYS: dict[str, str] = {
    "executablePath": "executable_path",
    "debugPort": "debug_port",
    "destinationAddress": "destination_address",
    "pollIntervalSeconds": "poll_interval_seconds",
}

BROWSER_CANDIDATES: tuple[str, ...] = (
    r"C:\Program Files\Google\Chrome\Application\chrome.exe",
    r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
)
BROWSER_COMMANDS: tuple[str, ...] = ("google-chrome", "google-chrome-stable", "chromium", "chromium-browser")


class LoggingConfig(BaseModel):
    level: str = Field("INFO")
    file: Path | None = Field(default=None)

    @field_validator("level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log level: {value}")
        return value

    @field_validator("file")
    @classmethod
    def _expand_file(cls, value: Path | None) -> Path | None:
        return value.expanduser() if value else value


class SupervisorConfig(BaseModel):
    """Process supervision timing."""
    liveness_interval_secs: float = Field(1.0, gt=0, le=30)
    settle_delay_secs: float = Field(0.5, ge=0, le=10)
    terminate_grace_secs: float = Field(3.0, ge=0, le=60)
    staging_prefix: str = Field("debugbridge_profile_")


class ForwardingConfig(BaseModel):
    command: list[str] = Field(default_factory=lambda: ["netsh", "interface", "portproxy"])
    command_timeout_secs: float = Field(5.0, gt=0, le=60)
    max_interfaces: int = Field(32, ge=1, le=256)

    @field_validator("command")
    @classmethod
    def _validate_command(cls, value: list[str]) -> list[str]:
        if not value or not value[0]:
            raise ValueError("forwarding command cannot be empty")
        return value


class HealthConfig(BaseModel):
    timeout_secs: float = Field(2.0, gt=0, le=30)
    max_body_bytes: int = Field(4096, ge=64, le=1024 * 1024)
    version_field: str = Field("Browser")
    path: str = Field("/json/version")


class BridgeConfig(BaseModel):
    """Launcher configuration. An empty executable path means unconfigured."""

    model_config = ConfigDict(populate_by_name=True)

    executable_path: str = Field("", alias="executablePath")
    debug_port: int = Field(DEFAULT_DEBUG_PORT, ge=1, le=65535, alias="debugPort")
    destination_address: str = Field(DEFAULT_DESTINATION, alias="destinationAddress")
    poll_interval_seconds: int = Field(DEFAULT_POLL_INTERVAL, ge=MIN_POLL_INTERVAL, alias="pollIntervalSeconds")

    state_dir: Path = Field(Path("~/.local/state/debugbridge"))
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    forwarding: ForwardingConfig = Field(default_factory=ForwardingConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    @field_validator("executable_path", mode="before")
    @classmethod
    def _strip_path(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("destination_address", mode="before")
    @classmethod
    def _default_destination(cls, value: Any) -> str:
        if value is None or not str(value).strip():
            return DEFAULT_DESTINATION
        value = str(value).strip()
        if any(c.isspace() for c in value):
            raise ValueError("destinationAddress must be a valid hostname or IP")
        return value

    @field_validator("state_dir")
    @classmethod
    def _expand_state_dir(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def configured(self) -> bool:
        return bool(self.executable_path)

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "debugbridge.pid"

    @property
    def status_file(self) -> Path:
        return self.state_dir / "status.json"

    def process_settings(self) -> tuple[str, int, str]:
        """Fields whose change requires the browser to be restarted."""
        return (self.executable_path, self.debug_port, self.destination_address)

    def to_store_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def load_config(path: Path) -> BridgeConfig:
    with Path(path).expanduser().open("r", encoding="utf-8") as fp:
        raw = yaml.safe_load(fp) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    try:
        return BridgeConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc


def save_config(cfg: BridgeConfig, path: Path) -> None:
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.to_store_dict(), sort_keys=False), encoding="utf-8")


def resolve_config_path(cli_path: Path | None) -> Path:
    """Resolve config path by priority: CLI, env, user config dir, repo configs."""
    candidates: list[Path] = []
    if cli_path:
        p = Path(cli_path).expanduser()
        if p.exists():
            return p.resolve()
        candidates.append(p)
    env = os.environ.get("DEBUGBRIDGE_CONFIG")
    if env:
        p = Path(env).expanduser()
        if p.exists():
            return p.resolve()
        candidates.append(p)
    for p in [Path("~/.config/debugbridge/debugbridge.yml").expanduser(), Path("configs/debugbridge.yml")]:
        if p.exists():
            return p.resolve()
        candidates.append(p)
    # Fall back to the first candidate so a later save lands where the user asked
    return candidates[0]


def detect_browser_path() -> str:
    """Return the first well-known browser executable present on this host, or ''."""
    for candidate in BROWSER_CANDIDATES:
        if Path(candidate).is_file():
            return candidate
    for command in BROWSER_COMMANDS:
        found = shutil.which(command)
        if found:
            return found
    return ""


def normalize_key(key: str) -> str:
    """Map a camelCase or snake_case store key onto the model field name."""
    if key in CORE_KEYS:
        return CORE_KEYS[key]
    if key in CORE_KEYS.values():
        return key
    raise ConfigError(f"unknown configuration key: {key}")


class ConfigStore:
    """YAML-backed key/value store for the launcher settings.

    Reads never fail: a missing, unreadable or invalid file yields defaults.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()

    def exists(self) -> bool:
        return self.path.exists()

    def mtime(self) -> float | None:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None

    def load(self) -> BridgeConfig:
        try:
            return load_config(self.path)
        except FileNotFoundError:
            logger.info("No config at %s, using defaults", self.path)
        except (OSError, yaml.YAMLError, ConfigError) as exc:
            logger.warning("Config read failed (%s), using defaults: %s", self.path, exc)
        return BridgeConfig()

    def save(self, cfg: BridgeConfig) -> None:
        save_config(cfg, self.path)
        logger.info("Config saved to %s", self.path)

    def initialize(self) -> BridgeConfig:
        """Load the config, seeding and persisting it on first run."""
        if self.exists():
            return self.load()
        cfg = BridgeConfig(executable_path=detect_browser_path())
        if cfg.executable_path:
            logger.info("First run: detected browser at %s", cfg.executable_path)
        try:
            self.save(cfg)
        except OSError as exc:
            logger.warning("Could not write initial config %s: %s", self.path, exc)
        return cfg

    def get(self, key: str) -> Any:
        return getattr(self.load(), normalize_key(key))

    def set(self, key: str, value: Any) -> BridgeConfig:
        """Validate and persist one setting.

        An existing file that cannot be read or validated is left untouched
        and ConfigError is raised, so a broken file is never replaced by
        defaults.
        """
        field = normalize_key(key)
        if self.exists():
            try:
                current = load_config(self.path)
            except (OSError, yaml.YAMLError) as exc:
                raise ConfigError(f"{self.path}: {exc}") from exc
        else:
            current = BridgeConfig()
        data = current.model_dump()
        data[field] = value
        try:
            cfg = BridgeConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(str(exc)) from exc
        self.save(cfg)
        return cfg
