"""debugbridge Domain Models - Pydantic models for core entities."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SupervisorState(str, Enum):
    """Lifecycle of the supervised browser process."""

    IDLE = "idle"
    LAUNCHING = "launching"
    RUNNING = "running"
    TERMINATING = "terminating"


class ForwardRule(BaseModel):
    """One v4tov4 forwarding rule bound to a single interface address."""

    listen_address: str
    listen_port: int = Field(..., ge=1, le=65535)
    destination_address: str
    destination_port: int = Field(..., ge=1, le=65535)
    active: bool = False
    installed_at: datetime | None = None

    def describe(self) -> str:
        return (
            f"{self.listen_address}:{self.listen_port} -> "
            f"{self.destination_address}:{self.destination_port}"
        )

    def mark_installed(self) -> None:
        self.active = True
        self.installed_at = datetime.now(UTC)

    def mark_removed(self) -> None:
        self.active = False
        self.installed_at = None


class HealthResult(BaseModel):
    """Outcome of one debug-endpoint poll."""

    model_config = ConfigDict(frozen=True)

    responding: bool = False
    version: str = ""
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def unavailable(cls) -> HealthResult:
        return cls(responding=False, version="")


class StatusSnapshot(BaseModel):
    """Combined process / API / forwarding status. Recomputed, never mutated."""

    model_config = ConfigDict(frozen=True)

    process_running: bool = False
    api_responding: bool = False
    active_forward_count: int = Field(0, ge=0)
    version: str = ""
    line1: str = ""
    line2: str = ""
    line3: str = ""

    @property
    def lines(self) -> list[str]:
        """Non-empty status lines, in display order."""
        return [line for line in (self.line1, self.line2, self.line3) if line]

    @property
    def tooltip(self) -> str:
        return "\n".join(self.lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "process_running": self.process_running,
            "api_responding": self.api_responding,
            "active_forward_count": self.active_forward_count,
            "version": self.version,
            "lines": [self.line1, self.line2, self.line3],
        }
