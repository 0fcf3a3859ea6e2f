"""Lifecycle contract shared by the daemon's long-running modules."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class BaseModule(ABC):
    """A component with an async start/stop lifecycle and health reporting.

    Subclasses flip ``running`` and ``health_status`` from start() and
    stop() (via _mark_started/_mark_stopped) and call heartbeat() each
    time they finish a unit of work.
    """

    def __init__(self, name: str):
        self.name = name
        self.running = False
        self.health_status = "initialized"
        self.started_at: Optional[datetime] = None
        self.last_heartbeat: Optional[datetime] = None

    @abstractmethod
    async def start(self) -> None:
        """Begin background work; must not block until it ends."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Finish in-flight work and release what the module owns."""
        ...

    @abstractmethod
    async def health_check(self) -> dict:
        """Return ``{"status": str, "details": dict}``."""
        ...

    def _mark_started(self) -> None:
        self.running = True
        self.health_status = "running"
        self.started_at = datetime.now(timezone.utc)

    def _mark_stopped(self) -> None:
        self.running = False
        self.health_status = "stopped"

    def heartbeat(self) -> None:
        self.last_heartbeat = datetime.now(timezone.utc)

    def heartbeat_age(self) -> Optional[float]:
        """Seconds since the last heartbeat, or None before the first one."""
        if self.last_heartbeat is None:
            return None
        return (datetime.now(timezone.utc) - self.last_heartbeat).total_seconds()

    def uptime(self) -> timedelta:
        if self.started_at is None or not self.running:
            return timedelta(0)
        return datetime.now(timezone.utc) - self.started_at

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "running": self.running,
            "health_status": self.health_status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "uptime_seconds": int(self.uptime().total_seconds()),
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
        }
