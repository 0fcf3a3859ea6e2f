"""Durable snapshot of connectivity and per-service route activation.

The snapshot is a cache for status reporting across restarts, not a
source of truth: nothing is reinstalled from it on startup.
"""

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import psutil

from .. import __version__
from ..exceptions import PersistenceFailed
from ..utils.logging import get_logger

logger = get_logger("service.state")


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class PersistedState:
    """Last known connectivity and route activation."""
    vpn_connected: bool = False
    routes_active: bool = False
    active_services: dict[str, bool] = field(default_factory=dict)
    last_gateway: str = ""
    last_check: Optional[datetime] = None
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = __version__

    def to_dict(self) -> dict:
        return {
            "vpn_connected": self.vpn_connected,
            "routes_active": self.routes_active,
            "active_services": dict(self.active_services),
            "last_gateway": self.last_gateway,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "start_time": self.start_time.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PersistedState":
        state = cls()
        state.vpn_connected = bool(data.get("vpn_connected", False))
        state.routes_active = bool(data.get("routes_active", False))
        state.active_services = {str(k): bool(v) for k, v in (data.get("active_services") or {}).items()}
        state.last_gateway = data.get("last_gateway") or ""
        state.last_check = _parse_time(data.get("last_check"))
        state.start_time = _parse_time(data.get("start_time")) or state.start_time
        state.version = data.get("version") or __version__
        return state


class StateStore:
    """Reads and atomically writes the JSON state file."""

    def __init__(self, path: str | Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> PersistedState:
        """Load the snapshot, or defaults when no file exists yet.

        Raises PersistenceFailed if the file cannot be read or parsed.
        """
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("state_file_missing", path=str(self._path))
            return PersistedState()
        except OSError as e:
            raise PersistenceFailed(f"failed to read state file: {e}", str(self._path)) from e

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("state file is not a JSON object")
            state = PersistedState.from_dict(data)
        except (ValueError, TypeError, AttributeError) as e:
            raise PersistenceFailed(f"failed to parse state file: {e}", str(self._path)) from e

        logger.debug("state_loaded", path=str(self._path), routes_active=state.routes_active)
        return state

    def save(self, state: PersistedState) -> None:
        """Write the snapshot via a temp file in the same directory and rename it into place."""
        payload = json.dumps(state.to_dict(), indent=2)
        tmp_path = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise PersistenceFailed(f"failed to write state file: {e}", str(self._path)) from e

        logger.debug("state_saved", path=str(self._path))

    def clear(self) -> None:
        """Remove the state file if present."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersistenceFailed(f"failed to remove state file: {e}", str(self._path)) from e


class PidFile:
    """PID file marking a live daemon, kept next to the state file."""

    def __init__(self, path: str | Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> Optional[int]:
        """PID recorded in the file, or None if absent or unreadable."""
        try:
            return int(self._path.read_text(encoding="utf-8").strip())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("pid_file_unreadable", path=str(self._path), error=str(e))
            return None

    def write(self, pid: Optional[int] = None) -> None:
        pid = os.getpid() if pid is None else pid
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(f"{pid}\n", encoding="utf-8")
        except OSError as e:
            raise PersistenceFailed(f"failed to write pid file: {e}", str(self._path)) from e
        logger.debug("pid_file_written", path=str(self._path), pid=pid)

    def is_process_running(self) -> bool:
        """True if the recorded PID belongs to a live process."""
        pid = self.read()
        return pid is not None and psutil.pid_exists(pid)

    def remove(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersistenceFailed(f"failed to remove pid file: {e}", str(self._path)) from e
