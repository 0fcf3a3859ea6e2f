"""Persistence and status reporting."""

from .state import PersistedState, PidFile, StateStore
from .status import ServiceStatus

__all__ = ["PersistedState", "PidFile", "ServiceStatus", "StateStore"]
