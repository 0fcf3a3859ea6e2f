"""Long-running daemon modules."""

from .base_module import BaseModule
from .reconciler import LinkState, ReconciliationLoop

__all__ = ["BaseModule", "LinkState", "ReconciliationLoop"]
