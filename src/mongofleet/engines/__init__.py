"""Operation engines driven by the orchestrator."""
from __future__ import annotations

from .backup import BackupEngine, BackupPhase
from .base import EngineContext
from .convergence import ConvergenceEngine, plan_actions
from .restore import RestoreEngine, RestorePhase

__all__ = [
    "BackupEngine",
    "BackupPhase",
    "ConvergenceEngine",
    "EngineContext",
    "RestoreEngine",
    "RestorePhase",
    "plan_actions",
]
