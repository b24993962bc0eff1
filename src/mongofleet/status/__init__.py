"""Maintenance/status report: read-only per-node checks."""
from __future__ import annotations

from .engine import StatusEngine
from .models import CheckDefinition, CheckResult, CheckStatus
from .probes import collect_checks

__all__ = ["CheckDefinition", "CheckResult", "CheckStatus", "StatusEngine", "collect_checks"]
