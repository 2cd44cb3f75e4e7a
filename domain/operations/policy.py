from __future__ import annotations
from dataclasses import dataclass

@dataclass(frozen=True)
class OperationTimeoutPolicy:
    max_duration_seconds: float = 86400.0
    abort_timeout_seconds: float = 300.0
