"""Execution-time data models: statuses, access records, step records and results."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import EnsembleError


class ExecutionStatus(Enum):
    """Ensemble run status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(Enum):
    """Individual step outcome."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    FALLBACK = "fallback"


class AccessOperation(Enum):
    """State access kind recorded in the access log."""

    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class AccessRecord:
    """One entry of the state access log."""

    step: str
    key: str
    operation: AccessOperation
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "step": self.step,
            "key": self.key,
            "operation": self.operation.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class StepRecord:
    """Metrics and outcome for one step of a run."""

    step_id: str
    member: str
    status: StepStatus = StepStatus.PENDING
    cached: bool = False
    output: Any = None
    error: Optional[EnsembleError] = None
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    duration: Optional[float] = None

    def complete(
        self,
        status: StepStatus,
        output: Any = None,
        error: Optional[EnsembleError] = None,
    ) -> None:
        """Mark step as finished with the given status."""
        self.end_time = datetime.now()
        self.duration = (self.end_time - self.start_time).total_seconds()
        self.status = status
        self.output = output
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "member": self.member,
            "status": self.status.value,
            "cached": self.cached,
            "duration": self.duration,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class ExecutionResult:
    """Final result of one ensemble run.

    A failed run still carries the partial state snapshot and the access log
    so callers can see where execution stopped.
    """

    ensemble: str
    status: ExecutionStatus
    output: Any = None
    state_snapshot: Dict[str, Any] = field(default_factory=dict)
    access_log: List[AccessRecord] = field(default_factory=list)
    error: Optional[EnsembleError] = None
    steps: List[StepRecord] = field(default_factory=list)
    cache_hits: int = 0
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    def step(self, step_id: str) -> Optional[StepRecord]:
        """Get the record of a step by id."""
        return next((record for record in self.steps if record.step_id == step_id), None)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ensemble": self.ensemble,
            "status": self.status.value,
            "output": self.output,
            "state_snapshot": self.state_snapshot,
            "access_log": [record.to_dict() for record in self.access_log],
            "error": self.error.to_dict() if self.error else None,
            "steps": [record.to_dict() for record in self.steps],
            "cache_hits": self.cache_hits,
            "duration": self.duration,
        }
