"""Flow execution engine: stage planning, step execution and orchestration."""

from .core import ExecutionContext, FlowOrchestrator
from .executors import StepContext, StepRunner, is_truthy
from .plan import ExecutionPlan, PlannedStep, Stage

__all__ = [
    "ExecutionContext",
    "ExecutionPlan",
    "FlowOrchestrator",
    "PlannedStep",
    "Stage",
    "StepContext",
    "StepRunner",
    "is_truthy",
]
