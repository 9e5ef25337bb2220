"""Data models for ensemble definitions, execution results and step outcomes."""

from .definition import STATE_TYPES, CachePolicy, EnsembleDefinition, FlowStep
from .execution import (
    AccessOperation,
    AccessRecord,
    ExecutionResult,
    ExecutionStatus,
    StepRecord,
    StepStatus,
)
from .result import Err, Ok, Result, is_result

__all__ = [
    "AccessOperation",
    "AccessRecord",
    "CachePolicy",
    "EnsembleDefinition",
    "Err",
    "ExecutionResult",
    "ExecutionStatus",
    "FlowStep",
    "Ok",
    "Result",
    "STATE_TYPES",
    "StepRecord",
    "StepStatus",
    "is_result",
]
