"""Declarative ensemble execution engine."""

__version__ = "0.1.0"

from .cache import InMemoryStorage, NoOpStorage, ResultCache
from .config import EngineConfig, get_engine_config
from .errors import (
    EnsembleError,
    ExecutionCancelled,
    InterpolationError,
    MemberExecutionError,
    SchemaValidationError,
    StateAccessViolation,
    UnknownMemberType,
)
from .models import EnsembleDefinition, Err, ExecutionResult, ExecutionStatus, Ok, StepStatus
from .orchestration import (
    BaseMember,
    DefinitionLoader,
    FlowOrchestrator,
    FunctionMember,
    MemberDispatcher,
    ReferenceResolver,
    StateManager,
)

__all__ = [
    "BaseMember",
    "DefinitionLoader",
    "EngineConfig",
    "EnsembleDefinition",
    "EnsembleError",
    "Err",
    "ExecutionCancelled",
    "ExecutionResult",
    "ExecutionStatus",
    "FlowOrchestrator",
    "FunctionMember",
    "InMemoryStorage",
    "InterpolationError",
    "MemberDispatcher",
    "MemberExecutionError",
    "NoOpStorage",
    "Ok",
    "ReferenceResolver",
    "ResultCache",
    "SchemaValidationError",
    "StateAccessViolation",
    "StateManager",
    "StepStatus",
    "UnknownMemberType",
    "get_engine_config",
]
