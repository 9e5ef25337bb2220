"""Ensemble loading, resolution, state scoping, dispatch and orchestration."""

from .dispatcher import BaseMember, FunctionMember, MemberDispatcher
from .engine import ExecutionContext, ExecutionPlan, FlowOrchestrator, StepContext
from .loader import DefinitionLoader, dump_definition, load_definition, parse_member_reference
from .resolver import ReferenceResolver, find_references, resolve
from .state_manager import StateManager, StateView

__all__ = [
    "BaseMember",
    "DefinitionLoader",
    "ExecutionContext",
    "ExecutionPlan",
    "FlowOrchestrator",
    "FunctionMember",
    "MemberDispatcher",
    "ReferenceResolver",
    "StateManager",
    "StateView",
    "StepContext",
    "dump_definition",
    "find_references",
    "load_definition",
    "parse_member_reference",
    "resolve",
]
