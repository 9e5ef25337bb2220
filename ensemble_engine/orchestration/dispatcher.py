"""
Member dispatch - routes a step to the implementation registered for its type tag.

This module provides the dispatch layer between the orchestrator and concrete
step types ("members"):
1. Maps a member type tag to an implementation via an explicit registry
2. Validates the resolved input against the member's config model, if any
3. Invokes the member (sync members run in the default thread executor)
4. Returns a Result: Ok(output) or Err(error)

Error handling contract:
- Unknown tags become Err(UnknownMemberType)
- Anything a member raises, or an Err it returns, becomes
  Err(MemberExecutionError(tag, cause))
- StateAccessViolation raised through a member's read view is returned as is
- asyncio.CancelledError is never caught
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from ..errors import MemberExecutionError, StateAccessViolation, UnknownMemberType
from ..models.definition import MEMBER_TAG_PATTERN, parse_member_reference
from ..models.result import Err, Ok, Result, is_result

logger = logging.getLogger(__name__)


class BaseMember(ABC):
    """Abstract base class for step type implementations.

    Subclasses implement ``execute`` either as a plain method or as a
    coroutine. Declaring ``config_model`` makes the dispatcher validate the
    resolved input and pass the parsed model instead of the raw mapping.
    """

    config_model: Optional[Type[BaseModel]] = None

    @abstractmethod
    def execute(self, resolved_input: Any, context: Any) -> Any:
        """Run the member.

        Args:
            resolved_input: Step config with every reference resolved
            context: StepContext for the running step

        Returns:
            Output value, or an Ok/Err result
        """
        pass


class FunctionMember(BaseMember):
    """Adapts a plain function ``fn(resolved_input, context)`` to the member contract."""

    def __init__(
        self,
        func: Callable[..., Any],
        config_model: Optional[Type[BaseModel]] = None,
        name: Optional[str] = None,
    ):
        self.func = func
        self.config_model = config_model
        self.name = name or getattr(func, "__name__", repr(func))

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.func)

    def execute(self, resolved_input: Any, context: Any) -> Any:
        return self.func(resolved_input, context)

    def __repr__(self) -> str:
        return f"FunctionMember({self.name})"


MemberLike = Union[BaseMember, Callable[..., Any], Any]


def _is_async_member(member: Any) -> bool:
    if isinstance(member, FunctionMember):
        return member.is_async
    return inspect.iscoroutinefunction(member.execute)


class MemberDispatcher:
    """Registry of member implementations keyed by type tag.

    Example:
        dispatcher = MemberDispatcher()
        dispatcher.register("echo", lambda data, ctx: data)
        result = await dispatcher.dispatch("echo", {"x": 1}, context)
    """

    def __init__(self, members: Optional[Dict[str, MemberLike]] = None):
        self._members: Dict[str, Any] = {}
        for tag, member in (members or {}).items():
            self.register(tag, member)

    def register(self, tag: str, member: MemberLike, replace: bool = False) -> None:
        """Register a member implementation under a type tag.

        Args:
            tag: Member type tag (``name`` or ``name@version``)
            member: Object with an ``execute`` method, or a plain callable
            replace: Allow overwriting an existing registration

        Raises:
            ValueError: On malformed tags, duplicate tags or invalid members
        """
        if not MEMBER_TAG_PATTERN.match(tag):
            raise ValueError(f"Malformed member type tag: {tag!r}")
        if tag in self._members and not replace:
            raise ValueError(f"Member already registered: {tag}")

        if not hasattr(member, "execute") and callable(member):
            member = FunctionMember(member, name=tag)

        execute = getattr(member, "execute", None)
        if not callable(execute):
            raise ValueError(f"Member for '{tag}' must provide a callable execute()")

        config_model = getattr(member, "config_model", None)
        if config_model is not None and not (
            isinstance(config_model, type) and issubclass(config_model, BaseModel)
        ):
            raise ValueError(f"config_model of member '{tag}' must be a pydantic model class")

        self._members[tag] = member
        logger.debug(f"Registered member: {tag}")

    def unregister(self, tag: str) -> bool:
        return self._members.pop(tag, None) is not None

    def has_member(self, tag: str) -> bool:
        return self.resolve_member(tag) is not None

    def registered_members(self) -> List[str]:
        return sorted(self._members)

    def resolve_member(self, tag: str) -> Optional[Any]:
        """Find the implementation for a tag: exact match first, then the bare name."""
        member = self._members.get(tag)
        if member is not None:
            return member
        try:
            name, version = parse_member_reference(tag)
        except ValueError:
            return None
        if version is not None:
            return self._members.get(name)
        return None

    async def dispatch(self, tag: str, resolved_input: Any, context: Any) -> Result:
        """Invoke the member registered for a tag.

        Args:
            tag: Member type tag
            resolved_input: Resolved step config
            context: StepContext handed to the member

        Returns:
            Ok(output) on success, Err(error) otherwise
        """
        member = self.resolve_member(tag)
        if member is None:
            logger.error(f"No member registered for type '{tag}'")
            return Err(UnknownMemberType(tag))

        try:
            payload = self._validate_input(member, resolved_input)
            output = await self._invoke(member, payload, context)
        except StateAccessViolation as e:
            return Err(e)
        except MemberExecutionError as e:
            return Err(e)
        except Exception as e:
            logger.debug(f"Member '{tag}' raised {type(e).__name__}: {e}")
            return Err(MemberExecutionError(tag, e))

        if is_result(output):
            if output.is_ok:
                return Ok(output.value)
            return Err(self._normalize_error(tag, output.error))
        return Ok(output)

    @staticmethod
    def _validate_input(member: Any, resolved_input: Any) -> Any:
        config_model = getattr(member, "config_model", None)
        if config_model is None:
            return resolved_input
        try:
            return config_model.model_validate(resolved_input)
        except ValidationError as e:
            raise ValueError(f"invalid member config: {e}") from e

    @staticmethod
    async def _invoke(member: Any, payload: Any, context: Any) -> Any:
        if _is_async_member(member):
            result = member.execute(payload, context)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(
                None, functools.partial(member.execute, payload, context)
            )
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def _normalize_error(tag: str, error: Any) -> Exception:
        if isinstance(error, (MemberExecutionError, StateAccessViolation)):
            return error
        if isinstance(error, BaseException):
            return MemberExecutionError(tag, error)
        return MemberExecutionError(tag, RuntimeError(str(error)))
