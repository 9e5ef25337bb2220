"""
Step execution.

This module contains the per-step algorithm used by the flow orchestrator:
guard evaluation, config resolution, cache lookup, dispatch, state write,
cache store and fallback handling. A result is cached only after its state
write succeeded, together with the writes the member staged, so a cache hit
leaves the same state as a dispatch. A step never raises engine errors out of
StepRunner.run(); the outcome is reported through its StepRecord and the
orchestrator decides whether the run continues.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

from ...cache import ResultCache
from ...cache.result_cache import MISS
from ...errors import (
    RECOVERABLE_STEP_ERRORS,
    EnsembleError,
    MemberExecutionError,
    UnknownMemberType,
)
from ...models.definition import FlowStep
from ...models.execution import StepRecord, StepStatus
from ..dispatcher import MemberDispatcher
from ..resolver import SCOPE_ENV, SCOPE_INPUT, SCOPE_STATE, SCOPE_STEPS, ReferenceResolver
from ..state_manager import StateView
from .plan import PlannedStep

if TYPE_CHECKING:
    import asyncio

    from .core import ExecutionContext

logger = logging.getLogger(__name__)

FALSY_STRINGS = frozenset({"", "false", "0", "no", "off"})


def is_truthy(value: Any) -> bool:
    """Guard truthiness: common false spellings in strings, Python truthiness otherwise."""
    if isinstance(value, str):
        return value.strip().lower() not in FALSY_STRINGS
    return bool(value)


@dataclass
class StepContext:
    """What a member sees of the running ensemble.

    Attributes:
        step_id: Identity of the running step
        member: Member type tag
        input: Copy of the run input
        env: Environment bindings
        state: Read view limited to the step's ``use`` keys
        config: Resolved step config
        cache: Result cache shared by the orchestrator, if any
        cancel_event: Run cancellation signal
    """

    step_id: str
    member: str
    input: Dict[str, Any]
    env: Dict[str, Any]
    state: StateView
    config: Any = None
    cache: Optional[ResultCache] = None
    cancel_event: Optional["asyncio.Event"] = None
    _staged: Dict[str, Any] = field(default_factory=dict, repr=False)

    def set_state(self, updates: Optional[Mapping] = None, **values: Any) -> None:
        """Stage explicit state writes, applied after the member returns.

        Keys must be in the step's ``set`` list; violations surface when the
        writes are applied.
        """
        if updates:
            self._staged.update(updates)
        self._staged.update(values)

    @property
    def staged_updates(self) -> Dict[str, Any]:
        return dict(self._staged)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


class StepRunner:
    """Runs single flow steps against an execution context."""

    def __init__(
        self,
        dispatcher: MemberDispatcher,
        resolver: Optional[ReferenceResolver] = None,
        cache: Optional[ResultCache] = None,
    ):
        """Initialize step runner.

        Args:
            dispatcher: Member registry used for dispatch
            resolver: Reference resolver for configs and guards
            cache: Result cache; None disables caching entirely
        """
        self.dispatcher = dispatcher
        self.resolver = resolver or ReferenceResolver()
        self.cache = cache

    async def run(
        self, planned: PlannedStep, context: "ExecutionContext", view: StateView
    ) -> StepRecord:
        """Execute one step.

        Args:
            planned: Step with its id and position
            context: Execution context of the run
            view: Read view created for this step

        Returns:
            StepRecord; status FAILED means the run must stop
        """
        step = planned.step
        step_id = planned.step_id
        record = StepRecord(step_id=step_id, member=step.member)
        scopes = {
            SCOPE_INPUT: context.input,
            SCOPE_STATE: view,
            SCOPE_ENV: context.env,
            SCOPE_STEPS: context.outputs,
        }

        try:
            if step.has_condition and not self.evaluate_guard(step.condition, scopes):
                logger.info(f"Skipping step {step_id}: guard is false")
                record.complete(StepStatus.SKIPPED)
                return record

            logger.info(f"Executing step: {step_id} ({step.member})")
            resolved = self.resolver.resolve_with(step.config, scopes)
            step_context = StepContext(
                step_id=step_id,
                member=step.member,
                input=copy.deepcopy(context.input),
                env=dict(context.env),
                state=view,
                config=resolved,
                cache=self.cache,
                cancel_event=context.cancel_event,
            )
            key = self._cache_key(step, resolved)
            found = await self.cache.lookup(key) if key is not None else MISS
            if found.hit:
                logger.info(f"Step {step_id} served from cache")
                output, staged = found.value, found.state_updates
                record.cached = True
            else:
                output = await self._dispatch(step, resolved, step_context)
                staged = step_context.staged_updates

            output = self._commit(planned, context, output, staged)
            if key is not None and not record.cached:
                await self.cache.store(
                    key,
                    output,
                    ttl_seconds=step.cache.ttl,
                    tags=step.cache.tags,
                    state_updates=staged,
                )
            record.complete(StepStatus.COMPLETED, output=output)

        except UnknownMemberType as e:
            logger.error(f"Step {step_id} failed: {e}")
            record.complete(StepStatus.FAILED, error=e)

        except RECOVERABLE_STEP_ERRORS as e:
            if not step.has_fallback:
                logger.error(f"Step {step_id} failed: {e}")
                record.complete(StepStatus.FAILED, error=e)
            else:
                self._apply_fallback(planned, context, record, e)

        return record

    def evaluate_guard(self, expression: Any, scopes: Mapping) -> bool:
        """Evaluate an ``if`` guard; a leading ``!`` negates the resolved value."""
        negate = False
        if isinstance(expression, str):
            text = expression.strip()
            if text.startswith("!"):
                negate = True
                text = text[1:].strip()
            value = self.resolver.resolve_with(text, scopes)
        else:
            value = self.resolver.resolve_with(expression, scopes)
        result = is_truthy(value)
        return not result if negate else result

    @staticmethod
    def state_updates(step: FlowStep, output: Any) -> Dict[str, Any]:
        """Project an output onto the step's ``set`` keys it contains."""
        if not isinstance(output, Mapping):
            return {}
        return {key: output[key] for key in step.set if key in output}

    def _cache_key(self, step: FlowStep, resolved: Any) -> Optional[str]:
        """Cache key for the step, or None when the step does not use the cache."""
        if self.cache is None or step.cache is None or step.cache.bypass:
            return None
        return self.cache.key(step.member, resolved)

    async def _dispatch(self, step: FlowStep, resolved: Any, step_context: StepContext) -> Any:
        result = await self.dispatcher.dispatch(step.member, resolved, step_context)
        if result.is_err:
            raise result.error
        return result.value

    @staticmethod
    def _commit(
        planned: PlannedStep,
        context: "ExecutionContext",
        output: Any,
        staged: Mapping,
    ) -> Any:
        """Apply the step's state writes and record its output.

        Returns the recorded copy of the output. Output that cannot be copied
        or projected fails the step as a MemberExecutionError before any
        state is written.
        """
        step = planned.step
        try:
            output = copy.deepcopy(output)
            updates = StepRunner.state_updates(step, output)
            updates.update(staged)
            context.state.apply_write(planned.step_id, step.set, updates)
        except EnsembleError:
            raise
        except Exception as e:
            raise MemberExecutionError(step.member, e) from e

        context.record_output(planned.step_id, output)
        return output

    def _apply_fallback(
        self,
        planned: PlannedStep,
        context: "ExecutionContext",
        record: StepRecord,
        error: EnsembleError,
    ) -> None:
        step = planned.step
        output = copy.deepcopy(step.fallback)
        logger.warning(f"Step {planned.step_id} failed, using fallback output: {error}")
        try:
            context.state.apply_write(planned.step_id, step.set, self.state_updates(step, output))
        except EnsembleError as write_error:
            logger.error(f"Fallback of step {planned.step_id} could not be applied: {write_error}")
            record.complete(StepStatus.FAILED, error=write_error)
            return
        context.record_output(planned.step_id, output)
        record.complete(StepStatus.FALLBACK, output=output, error=error)
