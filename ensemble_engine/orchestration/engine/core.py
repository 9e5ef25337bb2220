"""
Core flow orchestration engine.

This module contains the orchestrator that runs an ensemble definition stage
by stage, plus the per-run execution context, lifecycle callbacks and
metrics collection.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional

from ...cache import ResultCache
from ...config.engine import EngineConfig, get_engine_config
from ...errors import EnsembleError, ExecutionCancelled
from ...models.definition import EnsembleDefinition
from ...models.execution import ExecutionResult, ExecutionStatus, StepRecord, StepStatus
from ..dispatcher import MemberDispatcher
from ..resolver import ReferenceResolver
from ..state_manager import StateManager
from .executors import StepRunner
from .plan import ExecutionPlan, Stage

logger = logging.getLogger(__name__)

EVENTS = ("started", "step_completed", "completed", "failed")


@dataclass
class ExecutionContext:
    """Everything one run needs; created per run and never shared between runs."""

    ensemble: str
    input: Dict[str, Any]
    env: Dict[str, Any]
    state: StateManager
    cache: Optional[ResultCache] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    outputs: Dict[str, Any] = field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.PENDING
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Request cancellation; observed before the next stage starts."""
        self.cancel_event.set()

    def record_output(self, step_id: str, output: Any) -> None:
        self.outputs[step_id] = copy.deepcopy(output)

    def get_duration(self) -> float:
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()


class FlowOrchestrator:
    """Runs ensemble definitions.

    Example:
        dispatcher = MemberDispatcher()
        dispatcher.register("echo", lambda data, ctx: data)
        orchestrator = FlowOrchestrator(dispatcher)
        result = await orchestrator.run(definition, {"user": "ada"})
    """

    def __init__(
        self,
        dispatcher: MemberDispatcher,
        cache: Optional[ResultCache] = None,
        config: Optional[EngineConfig] = None,
        resolver: Optional[ReferenceResolver] = None,
        max_parallel: Optional[int] = None,
        enable_metrics: bool = True,
    ):
        """Initialize flow orchestrator.

        Args:
            dispatcher: Member registry
            cache: Result cache shared across runs (built from config when omitted)
            config: Engine settings
            resolver: Reference resolver
            max_parallel: Upper bound on concurrently running group members
            enable_metrics: Enable metrics collection
        """
        self.config = config or get_engine_config()
        self.dispatcher = dispatcher
        self.cache = cache if cache is not None else ResultCache.from_config(self.config)
        self.resolver = resolver or ReferenceResolver()
        self.max_parallel = max_parallel or self.config.max_parallel
        self.enable_metrics = enable_metrics
        self.runner = StepRunner(dispatcher, self.resolver, self.cache)

        self._callbacks: Dict[str, List[Callable]] = {}
        self._lock = Lock()
        self._metrics = {
            "runs_started": 0,
            "runs_completed": 0,
            "runs_failed": 0,
            "steps_executed": 0,
            "steps_failed": 0,
            "steps_skipped": 0,
            "steps_fallback": 0,
            "cache_hits": 0,
            "total_duration": 0.0,
        }

    async def run(
        self,
        definition: EnsembleDefinition,
        input: Optional[Mapping[str, Any]] = None,
        env: Optional[Mapping[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:
        """Execute an ensemble.

        Args:
            definition: Validated definition (see DefinitionLoader)
            input: Run input, available as ``${input...}``
            env: Environment bindings; defaults to the configured prefix scan
            cancel_event: External cancellation signal

        Returns:
            ExecutionResult; runtime failures are reported, not raised
        """
        plan = ExecutionPlan.compile(definition)
        context = ExecutionContext(
            ensemble=definition.name,
            input=copy.deepcopy(dict(input or {})),
            env=dict(env) if env is not None else self.config.environment_bindings(),
            state=StateManager.from_definition(definition),
            cache=self.cache,
            cancel_event=cancel_event or asyncio.Event(),
        )
        records: List[StepRecord] = []
        error: Optional[EnsembleError] = None
        output: Any = None

        self._increment("runs_started")
        context.status = ExecutionStatus.RUNNING
        self._notify_callbacks(definition.name, "started", context)
        logger.info(f"Running ensemble '{definition.name}' ({len(plan)} stages)")

        try:
            for stage in plan.ordered_stages():
                if context.cancelled:
                    raise ExecutionCancelled(definition.name, stage.index)

                stage_records = await self._run_stage(stage, context)
                records.extend(stage_records)
                for record in stage_records:
                    self._record_step_metrics(record)
                    self._notify_callbacks(definition.name, "step_completed", record)

                failed = next((r for r in stage_records if r.status == StepStatus.FAILED), None)
                if failed is not None:
                    raise failed.error

            output = self._build_output(definition, context)
            context.status = ExecutionStatus.COMPLETED

        except EnsembleError as e:
            logger.error(f"Ensemble '{definition.name}' failed: {e}")
            context.status = ExecutionStatus.FAILED
            error = e
            output = None
        finally:
            context.end_time = datetime.now()

        result = self._create_result(context, output, error, records)
        self._finalize(context, result)
        return result

    async def _run_stage(self, stage: Stage, context: ExecutionContext) -> List[StepRecord]:
        # All views of a stage are taken before any member starts
        views = {
            planned.step_id: context.state.read_view(planned.step_id, planned.step.use)
            for planned in stage.steps
        }

        if not stage.is_parallel:
            planned = stage.steps[0]
            return [await self.runner.run(planned, context, views[planned.step_id])]

        logger.debug(f"Running parallel group '{stage.group}': {', '.join(stage.step_ids)}")
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def bounded(planned):
            async with semaphore:
                return await self.runner.run(planned, context, views[planned.step_id])

        return list(await asyncio.gather(*(bounded(planned) for planned in stage.steps)))

    def _build_output(self, definition: EnsembleDefinition, context: ExecutionContext) -> Any:
        if not definition.has_output:
            return copy.deepcopy(context.outputs)
        return self.resolver.resolve(
            definition.output,
            input=context.input,
            state=context.state.snapshot(),
            env=context.env,
            steps=context.outputs,
        )

    def _create_result(
        self,
        context: ExecutionContext,
        output: Any,
        error: Optional[EnsembleError],
        records: List[StepRecord],
    ) -> ExecutionResult:
        return ExecutionResult(
            ensemble=context.ensemble,
            status=context.status,
            output=output,
            state_snapshot=context.state.snapshot(),
            access_log=context.state.access_log,
            error=error,
            steps=records,
            cache_hits=sum(1 for record in records if record.cached),
            duration=context.get_duration(),
        )

    def _finalize(self, context: ExecutionContext, result: ExecutionResult) -> None:
        if self.enable_metrics:
            with self._lock:
                if result.succeeded:
                    self._metrics["runs_completed"] += 1
                else:
                    self._metrics["runs_failed"] += 1
                self._metrics["total_duration"] += result.duration

        event = "completed" if result.succeeded else "failed"
        self._notify_callbacks(context.ensemble, event, result)

        logger.info(
            f"Ensemble '{context.ensemble}' finished with status {result.status.value} "
            f"in {result.duration:.2f}s"
        )

    def _record_step_metrics(self, record: StepRecord) -> None:
        if not self.enable_metrics:
            return
        with self._lock:
            if record.status == StepStatus.SKIPPED:
                self._metrics["steps_skipped"] += 1
                return
            self._metrics["steps_executed"] += 1
            if record.status == StepStatus.FAILED:
                self._metrics["steps_failed"] += 1
            elif record.status == StepStatus.FALLBACK:
                self._metrics["steps_fallback"] += 1
            if record.cached:
                self._metrics["cache_hits"] += 1

    def _increment(self, name: str) -> None:
        if self.enable_metrics:
            with self._lock:
                self._metrics[name] += 1

    def add_callback(self, event: str, callback: Callable) -> None:
        """Add a lifecycle callback.

        Args:
            event: One of started, step_completed, completed, failed
            callback: Called as ``callback(ensemble_name, event, payload)``
        """
        if event not in EVENTS:
            raise ValueError(f"Unknown event '{event}' (expected one of {', '.join(EVENTS)})")
        self._callbacks.setdefault(event, []).append(callback)

    def _notify_callbacks(self, ensemble: str, event: str, payload: Any) -> None:
        for callback in self._callbacks.get(event, []):
            try:
                callback(ensemble, event, payload)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    def get_metrics(self) -> Dict[str, Any]:
        """Get orchestrator metrics."""
        with self._lock:
            return self._metrics.copy()
