"""End-to-end ensemble execution tests.

This module tests:
- Declared step order and state flow between steps
- Parallel groups joining before the next stage
- Guards, fallbacks and failure handling
- Result caching across runs, including TTL expiry
- Output mapping, cancellation, callbacks and metrics
"""
from __future__ import annotations

import asyncio
import threading

import pytest

from ensemble_engine.cache import ResultCache
from ensemble_engine.config import EngineConfig
from ensemble_engine.errors import (
    ExecutionCancelled,
    InterpolationError,
    MemberExecutionError,
    StateAccessViolation,
    UnknownMemberType,
)
from ensemble_engine.models.execution import ExecutionStatus, StepStatus
from ensemble_engine.orchestration import FlowOrchestrator


class TestSequentialFlows:
    """Steps run in declared order and hand data through state."""

    @pytest.mark.asyncio
    async def test_declared_order_and_state_flow(self, loader, orchestrator, call_log):
        definition = loader.load(
            {
                "name": "greeting",
                "stateSchema": {"text": "string"},
                "flow": [
                    {"member": "echo", "config": {"text": "hello ${input.name}"}, "set": ["text"]},
                    {"member": "upper", "config": {"text": "${state.text}"}, "use": ["text"], "set": ["text"]},
                ],
                "output": {"greeting": "${state.text}"},
            }
        )

        result = await orchestrator.run(definition, {"name": "ada"})

        assert result.status == ExecutionStatus.COMPLETED
        assert result.output == {"greeting": "HELLO ADA"}
        assert result.state_snapshot == {"text": "HELLO ADA"}
        assert call_log.tags() == ["echo", "upper"]
        assert [record.step_id for record in result.steps] == ["echo", "upper"]

    @pytest.mark.asyncio
    async def test_single_token_keeps_native_types(self, loader, orchestrator, call_log):
        definition = loader.load(
            {
                "name": "typed",
                "flow": [{"member": "echo", "config": {"n": "${input.n}", "tags": "${input.tags}"}}],
            }
        )

        await orchestrator.run(definition, {"n": 5, "tags": ["a", "b"]})

        assert call_log.calls[0]["input"] == {"n": 5, "tags": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_default_output_maps_step_ids(self, loader, orchestrator):
        definition = loader.load(
            {
                "name": "outputs",
                "flow": [
                    {"member": "counter", "id": "first", "config": {"value": 1}},
                    {"member": "counter", "id": "second", "config": {"value": "${steps.first.count}"}},
                ],
            }
        )

        result = await orchestrator.run(definition)

        assert result.output == {"first": {"count": 2}, "second": {"count": 3}}

    @pytest.mark.asyncio
    async def test_env_bindings(self, loader, orchestrator, call_log):
        definition = loader.load(
            {"name": "env", "flow": [{"member": "echo", "config": {"url": "${env.API_BASE}/v1"}}]}
        )

        await orchestrator.run(definition, env={"API_BASE": "https://api.test"})

        assert call_log.calls[0]["input"] == {"url": "https://api.test/v1"}

    @pytest.mark.asyncio
    async def test_env_from_configured_prefix(self, loader, dispatcher, result_cache, call_log, monkeypatch):
        monkeypatch.setenv("ENSEMBLE_ENV_REGION", "eu-west")
        orchestrator = FlowOrchestrator(dispatcher, cache=result_cache, config=EngineConfig())
        definition = loader.load(
            {"name": "env", "flow": [{"member": "echo", "config": {"region": "${env.REGION}"}}]}
        )

        await orchestrator.run(definition)

        assert call_log.calls[0]["input"] == {"region": "eu-west"}

    @pytest.mark.asyncio
    async def test_access_log_records_reads_and_writes(self, loader, orchestrator):
        definition = loader.load(
            {
                "name": "audit",
                "stateSchema": {"text": "string", "unused": "any"},
                "flow": [
                    {"member": "echo", "config": {"text": "x"}, "set": ["text"]},
                    {"member": "upper", "config": {"text": "${state.text}"}, "use": ["text"]},
                ],
            }
        )

        result = await orchestrator.run(definition)

        entries = [(r.step, r.key, r.operation.value) for r in result.access_log]
        assert entries == [("echo", "text", "write"), ("upper", "text", "read")]


class TestParallelGroups:
    """Members of a group run concurrently and join before the next stage."""

    @pytest.mark.asyncio
    async def test_group_members_overlap_and_join(self, loader, dispatcher):
        events = []

        def make_member(name):
            async def member(data, ctx):
                events.append(f"{name}:start")
                await asyncio.sleep(0.01)
                events.append(f"{name}:end")
                return {name: data["value"]}

            return member

        dispatcher.register("left", make_member("left"))
        dispatcher.register("right", make_member("right"))
        dispatcher.register("join", lambda data, ctx: events.append("join") or data)

        definition = loader.load(
            {
                "name": "fan-out",
                "stateSchema": {"left": "number", "right": "number"},
                "flow": [
                    {"member": "left", "config": {"value": 1}, "set": ["left"], "parallelGroup": "fan"},
                    {"member": "right", "config": {"value": 2}, "set": ["right"], "parallelGroup": "fan"},
                    {
                        "member": "join",
                        "config": {"sum": ["${state.left}", "${state.right}"]},
                        "use": ["left", "right"],
                    },
                ],
            }
        )

        result = await FlowOrchestrator(dispatcher, config=EngineConfig()).run(definition)

        assert result.succeeded
        assert set(events[:2]) == {"left:start", "right:start"}
        assert events[-1] == "join"
        assert result.output["join"] == {"sum": [1, 2]}

    @pytest.mark.asyncio
    async def test_group_views_are_taken_before_members_start(self, loader, dispatcher):
        async def writer(data, ctx):
            return {"flag": True}

        async def reader(data, ctx):
            await asyncio.sleep(0.01)
            return {"seen": ctx.state["flag"]}

        dispatcher.register("writer", writer)
        dispatcher.register("reader", reader)
        definition = loader.load(
            {
                "name": "snapshot",
                "stateSchema": {"flag": "boolean"},
                "initial": {"flag": False},
                "flow": [
                    {"member": "writer", "set": ["flag"], "parallelGroup": "g"},
                    {"member": "reader", "use": ["flag"], "parallelGroup": "g"},
                ],
            }
        )

        result = await FlowOrchestrator(dispatcher, config=EngineConfig()).run(definition)

        assert result.output["reader"] == {"seen": False}
        assert result.state_snapshot == {"flag": True}

    @pytest.mark.asyncio
    async def test_max_parallel_bounds_concurrency(self, loader, dispatcher):
        running = {"now": 0, "peak": 0}

        async def tracked(data, ctx):
            running["now"] += 1
            running["peak"] = max(running["peak"], running["now"])
            await asyncio.sleep(0.005)
            running["now"] -= 1
            return None

        dispatcher.register("tracked", tracked)
        definition = loader.load(
            {
                "name": "bounded",
                "flow": [
                    {"member": "tracked", "id": f"t{i}", "parallelGroup": "g"} for i in range(4)
                ],
            }
        )

        orchestrator = FlowOrchestrator(dispatcher, config=EngineConfig(), max_parallel=1)
        result = await orchestrator.run(definition)

        assert result.succeeded
        assert running["peak"] == 1

    @pytest.mark.asyncio
    async def test_failing_member_lets_siblings_finish(self, loader, orchestrator, call_log):
        definition = loader.load(
            {
                "name": "partial",
                "flow": [
                    {"member": "boom", "parallelGroup": "g"},
                    {"member": "echo", "config": {"ok": True}, "parallelGroup": "g"},
                    {"member": "upper", "config": {"text": "never"}},
                ],
            }
        )

        result = await orchestrator.run(definition)

        assert result.status == ExecutionStatus.FAILED
        assert sorted(call_log.tags()) == ["boom", "echo"]
        assert result.step("echo").status == StepStatus.COMPLETED


class TestGuards:
    """Guard expressions decide whether a step runs."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "guard,expected_calls",
        [
            ("${input.enabled}", ["echo"]),
            ("!${input.enabled}", []),
            ("${input.disabled}", []),
            ("!${input.disabled}", ["echo"]),
            ("off", []),
            (True, ["echo"]),
        ],
    )
    async def test_guard_values(self, loader, orchestrator, call_log, guard, expected_calls):
        definition = loader.load(
            {"name": "guarded", "flow": [{"member": "echo", "config": {}, "if": guard}]}
        )

        result = await orchestrator.run(definition, {"enabled": "yes", "disabled": "False"})

        assert result.succeeded
        assert call_log.tags() == expected_calls

    @pytest.mark.asyncio
    async def test_skipped_step_leaves_state_untouched(self, loader, orchestrator):
        definition = loader.load(
            {
                "name": "skip",
                "stateSchema": {"text": "string"},
                "initial": {"text": "original"},
                "flow": [
                    {"member": "echo", "config": {"text": "new"}, "set": ["text"], "if": "${input.go}"},
                ],
            }
        )

        result = await orchestrator.run(definition, {"go": False})

        assert result.state_snapshot == {"text": "original"}
        assert result.steps[0].status == StepStatus.SKIPPED
        assert result.output == {}
        assert orchestrator.get_metrics()["steps_skipped"] == 1

    @pytest.mark.asyncio
    async def test_guard_reads_state_through_view(self, loader, orchestrator, call_log):
        definition = loader.load(
            {
                "name": "state-guard",
                "stateSchema": {"ready": "boolean"},
                "initial": {"ready": True},
                "flow": [{"member": "echo", "use": ["ready"], "if": "${state.ready}"}],
            }
        )

        await orchestrator.run(definition)

        assert call_log.tags() == ["echo"]


class TestFailures:
    """Failure policy and fallbacks."""

    @pytest.mark.asyncio
    async def test_failure_without_fallback_stops_the_run(self, loader, orchestrator, call_log):
        definition = loader.load(
            {
                "name": "fails",
                "stateSchema": {"text": "string"},
                "flow": [
                    {"member": "echo", "config": {"text": "kept"}, "set": ["text"]},
                    {"member": "boom"},
                    {"member": "upper", "config": {"text": "never"}},
                ],
            }
        )

        result = await orchestrator.run(definition)

        assert result.status == ExecutionStatus.FAILED
        assert isinstance(result.error, MemberExecutionError)
        assert isinstance(result.error.cause, RuntimeError)
        assert "upper" not in call_log.tags()
        assert result.state_snapshot == {"text": "kept"}
        assert result.output is None
        assert result.to_dict()["error"]["code"] == "MEMBER_EXECUTION_ERROR"

    @pytest.mark.asyncio
    async def test_fallback_output_lets_the_run_continue(self, loader, orchestrator, call_log):
        definition = loader.load(
            {
                "name": "recovers",
                "stateSchema": {"count": "number"},
                "flow": [
                    {"member": "boom", "set": ["count"], "fallback": {"count": 0, "note": "fallback"}},
                    {"member": "counter", "config": {"value": "${state.count}"}, "use": ["count"]},
                ],
            }
        )

        result = await orchestrator.run(definition)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.steps[0].status == StepStatus.FALLBACK
        assert isinstance(result.steps[0].error, MemberExecutionError)
        assert result.state_snapshot == {"count": 0}
        assert result.output["boom"] == {"count": 0, "note": "fallback"}
        assert result.output["counter"] == {"count": 1}
        assert call_log.tags() == ["boom", "counter"]

    @pytest.mark.asyncio
    async def test_fallback_covers_interpolation_errors(self, loader, orchestrator, call_log):
        definition = loader.load(
            {
                "name": "missing-input",
                "flow": [{"member": "echo", "config": {"x": "${input.absent}"}, "fallback": "n/a"}],
            }
        )

        result = await orchestrator.run(definition)

        assert result.succeeded
        assert result.output == {"echo": "n/a"}
        assert isinstance(result.steps[0].error, InterpolationError)
        assert call_log.tags() == []

    @pytest.mark.asyncio
    async def test_interpolation_error_without_fallback(self, loader, orchestrator):
        definition = loader.load(
            {"name": "missing-input", "flow": [{"member": "echo", "config": {"x": "${input.absent}"}}]}
        )

        result = await orchestrator.run(definition)

        assert result.status == ExecutionStatus.FAILED
        assert isinstance(result.error, InterpolationError)

    @pytest.mark.asyncio
    async def test_unknown_member_aborts_even_with_fallback(self, loader, orchestrator):
        definition = loader.load(
            {
                "name": "unknown",
                "flow": [{"member": "does-not-exist", "fallback": "ignored"}, {"member": "echo"}],
            }
        )

        result = await orchestrator.run(definition)

        assert result.status == ExecutionStatus.FAILED
        assert isinstance(result.error, UnknownMemberType)
        assert len(result.steps) == 1

    @pytest.mark.asyncio
    async def test_reading_outside_use_list(self, loader, orchestrator, call_log):
        definition = loader.load(
            {
                "name": "nosy",
                "stateSchema": {"secret": "string"},
                "initial": {"secret": "s3cr3t"},
                "flow": [{"member": "echo", "config": {"peek": "${state.secret}"}, "use": []}],
            }
        )

        result = await orchestrator.run(definition)

        assert result.status == ExecutionStatus.FAILED
        assert isinstance(result.error, StateAccessViolation)
        assert result.error.key == "secret"
        assert call_log.tags() == []

    @pytest.mark.asyncio
    async def test_member_read_through_context_outside_use(self, loader, dispatcher):
        dispatcher.register("peek", lambda data, ctx: ctx.state["secret"])
        definition = loader.load(
            {
                "name": "nosy-member",
                "stateSchema": {"secret": "string"},
                "flow": [{"member": "peek"}],
            }
        )

        result = await FlowOrchestrator(dispatcher, config=EngineConfig()).run(definition)

        assert isinstance(result.error, StateAccessViolation)

    @pytest.mark.asyncio
    async def test_write_outside_set_list_applies_nothing(self, loader, dispatcher):
        def writer(data, ctx):
            ctx.set_state(a=1, b=2)
            return {"a": 1}

        dispatcher.register("writer", writer)
        definition = loader.load(
            {
                "name": "overreach",
                "stateSchema": {"a": "number", "b": "number"},
                "flow": [{"member": "writer", "set": ["a"]}],
            }
        )

        result = await FlowOrchestrator(dispatcher, config=EngineConfig()).run(definition)

        assert result.status == ExecutionStatus.FAILED
        assert isinstance(result.error, StateAccessViolation)
        assert result.error.key == "b"
        assert result.state_snapshot == {"a": None, "b": None}

    @pytest.mark.asyncio
    async def test_staged_writes_within_set_list(self, loader, dispatcher):
        def writer(data, ctx):
            ctx.set_state({"b": 2})
            return {"a": 1, "ignored": True}

        dispatcher.register("writer", writer)
        definition = loader.load(
            {
                "name": "staged",
                "stateSchema": {"a": "number", "b": "number"},
                "flow": [{"member": "writer", "set": ["a", "b"]}],
            }
        )

        result = await FlowOrchestrator(dispatcher, config=EngineConfig()).run(definition)

        assert result.state_snapshot == {"a": 1, "b": 2}


class TestCaching:
    """Result caching across runs."""

    @staticmethod
    def cached_definition(loader, ttl=60):
        return loader.load(
            {
                "name": "cached",
                "stateSchema": {"profile": "object"},
                "flow": [
                    {
                        "member": "echo",
                        "config": {"domain": "${input.domain}", "email": "${input.email}"},
                        "set": ["profile"],
                        "cache": {"ttl": ttl},
                    }
                ],
            }
        )

    @pytest.mark.asyncio
    async def test_equivalent_input_is_served_from_cache(self, loader, orchestrator, call_log):
        definition = self.cached_definition(loader)

        first = await orchestrator.run(definition, {"domain": "https://www.acme.io", "email": "Ada@Acme.io"})
        second = await orchestrator.run(definition, {"email": " ada@acme.io ", "domain": "acme.io"})

        assert len(call_log) == 1
        assert first.cache_hits == 0
        assert second.cache_hits == 1
        assert second.steps[0].cached is True
        assert second.output == first.output
        assert orchestrator.get_metrics()["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_reordered_config_keys_share_cache_entry(self, loader, orchestrator, call_log):
        first = loader.load({"name": "a", "flow": [{"member": "echo", "config": {"x": 1, "y": 2}, "cache": {"ttl": 60}}]})
        second = loader.load({"name": "b", "flow": [{"member": "echo", "config": {"y": 2, "x": 1}, "cache": {"ttl": 60}}]})

        await orchestrator.run(first)
        result = await orchestrator.run(second)

        assert len(call_log) == 1
        assert result.cache_hits == 1

    @pytest.mark.asyncio
    async def test_cache_hit_still_applies_state_writes(self, loader, orchestrator):
        definition = loader.load(
            {
                "name": "cached-state",
                "stateSchema": {"text": "string"},
                "flow": [{"member": "upper", "config": {"text": "hi"}, "set": ["text"], "cache": {"ttl": 60}}],
            }
        )

        await orchestrator.run(definition)
        result = await orchestrator.run(definition)

        assert result.cache_hits == 1
        assert result.state_snapshot == {"text": "HI"}

    @pytest.mark.asyncio
    async def test_expired_entry_triggers_redispatch(self, loader, orchestrator, call_log, clock):
        definition = self.cached_definition(loader, ttl=1)
        run_input = {"domain": "acme.io", "email": "a@acme.io"}

        await orchestrator.run(definition, run_input)
        clock.advance(2)
        result = await orchestrator.run(definition, run_input)

        assert len(call_log) == 2
        assert result.cache_hits == 0

    @pytest.mark.asyncio
    async def test_step_without_policy_bypasses_cache(self, loader, orchestrator, call_log, result_cache):
        definition = loader.load({"name": "plain", "flow": [{"member": "echo", "config": {"x": 1}}]})

        await orchestrator.run(definition)
        await orchestrator.run(definition)

        assert len(call_log) == 2
        assert result_cache.stats.stores == 0

    @pytest.mark.asyncio
    async def test_bypass_policy(self, loader, orchestrator, call_log):
        definition = loader.load(
            {"name": "bypass", "flow": [{"member": "echo", "config": {}, "cache": {"ttl": 60, "bypass": True}}]}
        )

        await orchestrator.run(definition)
        await orchestrator.run(definition)

        assert len(call_log) == 2

    @pytest.mark.asyncio
    async def test_failed_dispatch_is_not_cached(self, loader, orchestrator, result_cache):
        definition = loader.load({"name": "nocache", "flow": [{"member": "boom", "cache": {"ttl": 60}}]})

        await orchestrator.run(definition)

        assert result_cache.stats.stores == 0

    @pytest.mark.asyncio
    async def test_rejected_state_write_is_not_cached(self, loader, dispatcher, orchestrator, result_cache):
        def overreach(data, ctx):
            ctx.set_state(b=1)
            return {"a": 1}

        dispatcher.register("overreach", overreach)
        definition = loader.load(
            {
                "name": "overreach",
                "stateSchema": {"a": "number", "b": "number"},
                "flow": [{"member": "overreach", "set": ["a"], "cache": {"ttl": 60}}],
            }
        )

        first = await orchestrator.run(definition)
        second = await orchestrator.run(definition)

        assert result_cache.stats.stores == 0
        for result in (first, second):
            assert result.status == ExecutionStatus.FAILED
            assert isinstance(result.error, StateAccessViolation)
            assert result.cache_hits == 0

    @pytest.mark.asyncio
    async def test_cache_hit_replays_staged_writes(self, loader, dispatcher, orchestrator):
        calls = []

        def scorer(data, ctx):
            calls.append(data)
            ctx.set_state(a=42)
            return {"x": 1}

        dispatcher.register("scorer", scorer)
        definition = loader.load(
            {
                "name": "staged-cache",
                "stateSchema": {"a": "number", "b": "number"},
                "flow": [{"member": "scorer", "set": ["a", "b"], "cache": {"ttl": 60}}],
            }
        )

        first = await orchestrator.run(definition)
        second = await orchestrator.run(definition)

        assert len(calls) == 1
        assert second.cache_hits == 1
        assert first.state_snapshot == second.state_snapshot == {"a": 42, "b": None}
        assert second.output == {"scorer": {"x": 1}}

    @pytest.mark.asyncio
    async def test_broken_storage_does_not_fail_the_run(self, loader, dispatcher, call_log):
        class BrokenStorage:
            def get(self, key):
                raise ConnectionError("down")

            def put(self, key, value, ttl_seconds):
                raise ConnectionError("down")

        orchestrator = FlowOrchestrator(dispatcher, cache=ResultCache(BrokenStorage()), config=EngineConfig())
        definition = loader.load({"name": "broken", "flow": [{"member": "echo", "config": {"x": 1}, "cache": {"ttl": 60}}]})

        result = await orchestrator.run(definition)

        assert result.succeeded
        assert len(call_log) == 1


class TestUncopyableOutput:
    """Outputs that cannot be copied fail the step, never the orchestrator."""

    @staticmethod
    def register_handle(dispatcher):
        dispatcher.register("handle", lambda data, ctx: {"lock": threading.Lock()})

    @pytest.mark.asyncio
    async def test_step_fails_with_member_error(self, loader, dispatcher, orchestrator):
        self.register_handle(dispatcher)
        definition = loader.load(
            {
                "name": "handles",
                "stateSchema": {"text": "string", "lock": "any"},
                "flow": [
                    {"member": "echo", "config": {"text": "kept"}, "set": ["text"]},
                    {"member": "handle", "set": ["lock"]},
                    {"member": "upper", "config": {"text": "never"}},
                ],
            }
        )

        result = await orchestrator.run(definition)

        assert result.status == ExecutionStatus.FAILED
        assert isinstance(result.error, MemberExecutionError)
        assert isinstance(result.error.cause, TypeError)
        assert result.state_snapshot == {"text": "kept", "lock": None}
        assert [(r.step, r.key) for r in result.access_log] == [("echo", "text")]
        assert result.step("handle").status == StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_fallback_covers_uncopyable_output(self, loader, dispatcher, orchestrator):
        self.register_handle(dispatcher)
        definition = loader.load(
            {"name": "handles", "flow": [{"member": "handle", "fallback": {"lock": None}}]}
        )

        result = await orchestrator.run(definition)

        assert result.succeeded
        assert result.steps[0].status == StepStatus.FALLBACK
        assert result.output == {"handle": {"lock": None}}

    @pytest.mark.asyncio
    async def test_parallel_siblings_still_join(self, loader, dispatcher, orchestrator, call_log):
        self.register_handle(dispatcher)
        definition = loader.load(
            {
                "name": "handles",
                "flow": [
                    {"member": "handle", "parallelGroup": "g"},
                    {"member": "echo", "config": {"ok": True}, "parallelGroup": "g"},
                ],
            }
        )

        result = await orchestrator.run(definition)

        assert result.status == ExecutionStatus.FAILED
        assert isinstance(result.error, MemberExecutionError)
        assert result.step("echo").status == StepStatus.COMPLETED
        assert call_log.tags() == ["echo"]

    @pytest.mark.asyncio
    async def test_cached_step_with_uncopyable_output(self, loader, dispatcher, orchestrator, result_cache):
        self.register_handle(dispatcher)
        definition = loader.load(
            {"name": "handles", "flow": [{"member": "handle", "cache": {"ttl": 60}}]}
        )

        result = await orchestrator.run(definition)

        assert isinstance(result.error, MemberExecutionError)
        assert result_cache.stats.stores == 0


class TestLifecycle:
    """Cancellation, callbacks and metrics."""

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, loader, orchestrator, call_log):
        definition = loader.load({"name": "cancelled", "flow": [{"member": "echo"}]})
        event = asyncio.Event()
        event.set()

        result = await orchestrator.run(definition, cancel_event=event)

        assert result.status == ExecutionStatus.FAILED
        assert isinstance(result.error, ExecutionCancelled)
        assert call_log.tags() == []

    @pytest.mark.asyncio
    async def test_cancel_between_stages(self, loader, dispatcher, call_log):
        def stopper(data, ctx):
            ctx.cancel_event.set()
            return "stopping"

        dispatcher.register("stopper", stopper)
        definition = loader.load({"name": "stops", "flow": [{"member": "stopper"}, {"member": "echo"}]})

        result = await FlowOrchestrator(dispatcher, config=EngineConfig()).run(definition)

        assert isinstance(result.error, ExecutionCancelled)
        assert result.error.stage == 1
        assert result.steps[0].status == StepStatus.COMPLETED
        assert call_log.tags() == []

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self, loader, dispatcher):
        started = asyncio.Event()

        async def slow(data, ctx):
            started.set()
            await asyncio.sleep(10)

        dispatcher.register("slow", slow)
        definition = loader.load({"name": "slow", "flow": [{"member": "slow"}]})

        task = asyncio.create_task(FlowOrchestrator(dispatcher, config=EngineConfig()).run(definition))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_callbacks_and_metrics(self, loader, orchestrator):
        seen = []
        for event in ("started", "step_completed", "completed", "failed"):
            orchestrator.add_callback(event, lambda name, evt, payload: seen.append((name, evt)))

        ok = loader.load({"name": "ok", "flow": [{"member": "echo"}, {"member": "upper", "config": {"text": "x"}}]})
        bad = loader.load({"name": "bad", "flow": [{"member": "boom"}]})

        await orchestrator.run(ok)
        await orchestrator.run(bad)

        assert seen == [
            ("ok", "started"),
            ("ok", "step_completed"),
            ("ok", "step_completed"),
            ("ok", "completed"),
            ("bad", "started"),
            ("bad", "step_completed"),
            ("bad", "failed"),
        ]
        metrics = orchestrator.get_metrics()
        assert metrics["runs_started"] == 2
        assert metrics["runs_completed"] == 1
        assert metrics["runs_failed"] == 1
        assert metrics["steps_executed"] == 3
        assert metrics["steps_failed"] == 1

    def test_unknown_callback_event(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.add_callback("paused", lambda *args: None)

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_the_run(self, loader, orchestrator):
        def broken(name, event, payload):
            raise RuntimeError("callback bug")

        orchestrator.add_callback("started", broken)
        definition = loader.load({"name": "ok", "flow": [{"member": "echo"}]})

        result = await orchestrator.run(definition)

        assert result.succeeded


class TestLoadedDefinitions:
    """Definitions loaded from files run the same as in-memory ones."""

    @pytest.mark.asyncio
    async def test_yaml_definition_round_trip_and_run(self, loader, orchestrator, tmp_path):
        path = tmp_path / "lead.yaml"
        path.write_text(
            "name: lead\n"
            "stateSchema:\n"
            "  text: string\n"
            "flow:\n"
            "  - member: upper\n"
            "    config:\n"
            "      text: '${input.company}'\n"
            "    set: [text]\n"
            "output:\n"
            "  company: '${state.text}'\n"
            "  source: '${steps.upper.text}'\n"
        )

        definition = loader.load_file(path)
        reloaded = loader.load(loader.dump(definition))
        result = await orchestrator.run(reloaded, {"company": "acme"})

        assert reloaded == definition
        assert result.output == {"company": "ACME", "source": "ACME"}
