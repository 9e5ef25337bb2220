"""Global pytest fixtures and configuration.

This module provides shared fixtures for all tests including:
- Isolated engine configuration (no leaking ENSEMBLE_* variables)
- A controllable clock for cache expiry
- A dispatcher pre-loaded with simple members
- A result cache and an orchestrator wired to them
"""
from __future__ import annotations

import os
from typing import Any, Dict, List

import pytest

from ensemble_engine.cache import InMemoryStorage, ResultCache
from ensemble_engine.config import BaseConfig, EngineConfig
from ensemble_engine.orchestration import DefinitionLoader, FlowOrchestrator, MemberDispatcher


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CallLog:
    """Records member invocations."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    def __len__(self) -> int:
        return len(self.calls)

    def tags(self) -> List[str]:
        return [call["tag"] for call in self.calls]


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Reset config singletons and strip ENSEMBLE_* variables for every test."""
    for name in list(os.environ):
        if name.startswith("ENSEMBLE_"):
            monkeypatch.delenv(name, raising=False)
    BaseConfig.clear_overlays()
    EngineConfig.reset_instance()
    yield
    BaseConfig.clear_overlays()
    EngineConfig.reset_instance()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def call_log() -> CallLog:
    return CallLog()


@pytest.fixture
def dispatcher(call_log: CallLog) -> MemberDispatcher:
    """Dispatcher with a handful of deterministic members.

    - echo: returns its resolved input
    - upper: uppercases ``text`` and returns ``{"text": ...}``
    - counter: returns ``{"count": value + 1}``
    - boom: raises RuntimeError
    """

    def echo(data, context):
        call_log.calls.append({"tag": "echo", "step": context.step_id, "input": data})
        return data

    def upper(data, context):
        call_log.calls.append({"tag": "upper", "step": context.step_id, "input": data})
        return {"text": str(data["text"]).upper()}

    async def counter(data, context):
        call_log.calls.append({"tag": "counter", "step": context.step_id, "input": data})
        return {"count": (data.get("value") or 0) + 1}

    def boom(data, context):
        call_log.calls.append({"tag": "boom", "step": context.step_id, "input": data})
        raise RuntimeError("boom")

    registry = MemberDispatcher()
    registry.register("echo", echo)
    registry.register("upper", upper)
    registry.register("counter", counter)
    registry.register("boom", boom)
    return registry


@pytest.fixture
def loader() -> DefinitionLoader:
    return DefinitionLoader()


@pytest.fixture
def result_cache(clock: FakeClock) -> ResultCache:
    return ResultCache(InMemoryStorage(max_entries=64), clock=clock)


@pytest.fixture
def orchestrator(dispatcher: MemberDispatcher, result_cache: ResultCache) -> FlowOrchestrator:
    return FlowOrchestrator(dispatcher, cache=result_cache, config=EngineConfig())
