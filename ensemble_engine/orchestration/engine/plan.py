"""
Execution plan: the flow compiled into ordered stages.

A stage is either a single step or a contiguous run of steps sharing a
``parallelGroup``. Stages form a directed graph: each stage precedes the next
one in flow order, and a step that references ``${steps.<id>}`` adds an edge
from the stage producing that output. A valid flow yields a DAG; a reference
to a later stage, the same stage, or the step itself closes a cycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import networkx as nx

from ...errors import SchemaValidationError
from ...models.definition import EnsembleDefinition, FlowStep
from ..resolver import SCOPE_STEPS, find_references

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedStep:
    """A flow step with its position and resolved identity."""

    index: int
    step_id: str
    step: FlowStep


@dataclass
class Stage:
    """Steps that start together and are joined before the next stage."""

    index: int
    steps: List[PlannedStep] = field(default_factory=list)
    group: Optional[str] = None

    @property
    def is_parallel(self) -> bool:
        return len(self.steps) > 1

    @property
    def step_ids(self) -> List[str]:
        return [planned.step_id for planned in self.steps]


def referenced_steps(step: FlowStep) -> Set[str]:
    """Step ids named by ``${steps.<id>...}`` tokens in a step's config and guard."""
    targets = set()
    for tree in (step.config, step.condition):
        for scope, path in find_references(tree):
            if scope == SCOPE_STEPS and path:
                targets.add(path.split(".", 1)[0])
    return targets


class ExecutionPlan:
    """Stage graph for one ensemble definition."""

    def __init__(self, stages: List[Stage], graph: nx.DiGraph):
        self.stages = stages
        self.graph = graph
        self._stage_of: Dict[str, int] = {
            planned.step_id: stage.index for stage in stages for planned in stage.steps
        }

    @classmethod
    def compile(cls, definition: EnsembleDefinition) -> "ExecutionPlan":
        """Group the flow into stages and order them.

        Raises:
            SchemaValidationError: If a parallel group is split by other steps,
                or a step references an unknown or not-yet-produced step output
        """
        stages = cls._build_stages(definition)
        graph = cls._build_graph(stages)
        logger.debug(
            f"Compiled plan for '{definition.name}': "
            f"{len(definition.flow)} steps in {len(stages)} stages"
        )
        return cls(stages, graph)

    @staticmethod
    def _build_stages(definition: EnsembleDefinition) -> List[Stage]:
        stages: List[Stage] = []
        closed_groups: Set[str] = set()

        for index, (step_id, step) in enumerate(zip(definition.step_ids, definition.flow)):
            planned = PlannedStep(index=index, step_id=step_id, step=step)
            group = step.parallel_group
            current = stages[-1] if stages else None

            if group is not None and current is not None and current.group == group:
                current.steps.append(planned)
                continue

            if current is not None and current.group is not None:
                closed_groups.add(current.group)
            if group is not None and group in closed_groups:
                raise SchemaValidationError(
                    f"flow.{index}.parallelGroup",
                    f"members of parallel group '{group}' must be contiguous",
                )
            stages.append(Stage(index=len(stages), steps=[planned], group=group))

        return stages

    @staticmethod
    def _build_graph(stages: List[Stage]) -> nx.DiGraph:
        graph = nx.DiGraph()
        stage_of: Dict[str, int] = {}
        for stage in stages:
            graph.add_node(stage.index, steps=stage.step_ids, group=stage.group)
            for planned in stage.steps:
                stage_of[planned.step_id] = stage.index
        for stage in stages[1:]:
            graph.add_edge(stage.index - 1, stage.index, kind="order")

        for stage in stages:
            for planned in stage.steps:
                for target in sorted(referenced_steps(planned.step)):
                    if target not in stage_of:
                        raise SchemaValidationError(
                            f"flow.{planned.index}.config",
                            f"reference to unknown step '{target}'",
                        )
                    source = stage_of[target]
                    if graph.has_edge(source, stage.index):
                        graph.edges[source, stage.index].setdefault("references", []).append(
                            (planned.index, target)
                        )
                    else:
                        graph.add_edge(
                            source, stage.index, kind="data", references=[(planned.index, target)]
                        )

        if not nx.is_directed_acyclic_graph(graph):
            index, target = ExecutionPlan._offending_reference(graph)
            raise SchemaValidationError(
                f"flow.{index}.config",
                f"step output '{target}' is not produced by an earlier stage",
            )
        return graph

    @staticmethod
    def _offending_reference(graph: nx.DiGraph) -> Tuple[int, str]:
        for source, target in nx.find_cycle(graph):
            references = graph.edges[source, target].get("references")
            if references and source >= target:
                return references[0]
        raise ValueError("Stage graph contains a cycle without data references")

    def ordered_stages(self) -> List[Stage]:
        """Stages in execution order."""
        return [self.stages[index] for index in nx.topological_sort(self.graph)]

    def stage_of(self, step_id: str) -> Optional[Stage]:
        index = self._stage_of.get(step_id)
        return self.stages[index] if index is not None else None

    def dependencies(self, step_id: str) -> Set[str]:
        """Step ids whose outputs the given step reads."""
        stage = self.stage_of(step_id)
        if stage is None:
            return set()
        planned = next(p for p in stage.steps if p.step_id == step_id)
        return referenced_steps(planned.step)

    def __len__(self) -> int:
        return len(self.stages)
