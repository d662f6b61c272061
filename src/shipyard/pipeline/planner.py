"""
Pipeline DAG validation and planning.

Validates the stage graph before anything runs and produces a deterministic
topological order. Structural errors (duplicate names, unknown or cyclic
dependencies, conflicting artifact producers) are fatal ConfigurationErrors.

Edges come from three sources:
    - explicit `depends_on`
    - the previous declared stage, when `depends_on` is omitted
    - the producer of every artifact listed in `needs`
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable

from ..errors import ConfigurationError
from .stage import StageDefinition

logger = logging.getLogger(__name__)


@dataclass
class ExecutionPlan:
    """Validated stage graph.

    Attributes:
        order: Stages in topological order (ties broken by declaration order)
        predecessors: Stage name -> names of stages that must finish first
    """
    order: list[StageDefinition]
    predecessors: dict[str, list[str]] = field(default_factory=dict)

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.order]

    def stage(self, name: str) -> StageDefinition:
        for s in self.order:
            if s.name == name:
                return s
        raise KeyError(name)


def plan_stages(stages: Iterable[StageDefinition]) -> ExecutionPlan:
    """Validate stages and produce an execution plan.

    Raises:
        ConfigurationError: On empty pipelines, duplicate stage names,
            unknown or self dependencies, conflicting artifact producers,
            or dependency cycles
    """
    stage_list = list(stages)
    if not stage_list:
        raise ConfigurationError("Pipeline has no stages")

    by_name: dict[str, StageDefinition] = {}
    index: dict[str, int] = {}
    for i, stage in enumerate(stage_list):
        if stage.name in by_name:
            raise ConfigurationError(f"Duplicate stage name: {stage.name}")
        by_name[stage.name] = stage
        index[stage.name] = i

    producers: dict[str, str] = {}
    for stage in stage_list:
        for output in stage.output_names:
            if output in producers:
                raise ConfigurationError(
                    f"Artifact '{output}' is declared by stages '{producers[output]}' and '{stage.name}'"
                )
            producers[output] = stage.name

    predecessors: dict[str, list[str]] = {}
    for i, stage in enumerate(stage_list):
        preds: list[str] = []
        if stage.depends_on is None:
            if i > 0:
                preds.append(stage_list[i - 1].name)
        else:
            for dep in stage.depends_on:
                if dep == stage.name:
                    raise ConfigurationError(f"Stage '{stage.name}' depends on itself")
                if dep not in by_name:
                    raise ConfigurationError(f"Stage '{stage.name}' depends on unknown stage '{dep}'")
                preds.append(dep)

        for needed in stage.needs:
            producer = producers.get(needed)
            if producer == stage.name:
                raise ConfigurationError(f"Stage '{stage.name}' needs its own output '{needed}'")
            if producer is not None:
                preds.append(producer)
            else:
                logger.debug("Stage '%s' needs '%s', which no stage declares", stage.name, needed)

        predecessors[stage.name] = list(dict.fromkeys(preds))

    # Kahn's algorithm, ready set ordered by declaration index
    incoming = {name: len(preds) for name, preds in predecessors.items()}
    outgoing: dict[str, list[str]] = {name: [] for name in by_name}
    for name, preds in predecessors.items():
        for pred in preds:
            outgoing[pred].append(name)

    ready = sorted((n for n, c in incoming.items() if c == 0), key=index.__getitem__)
    order: list[str] = []
    while ready:
        current = ready.pop(0)
        order.append(current)
        for child in outgoing[current]:
            incoming[child] -= 1
            if incoming[child] == 0:
                ready.append(child)
                ready.sort(key=index.__getitem__)

    if len(order) != len(by_name):
        stuck = sorted((n for n in by_name if n not in order), key=index.__getitem__)
        raise ConfigurationError(f"Cycle detected among stages: {', '.join(stuck)}")

    return ExecutionPlan(
        order=[by_name[n] for n in order],
        predecessors=predecessors,
    )
