"""
pipelines/topology.py

Declarative stage graph and a small scheduler that runs it on an executor.

A stage is submitted as soon as every stage it depends on has finished, so
independent stages (researcher, risk assessor) run concurrently and a
stage with several dependencies waits for all of them.
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Executor, Future, wait
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Mapping, Optional, Sequence

from storage.models import Stage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageNode:
    stage: Hashable
    depends_on: tuple[Hashable, ...] = ()


DIAGNOSIS_DAG: tuple[StageNode, ...] = (
    StageNode(Stage.translator),
    StageNode(Stage.symptom_analyzer, (Stage.translator,)),
    StageNode(Stage.researcher, (Stage.symptom_analyzer,)),
    StageNode(Stage.risk_assessor, (Stage.symptom_analyzer,)),
    StageNode(
        Stage.aggregator,
        (Stage.translator, Stage.symptom_analyzer, Stage.researcher, Stage.risk_assessor),
    ),
)


def validate_dag(nodes: Sequence[StageNode]) -> None:
    """
    Raises:
        ValueError: duplicate stage, unknown dependency or a cycle.
    """
    names = [n.stage for n in nodes]
    if len(set(names)) != len(names):
        raise ValueError("Duplicate stage in DAG")
    known = set(names)
    for node in nodes:
        for dep in node.depends_on:
            if dep not in known:
                raise ValueError(f"Stage {node.stage!r} depends on unknown stage {dep!r}")
    execution_waves(nodes)


def execution_waves(nodes: Sequence[StageNode]) -> list[list[Hashable]]:
    """Group stages into waves whose members depend only on earlier waves."""
    remaining = {n.stage: set(n.depends_on) for n in nodes}
    done: set = set()
    waves: list[list[Hashable]] = []
    while remaining:
        wave = [n.stage for n in nodes if n.stage in remaining and remaining[n.stage] <= done]
        if not wave:
            raise ValueError(f"Cycle in DAG among {sorted(map(str, remaining))}")
        waves.append(wave)
        for stage in wave:
            del remaining[stage]
        done.update(wave)
    return waves


Task = Callable[[Mapping[Hashable, Any]], Any]


def run_dag(
    nodes: Sequence[StageNode],
    tasks: Mapping[Hashable, Task],
    executor: Executor,
    on_start: Optional[Callable[[Hashable], None]] = None,
) -> dict[Hashable, Any]:
    """
    Execute *tasks* on *executor* following *nodes*.

    Each task receives a snapshot of the results finished so far.  On the
    first failure no further stages are submitted; stages already running
    are allowed to finish, then the error is re-raised.
    """
    validate_dag(nodes)
    missing = [n.stage for n in nodes if n.stage not in tasks]
    if missing:
        raise ValueError(f"No task for stages: {missing}")

    results: dict[Hashable, Any] = {}
    pending = list(nodes)
    running: dict[Future, Hashable] = {}
    first_error: Optional[BaseException] = None

    while pending or running:
        if first_error is None:
            ready = [n for n in pending if all(d in results for d in n.depends_on)]
            for node in ready:
                pending.remove(node)
                if on_start is not None:
                    on_start(node.stage)
                running[executor.submit(tasks[node.stage], dict(results))] = node.stage

        if not running:
            break

        finished, _ = wait(list(running), return_when=FIRST_COMPLETED)
        for fut in finished:
            stage = running.pop(fut)
            exc = fut.exception()
            if exc is not None:
                if first_error is None:
                    logger.error("Stage %s failed; no further stages will start", stage)
                    first_error = exc
                continue
            results[stage] = fut.result()

    if first_error is not None:
        raise first_error
    return results
