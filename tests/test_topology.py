"""Stage graph validation and the DAG scheduler."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from pipelines.topology import DIAGNOSIS_DAG, StageNode, execution_waves, run_dag, validate_dag
from storage.models import Stage


def test_diagnosis_dag_waves():
    assert execution_waves(DIAGNOSIS_DAG) == [
        [Stage.translator],
        [Stage.symptom_analyzer],
        [Stage.researcher, Stage.risk_assessor],
        [Stage.aggregator],
    ]


def test_validate_rejects_unknown_dependency():
    with pytest.raises(ValueError, match="unknown"):
        validate_dag([StageNode("a", ("b",))])


def test_validate_rejects_cycle():
    with pytest.raises(ValueError, match="Cycle"):
        validate_dag([StageNode("a", ("b",)), StageNode("b", ("a",))])


def test_validate_rejects_duplicates():
    with pytest.raises(ValueError, match="Duplicate"):
        validate_dag([StageNode("a"), StageNode("a")])


def test_run_dag_passes_dependency_results():
    nodes = [StageNode("a"), StageNode("b", ("a",)), StageNode("c", ("a", "b"))]
    tasks = {
        "a": lambda done: 1,
        "b": lambda done: done["a"] + 1,
        "c": lambda done: done["a"] + done["b"],
    }
    with ThreadPoolExecutor(max_workers=2) as pool:
        assert run_dag(nodes, tasks, pool) == {"a": 1, "b": 2, "c": 3}


def test_independent_stages_run_concurrently_and_join_both():
    both_started = threading.Barrier(2, timeout=5)

    def slow(value, delay):
        def task(done):
            both_started.wait()
            time.sleep(delay)
            return value
        return task

    nodes = [StageNode("root"), StageNode("x", ("root",)), StageNode("y", ("root",)), StageNode("join", ("x", "y"))]
    tasks = {
        "root": lambda done: "r",
        "x": slow("X", 0.3),
        "y": slow("Y", 0.05),
        "join": lambda done: done["x"] + done["y"],
    }
    started = []
    with ThreadPoolExecutor(max_workers=2) as pool:
        results = run_dag(nodes, tasks, pool, on_start=started.append)
    assert results["join"] == "XY"
    assert started[:3] == ["root", "x", "y"]
    assert started[-1] == "join"


def test_failure_stops_scheduling_and_drains_running():
    ran = []

    def boom(done):
        raise RuntimeError("disk full")

    def slow_ok(done):
        time.sleep(0.1)
        ran.append("y")
        return "Y"

    nodes = [StageNode("x"), StageNode("y"), StageNode("after", ("x", "y"))]
    tasks = {"x": boom, "y": slow_ok, "after": lambda done: ran.append("after")}
    with ThreadPoolExecutor(max_workers=2) as pool:
        with pytest.raises(RuntimeError, match="disk full"):
            run_dag(nodes, tasks, pool)
    assert ran == ["y"]


def test_missing_task_rejected():
    with ThreadPoolExecutor(max_workers=1) as pool:
        with pytest.raises(ValueError, match="No task"):
            run_dag([StageNode("a")], {}, pool)
