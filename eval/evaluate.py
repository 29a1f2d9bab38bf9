"""
eval/evaluate.py

Offline evaluation of the diagnosis pipeline's urgency classification.

Loads labelled cases from eval/cases.json, runs each through a full
pipeline against a throwaway database and compares the predicted
urgencyLevel to the ground-truth label.  With no PERPLEXITY_API_KEY set
this measures the deterministic fallback rules alone.

Metrics computed:
  - Overall accuracy
  - Critical Recall: fraction of true-critical cases predicted critical
  - Escalation Rate: fraction of cases predicted critical or high
  - Per-case comparison table

Usage:
  python -m eval.evaluate
"""

import json
import logging
import math
import sys
import tempfile
from pathlib import Path
from typing import Any

from pipelines.coordinator import build_coordinator
from pipelines.schemas import PatientInput
from pipelines.settings import Settings, configure_logging

logger = logging.getLogger(__name__)

_CASES_PATH = Path(__file__).parent / "cases.json"

_CASES_SCHEMA_EXAMPLE = """
[
  {
    "case_id": "chest-pain-01",
    "input": {"symptoms": "crushing chest pain", "language": "english", "age": 62},
    "ground_truth_urgency": "critical"
  },
  ...
]
"""


def _load_cases(path: Path = _CASES_PATH) -> list[dict[str, Any]]:
    """Load eval cases from JSON file."""
    if not path.exists():
        print(
            f"\n[Diagnosis Eval] {path} not found.\n"
            "Create it with the following schema:\n"
            f"{_CASES_SCHEMA_EXAMPLE}\n"
            "Then re-run: python -m eval.evaluate\n"
        )
        sys.exit(0)

    with path.open("r", encoding="utf-8") as f:
        cases: list[dict[str, Any]] = json.load(f)

    print(f"[Diagnosis Eval] Loaded {len(cases)} cases from {path}.")
    return cases


def run_cases(cases: list[dict[str, Any]], settings: Settings) -> list[dict[str, Any]]:
    """Run every case through one coordinator and collect per-case results."""
    coordinator = build_coordinator(settings)
    results: list[dict[str, Any]] = []

    for i, case in enumerate(cases, start=1):
        case_id = case.get("case_id", f"case-{i}")
        print(f"  [{i}/{len(cases)}] Evaluating: {case_id} ...")
        ground_truth = case["ground_truth_urgency"]
        try:
            patient = PatientInput.model_validate(case["input"])
        except ValueError as exc:
            results.append(
                {"case": case_id, "ground_truth": ground_truth, "predicted": "INVALID",
                 "match": False, "api_status": None, "error": str(exc)}
            )
            continue

        result = coordinator.process_diagnosis(patient)
        meta = result.processing_metadata
        results.append(
            {
                "case": case_id,
                "ground_truth": ground_truth,
                "predicted": result.urgency_level,
                "match": result.urgency_level == ground_truth,
                "api_status": meta.api_status if meta else None,
                "error": result.clinical_notes if meta and meta.api_status == "error" else None,
            }
        )
    return results


def compute_metrics(results: list[dict[str, Any]]) -> dict[str, float]:
    total = len(results)
    critical_cases = [r for r in results if r["ground_truth"] == "critical"]
    critical_correct = [r for r in critical_cases if r["predicted"] == "critical"]
    escalated = [r for r in results if r["predicted"] in ("critical", "high")]

    return {
        "total": total,
        "overall_accuracy": sum(1 for r in results if r["match"]) / total if total else math.nan,
        "critical_recall": len(critical_correct) / len(critical_cases) if critical_cases else math.nan,
        "escalation_rate": len(escalated) / total if total else math.nan,
    }


def _print_report(results: list[dict[str, Any]], metrics: dict[str, float]) -> None:
    print("\n" + "=" * 90)
    print("DIAGNOSIS PIPELINE EVALUATION RESULTS")
    print("=" * 90)
    print(f"{'Case':<28} {'Ground Truth':<14} {'Predicted':<12} {'API':<10} {'Match':<7} {'Error'}")
    print("-" * 90)
    for r in results:
        match_str = "✓" if r["match"] else "✗"
        error_str = r["error"] or ""
        print(
            f"{r['case']:<28} {r['ground_truth']:<14} {r['predicted']:<12} "
            f"{str(r['api_status']):<10} {match_str:<7} {error_str[:30]}"
        )
    print("=" * 90)
    print(f"Total cases:       {metrics['total']}")
    print(f"Overall accuracy:  {metrics['overall_accuracy']:.1%}")
    print(f"Critical recall:   {metrics['critical_recall']:.1%}")
    print(f"Escalation rate:   {metrics['escalation_rate']:.1%}  (flagged critical or high)")
    print("=" * 90)


def main() -> None:
    """Run evaluation and print results table."""
    configure_logging("WARNING")
    cases = _load_cases()
    env_settings = Settings.from_env()

    with tempfile.TemporaryDirectory(prefix="dx-eval-") as tmp:
        settings = env_settings.model_copy(update={"db_path": Path(tmp) / "eval.db"})
        results = run_cases(cases, settings)

    _print_report(results, compute_metrics(results))


if __name__ == "__main__":
    main()
