"""Benchmark reporting utilities."""
from __future__ import annotations

import json
import math
import os
from datetime import datetime
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    from .runner import BenchmarkOutcome


TABLE_HEADER = "| model | size | backend | test | t/s |"
TABLE_RULE = "| --- | --- | --- | --- | --- |"


def mean_std(values: Sequence[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    avg = sum(values) / len(values)
    if len(values) < 2:
        return avg, 0.0
    var = sum((v - avg) ** 2 for v in values) / (len(values) - 1)
    return avg, math.sqrt(var)


def format_bench_table(
    model_desc: str,
    size_bytes: int,
    backend: str,
    pp: int,
    tg: int,
    pp_rates: Sequence[float],
    tg_rates: Sequence[float],
) -> str:
    """Render the tokens/s rates of a bench run as a markdown table.

    One row for prompt processing (``pp <n>``) and one for token generation
    (``tg <n>``), each showing the mean rate and its sample standard
    deviation over the repetitions.
    """
    size_gib = size_bytes / (1024 ** 3)
    pp_avg, pp_std = mean_std(pp_rates)
    tg_avg, tg_std = mean_std(tg_rates)
    lines = [
        TABLE_HEADER,
        TABLE_RULE,
        f"| {model_desc} | {size_gib:.2f} GiB | {backend} | pp {pp} | {pp_avg:.2f} ± {pp_std:.2f} |",
        f"| {model_desc} | {size_gib:.2f} GiB | {backend} | tg {tg} | {tg_avg:.2f} ± {tg_std:.2f} |",
    ]
    return "\n".join(lines)


def outcome_to_dict(outcome: "BenchmarkOutcome") -> dict[str, Any]:
    return {
        "generated_at": datetime.now().isoformat(),
        "warmup_params": list(outcome.warmup_params),
        "warmup_elapsed_s": outcome.warmup_elapsed_s,
        "warmup_summary": outcome.warmup_summary,
        "aborted": outcome.aborted,
        "main_params": list(outcome.main_params) if outcome.main_params else None,
        "main_summary": outcome.main_summary,
    }


def save_outcome(outcome: "BenchmarkOutcome", root: str) -> str:
    ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    os.makedirs(root, exist_ok=True)
    path = os.path.join(root, f"bench_{ts}.json")
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(outcome_to_dict(outcome), handle, indent=2)
    return path
