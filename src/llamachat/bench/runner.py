"""Two-phase latency benchmark for a loaded engine."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, NamedTuple

from ..config import BenchConfig
from ..engines.base import InferenceEngine
from ..session.cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]
Reporter = Callable[[str], None]


class BenchParams(NamedTuple):
    pp: int
    tg: int
    pl: int
    nr: int


@dataclass
class BenchmarkOutcome:
    warmup_params: BenchParams
    warmup_elapsed_s: float
    warmup_summary: str
    main_params: BenchParams | None = None
    main_summary: str | None = None

    @property
    def aborted(self) -> bool:
        return self.main_summary is None


def main_params(cfg: BenchConfig) -> BenchParams:
    return BenchParams(cfg.main_pp, cfg.main_tg, cfg.main_pl, cfg.main_nr)


def warmup_notice(elapsed_s: float) -> str:
    return f"Warm up time: {elapsed_s} seconds, please wait..."


ABORT_NOTICE = "Warm up took too long, aborting benchmark"


async def run_benchmark(
    engine: InferenceEngine,
    params: BenchParams,
    cfg: BenchConfig,
    clock: Clock = time.perf_counter,
    report: Reporter | None = None,
    cancel_token: CancellationToken | None = None,
) -> BenchmarkOutcome:
    """Run a warm-up bench with ``params`` and, if it was fast enough, the main bench.

    ``report`` receives each line as soon as it is known, so a failure in the
    main phase leaves the warm-up lines already reported. Engine failures
    propagate as ``EngineError``.
    """
    emit = report or (lambda _line: None)

    start = clock()
    warmup_summary = await engine.bench(params.pp, params.tg, params.pl, params.nr)
    end = clock()
    emit(warmup_summary)

    elapsed = end - start
    emit(warmup_notice(elapsed))
    LOGGER.info("Benchmark warm-up %s took %.3fs", tuple(params), elapsed)

    outcome = BenchmarkOutcome(
        warmup_params=params,
        warmup_elapsed_s=elapsed,
        warmup_summary=warmup_summary,
    )
    if elapsed > cfg.abort_after_s:
        emit(ABORT_NOTICE)
        LOGGER.info("Benchmark aborted, warm-up exceeded %.1fs", cfg.abort_after_s)
        return outcome

    if cancel_token is not None:
        cancel_token.raise_if_cancelled()

    fixed = main_params(cfg)
    outcome.main_params = fixed
    outcome.main_summary = await engine.bench(fixed.pp, fixed.tg, fixed.pl, fixed.nr)
    emit(outcome.main_summary)
    return outcome
