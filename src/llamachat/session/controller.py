"""State-machine based session orchestration."""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..bench.report import save_outcome
from ..bench.runner import BenchmarkOutcome, BenchParams, Clock, run_benchmark
from ..config import BenchConfig
from ..engines.base import InferenceEngine
from ..errors import EmptyLogError, EngineError, StateError, error_message
from .cancellation import CancellationToken
from .transcript import TranscriptEntry, TranscriptLog

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    GENERATING = "generating"
    BENCHMARKING = "benchmarking"
    UNLOADING = "unloading"


StateCallback = Callable[[SessionState, SessionState], None]
TranscriptCallback = Callable[[tuple[TranscriptEntry, ...]], None]
TaskFactory = Callable[[CancellationToken], Awaitable[Any]]


class SessionController:
    """Owns the engine lifecycle, the draft input and the transcript.

    ``load``, ``send``, ``benchmark`` and ``unload`` validate and claim the
    session state synchronously, then return an ``asyncio.Task`` doing the
    engine work. Only one such task runs at a time; a request the current
    state does not permit raises ``StateError`` and changes nothing. Engine
    failures never escape a task, they are written to the transcript.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        bench_cfg: BenchConfig | None = None,
        clock: Clock = time.perf_counter,
        on_state_change: Optional[StateCallback] = None,
        on_transcript_change: Optional[TranscriptCallback] = None,
    ) -> None:
        self._engine = engine
        self._bench_cfg = bench_cfg or BenchConfig()
        self._clock = clock
        self._on_state_change = on_state_change
        self._on_transcript_change = on_transcript_change

        self._lock = threading.RLock()
        self._state = SessionState.UNLOADED
        self._draft = ""
        self._transcript = TranscriptLog()
        self._pending_logs: list[str] = []
        self._task: asyncio.Task | None = None
        self._token: CancellationToken | None = None
        self._closed = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def draft(self) -> str:
        return self._draft

    @property
    def transcript(self) -> tuple[TranscriptEntry, ...]:
        return self._transcript.snapshot()

    @property
    def closed(self) -> bool:
        return self._closed

    # Operations

    def update_draft(self, text: str) -> None:
        self._draft = text

    def clear(self) -> None:
        with self._lock:
            self._transcript.clear()
            self._pending_logs = []
            self._notify_transcript()

    def log(self, message: str) -> None:
        with self._lock:
            if self._state == SessionState.GENERATING:
                # The placeholder has to stay last while tokens arrive.
                self._pending_logs.append(message)
                return
            self._append(message)

    def load(self, path: str) -> asyncio.Task:
        loop = asyncio.get_running_loop()
        with self._lock:
            self._require("load", SessionState.UNLOADED, SessionState.LOADED)
            self._transition(SessionState.LOADING)
            return self._spawn(loop, lambda token: self._run_load(path))

    def send(self) -> asyncio.Task:
        loop = asyncio.get_running_loop()
        with self._lock:
            self._require("send", SessionState.LOADED)
            text = self._draft
            self._draft = ""
            self._transcript.append(text)
            self._transcript.append("")
            self._notify_transcript()
            self._transition(SessionState.GENERATING)
            return self._spawn(loop, lambda token: self._run_send(text, token))

    def benchmark(self, pp: int, tg: int, pl: int, nr: int = 1) -> asyncio.Task:
        loop = asyncio.get_running_loop()
        params = BenchParams(int(pp), int(tg), int(pl), int(nr))
        with self._lock:
            self._require("benchmark", SessionState.LOADED)
            self._transition(SessionState.BENCHMARKING)
            return self._spawn(loop, lambda token: self._run_benchmark(params, token))

    def unload(self) -> asyncio.Task:
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._closed:
                raise StateError("cannot unload: session is closed")
            if self._state == SessionState.UNLOADING:
                raise StateError("cannot unload while unloading")
            previous = self._cancel_inflight()
            self._transition(SessionState.UNLOADING)
            return self._spawn(loop, lambda token: self._run_unload(previous, teardown=False))

    async def shutdown(self) -> None:
        """Tear the session down: cancel in-flight work, then unload the engine.

        Unload failures are logged and recorded in the transcript but never
        raised. After shutdown every operation raises ``StateError``.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._state == SessionState.UNLOADING and self._task is not None:
                in_flight: asyncio.Task | None = self._task
                previous = None
            else:
                in_flight = None
                previous = self._cancel_inflight()
                self._transition(SessionState.UNLOADING)
        if in_flight is not None:
            await asyncio.wait([in_flight])
            return
        await self._run_unload(previous, teardown=True)

    # Tasks

    async def _run_load(self, path: str) -> None:
        LOGGER.info("Loading model from %s", path)
        try:
            await self._engine.load(path)
        except Exception as exc:  # noqa: BLE001
            self._fail("load", exc)
            self._finish(SessionState.LOADING, SessionState.UNLOADED)
            return
        with self._lock:
            self._append(f"Loaded {path}")
            self._finish(SessionState.LOADING, SessionState.LOADED)

    async def _run_send(self, text: str, token: CancellationToken) -> None:
        stream = None
        try:
            stream = self._engine.send(text)
            async for fragment in stream:
                token.raise_if_cancelled()
                self._append_fragment(fragment)
        except Exception as exc:  # noqa: BLE001
            self._fail("send", exc)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        with self._lock:
            self._finish(SessionState.GENERATING, SessionState.LOADED)
            pending, self._pending_logs = self._pending_logs, []
            for message in pending:
                self._append(message)

    async def _run_benchmark(
        self, params: BenchParams, token: CancellationToken
    ) -> BenchmarkOutcome | None:
        LOGGER.info("Starting benchmark with %s", tuple(params))
        outcome: BenchmarkOutcome | None = None
        try:
            outcome = await run_benchmark(
                self._engine,
                params,
                self._bench_cfg,
                clock=self._clock,
                report=self._append,
                cancel_token=token,
            )
        except Exception as exc:  # noqa: BLE001
            self._fail("benchmark", exc)
        if outcome is not None and self._bench_cfg.output_dir:
            try:
                path = await asyncio.to_thread(save_outcome, outcome, self._bench_cfg.output_dir)
                LOGGER.info("Benchmark outcome saved to %s", path)
            except OSError as exc:
                LOGGER.warning("Could not save benchmark outcome: %s", exc)
        self._finish(SessionState.BENCHMARKING, SessionState.LOADED)
        return outcome

    async def _run_unload(self, previous: asyncio.Task | None, teardown: bool) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        try:
            await self._engine.unload()
        except Exception as exc:  # noqa: BLE001
            if teardown:
                LOGGER.warning("unload() failed during teardown: %s", exc)
            else:
                LOGGER.error("unload() failed: %s", exc)
            self._append(error_message(exc))
        with self._lock:
            self._pending_logs = []
            self._transition(SessionState.UNLOADED)

    # Helpers

    def _require(self, op: str, *allowed: SessionState) -> None:
        if self._closed:
            raise StateError(f"cannot {op}: session is closed")
        if self._state not in allowed:
            raise StateError(f"cannot {op} while {self._state.value}")

    def _spawn(self, loop: asyncio.AbstractEventLoop, factory: TaskFactory) -> asyncio.Task:
        token = CancellationToken()
        task = loop.create_task(factory(token))
        self._task = task
        self._token = token
        return task

    def _cancel_inflight(self) -> asyncio.Task | None:
        task = self._task
        if task is None or task.done():
            return None
        if self._token is not None:
            self._token.cancel()
        task.cancel()
        return task

    def _fail(self, op: str, exc: Exception) -> None:
        if isinstance(exc, EngineError):
            LOGGER.error("%s() failed: %s", op, exc)
        else:
            LOGGER.exception("%s() failed unexpectedly", op)
        self._append(error_message(exc))

    def _finish(self, expected: SessionState, to_state: SessionState) -> None:
        with self._lock:
            # Unload may already have claimed the session.
            if self._state == expected:
                self._transition(to_state)

    def _append(self, entry: TranscriptEntry) -> None:
        with self._lock:
            self._transcript.append(entry)
            self._notify_transcript()

    def _append_fragment(self, fragment: str) -> None:
        with self._lock:
            try:
                self._transcript.append_to_last(fragment)
            except EmptyLogError:
                # Cleared mid-stream; the rest of the reply starts a new entry.
                self._transcript.append(fragment)
            self._notify_transcript()

    def _notify_transcript(self) -> None:
        if self._on_transcript_change:
            self._on_transcript_change(self._transcript.snapshot())

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        LOGGER.debug("Session state %s -> %s", from_state.value, to_state.value)
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
