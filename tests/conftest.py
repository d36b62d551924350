"""Shared fakes for session and benchmark tests."""
from __future__ import annotations

import asyncio
from typing import Iterable

import pytest

from llamachat.errors import EngineError


class FakeEngine:
    """In-memory engine recording every call it receives."""

    def __init__(
        self,
        fragments: Iterable[str] = (),
        load_error: Exception | None = None,
        send_error: Exception | None = None,
        bench_errors: dict[int, Exception] | None = None,
        unload_error: Exception | None = None,
    ) -> None:
        self.fragments = list(fragments)
        self.load_error = load_error
        self.send_error = send_error
        self.bench_errors = bench_errors or {}
        self.unload_error = unload_error
        self.calls: list[tuple] = []
        self.gate: asyncio.Event | None = None
        self.stream_closed = False

    async def load(self, path: str) -> None:
        self.calls.append(("load", path))
        if self.gate is not None:
            await self.gate.wait()
        if self.load_error is not None:
            raise self.load_error

    async def send(self, text: str):
        self.calls.append(("send", text))
        try:
            for fragment in self.fragments:
                if self.gate is not None:
                    await self.gate.wait()
                await asyncio.sleep(0)
                yield fragment
            if self.send_error is not None:
                raise self.send_error
        finally:
            self.stream_closed = True

    async def bench(self, pp: int, tg: int, pl: int, nr: int) -> str:
        index = len([c for c in self.calls if c[0] == "bench"])
        self.calls.append(("bench", (pp, tg, pl, nr)))
        if self.gate is not None:
            await self.gate.wait()
        if index in self.bench_errors:
            raise self.bench_errors[index]
        return f"bench pp={pp} tg={tg} pl={pl} nr={nr}"

    async def unload(self) -> None:
        self.calls.append(("unload",))
        if self.unload_error is not None:
            raise self.unload_error

    def bench_calls(self) -> list[tuple[int, int, int, int]]:
        return [c[1] for c in self.calls if c[0] == "bench"]


class FakeClock:
    """Returns the queued readings one per call."""

    def __init__(self, *readings: float) -> None:
        self._readings = list(readings)

    def __call__(self) -> float:
        return self._readings.pop(0)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine(fragments=["H", "i", "!"])


@pytest.fixture
def failing_engine() -> FakeEngine:
    return FakeEngine(load_error=EngineError("model file is corrupt"))
