"""Engine protocol and dataclasses."""
from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Literal, Protocol


@dataclass
class DeviceSpec:
    kind: Literal["cuda", "cpu"]
    gpu_index: int | None


@dataclass
class GenerationSpec:
    max_new_tokens: int
    temperature: float
    top_p: float
    do_sample: bool
    max_context: int


class InferenceEngine(Protocol):
    """Capability consumed by the session controller.

    Every method reports failure by raising ``EngineError``. ``send`` yields
    text fragments in production order and may fail part way through; the
    returned iterator is not restartable.
    """

    async def load(self, path: str) -> None:
        ...

    def send(self, text: str) -> AsyncIterator[str]:
        ...

    async def bench(self, pp: int, tg: int, pl: int, nr: int) -> str:
        ...

    async def unload(self) -> None:
        ...
