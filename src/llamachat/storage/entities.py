"""Stored document chunks with their embeddings."""
from __future__ import annotations

import struct
from dataclasses import dataclass


@dataclass(frozen=True)
class DocChunk:
    """A chunk of source text and its embedding, keyed by ``id``.

    Two chunks are equal when id, text and every embedding component match.
    """

    id: int
    chunk_text: str
    embedding: tuple[float, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "embedding", tuple(float(v) for v in self.embedding))

    @property
    def dim(self) -> int:
        return len(self.embedding)

    def to_bytes(self) -> bytes:
        return struct.pack(f"<{self.dim}f", *self.embedding)

    @classmethod
    def from_bytes(cls, id: int, chunk_text: str, raw: bytes) -> "DocChunk":
        if len(raw) % 4:
            raise ValueError(f"embedding blob length {len(raw)} is not a multiple of 4")
        count = len(raw) // 4
        return cls(id=id, chunk_text=chunk_text, embedding=struct.unpack(f"<{count}f", raw))
