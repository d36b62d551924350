"""Tests for the DocChunk entity."""

import pytest

from llamachat.storage.entities import DocChunk


class TestDocChunk:
    def test_equality_compares_embedding_contents(self):
        a = DocChunk(id=1, chunk_text="alpha", embedding=[0.5, 1.0, -2.0])
        b = DocChunk(id=1, chunk_text="alpha", embedding=(0.5, 1.0, -2.0))

        assert a == b
        assert hash(a) == hash(b)
        assert a is not b

    def test_any_field_difference_breaks_equality(self):
        base = DocChunk(id=1, chunk_text="alpha", embedding=(0.5, 1.0))

        assert base != DocChunk(id=2, chunk_text="alpha", embedding=(0.5, 1.0))
        assert base != DocChunk(id=1, chunk_text="beta", embedding=(0.5, 1.0))
        assert base != DocChunk(id=1, chunk_text="alpha", embedding=(0.5, 1.5))

    def test_bytes_round_trip_preserves_float32_values(self):
        chunk = DocChunk(id=7, chunk_text="text", embedding=(0.25, -1.5, 3.0))

        raw = chunk.to_bytes()

        assert len(raw) == 12
        assert DocChunk.from_bytes(7, "text", raw) == chunk

    def test_from_bytes_rejects_truncated_blob(self):
        with pytest.raises(ValueError):
            DocChunk.from_bytes(1, "x", b"\x00\x00\x00")

    def test_is_immutable(self):
        chunk = DocChunk(id=1, chunk_text="x", embedding=(1.0,))

        with pytest.raises(AttributeError):
            chunk.chunk_text = "y"
