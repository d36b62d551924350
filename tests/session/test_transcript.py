"""Tests for TranscriptLog."""

import threading

import pytest

from llamachat.errors import EmptyLogError
from llamachat.session.transcript import TranscriptLog


class TestTranscriptLog:
    def test_append_keeps_insertion_order(self):
        log = TranscriptLog()
        log.append("one")
        log.append("two")

        assert log.snapshot() == ("one", "two")
        assert len(log) == 2

    def test_append_to_last_concatenates(self):
        log = TranscriptLog()
        log.append("question")
        log.append("")

        for fragment in ["H", "i", "!"]:
            log.append_to_last(fragment)

        assert log.snapshot() == ("question", "Hi!")
        assert log.last() == "Hi!"

    def test_append_to_last_on_empty_log_raises(self):
        log = TranscriptLog()

        with pytest.raises(EmptyLogError):
            log.append_to_last("x")

        assert log.snapshot() == ()

    def test_last_on_empty_log_raises(self):
        with pytest.raises(EmptyLogError):
            TranscriptLog().last()

    def test_clear_empties_log(self):
        log = TranscriptLog()
        log.append("a")
        log.append("b")

        log.clear()

        assert log.snapshot() == ()
        assert len(log) == 0

    def test_snapshot_is_detached_from_later_appends(self):
        log = TranscriptLog()
        log.append("a")
        before = log.snapshot()

        log.append("b")
        log.append_to_last("c")

        assert before == ("a",)
        assert log.snapshot() == ("a", "bc")

    def test_concurrent_readers_never_see_torn_entries(self):
        """Readers see whole prefixes of the final text while a writer appends."""
        log = TranscriptLog()
        log.append("")
        fragments = [str(i % 10) for i in range(2000)]
        final = "".join(fragments)
        seen: list[str] = []
        done = threading.Event()

        def reader():
            while not done.is_set():
                seen.append(log.snapshot()[-1])

        thread = threading.Thread(target=reader)
        thread.start()
        for fragment in fragments:
            log.append_to_last(fragment)
        done.set()
        thread.join()

        assert log.last() == final
        assert all(final.startswith(value) for value in seen)
