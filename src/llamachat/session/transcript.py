"""Ordered transcript of conversation entries."""
from __future__ import annotations

import threading

from ..errors import EmptyLogError

TranscriptEntry = str


class TranscriptLog:
    """Append-only log whose last entry may grow by concatenation.

    Entries are immutable strings. ``append_to_last`` swaps the last slot for
    a new string, so a ``snapshot`` taken from another thread sees either the
    old or the new value of that slot.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[TranscriptEntry] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def append(self, entry: TranscriptEntry) -> None:
        with self._lock:
            self._entries.append(str(entry))

    def append_to_last(self, fragment: str) -> None:
        with self._lock:
            if not self._entries:
                raise EmptyLogError("cannot append to the last entry of an empty transcript")
            self._entries[-1] = self._entries[-1] + fragment

    def last(self) -> TranscriptEntry:
        with self._lock:
            if not self._entries:
                raise EmptyLogError("transcript is empty")
            return self._entries[-1]

    def clear(self) -> None:
        with self._lock:
            self._entries = []

    def snapshot(self) -> tuple[TranscriptEntry, ...]:
        with self._lock:
            return tuple(self._entries)
