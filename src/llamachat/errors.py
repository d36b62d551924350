"""Error types shared across the session, engine and transcript layers."""
from __future__ import annotations


class LlamaChatError(Exception):
    """Base class for all LlamaChat errors."""


class StateError(LlamaChatError):
    """An operation was requested while the session is in an incompatible state."""


class EngineError(LlamaChatError):
    """Any failure surfaced by the inference engine."""


class EmptyLogError(LlamaChatError):
    """The transcript has no entry to extend."""


def error_message(exc: BaseException) -> str:
    message = str(exc)
    return message if message else exc.__class__.__name__
