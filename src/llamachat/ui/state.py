"""UI session state."""
from __future__ import annotations

import logging
import threading
from typing import Callable

from ..config import BenchConfig
from ..engines.base import InferenceEngine
from ..session.controller import SessionController

LOGGER = logging.getLogger(__name__)

EngineFactory = Callable[[], InferenceEngine]
OpenHook = Callable[[SessionController], None]


class SessionRegistry:
    """One controller, with its own engine, per UI session."""

    def __init__(
        self,
        engine_factory: EngineFactory,
        bench_cfg: BenchConfig | None = None,
        on_open: OpenHook | None = None,
    ) -> None:
        self._engine_factory = engine_factory
        self._bench_cfg = bench_cfg or BenchConfig()
        self._on_open = on_open
        self._lock = threading.Lock()
        self._sessions: dict[str, SessionController] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get(self, session_id: str) -> SessionController:
        with self._lock:
            controller = self._sessions.get(session_id)
            if controller is None:
                controller = SessionController(self._engine_factory(), bench_cfg=self._bench_cfg)
                self._sessions[session_id] = controller
                LOGGER.info("Opened session %s", session_id)
                if self._on_open is not None:
                    self._on_open(controller)
            return controller

    async def close(self, session_id: str) -> None:
        with self._lock:
            controller = self._sessions.pop(session_id, None)
        if controller is None:
            return
        await controller.shutdown()
        LOGGER.info("Closed session %s", session_id)

    async def close_all(self) -> None:
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            await self.close(session_id)
