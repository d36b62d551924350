"""Tests for AirLLMEngine behaviour that needs no model weights."""

import asyncio
import os
import threading
import time

import pytest

torch = pytest.importorskip("torch")
pytest.importorskip("airllm")

from llamachat.config import EngineConfig  # noqa: E402
from llamachat.engines import airllm_engine  # noqa: E402
from llamachat.engines.airllm_engine import (  # noqa: E402
    AirLLMEngine,
    _StopOnEvent,
    _model_size_bytes,
    _resolve_cache_dir,
)
from llamachat.engines.base import DeviceSpec  # noqa: E402
from llamachat.errors import EngineError  # noqa: E402
from llamachat.session.controller import SessionController, SessionState  # noqa: E402


def _engine() -> AirLLMEngine:
    return AirLLMEngine(DeviceSpec(kind="cpu", gpu_index=None))


def test_resolve_cache_dir_substitutes_model_key():
    assert _resolve_cache_dir("cache/{model_key}/layers", "tiny") == "cache/tiny/layers"


def test_resolve_cache_dir_appends_model_key():
    assert _resolve_cache_dir("cache", "tiny") == os.path.join("cache", "tiny")
    assert _resolve_cache_dir("cache/tiny", "tiny") == "cache/tiny"
    assert _resolve_cache_dir("", "tiny") == ""


def test_model_size_counts_safetensors_shards(tmp_path):
    (tmp_path / "a.safetensors").write_bytes(b"x" * 10)
    (tmp_path / "b.safetensors").write_bytes(b"x" * 5)
    (tmp_path / "config.json").write_text("{}", encoding="utf-8")

    assert _model_size_bytes(str(tmp_path)) == 15
    assert _model_size_bytes(str(tmp_path / "missing")) == 0


@pytest.mark.asyncio
async def test_load_missing_path_raises_engine_error(tmp_path):
    with pytest.raises(EngineError, match="Model path not found"):
        await _engine().load(str(tmp_path / "nope"))


@pytest.mark.asyncio
async def test_bench_before_load_raises_engine_error():
    with pytest.raises(EngineError, match="Engine not loaded"):
        await _engine().bench(8, 4, 1, 1)


@pytest.mark.asyncio
async def test_send_before_load_raises_engine_error():
    with pytest.raises(EngineError, match="Engine not loaded"):
        async for _ in _engine().send("hi"):
            pass


@pytest.mark.asyncio
async def test_unload_when_not_loaded_is_harmless():
    engine = _engine()

    await engine.unload()
    await engine.unload()


class _FakeTokenizer:
    vocab_size = 16

    def __call__(self, prompt, **kwargs):
        return {"input_ids": torch.tensor([[1, 2, 3]])}

    def decode(self, ids, **kwargs):
        return ""


class _FakeModel:
    """Generates nothing until its stopping criteria fire."""

    def __init__(self):
        self.tokenizer = _FakeTokenizer()
        self.generating = threading.Event()
        self.stopped = threading.Event()

    def generate(self, streamer=None, stopping_criteria=None, **kwargs):
        self.generating.set()
        while not any(criteria(None, None) for criteria in stopping_criteria):
            time.sleep(0.01)
        self.stopped.set()
        streamer.end()


def _slow_auto_model(started: threading.Event, model: _FakeModel, delay: float = 0.3):
    class _AutoModel:
        @staticmethod
        def from_pretrained(path, **kwargs):
            started.set()
            time.sleep(delay)
            return model

    return _AutoModel


def _engine_in(tmp_path) -> AirLLMEngine:
    return AirLLMEngine(
        DeviceSpec(kind="cpu", gpu_index=None),
        EngineConfig(layer_cache_dir=str(tmp_path / "cache")),
    )


def test_stop_criteria_follows_event():
    event = threading.Event()
    criteria = _StopOnEvent(event)

    assert criteria(None, None) is False
    event.set()
    assert criteria(None, None) is True


@pytest.mark.asyncio
async def test_load_commits_model(tmp_path, monkeypatch):
    started = threading.Event()
    monkeypatch.setattr(airllm_engine, "AutoModel", _slow_auto_model(started, _FakeModel(), delay=0.0))
    engine = _engine_in(tmp_path)

    await engine.load(str(tmp_path))

    assert engine.loaded


@pytest.mark.asyncio
async def test_unload_during_load_leaves_engine_empty(tmp_path, monkeypatch):
    started = threading.Event()
    monkeypatch.setattr(airllm_engine, "AutoModel", _slow_auto_model(started, _FakeModel()))
    engine = _engine_in(tmp_path)
    controller = SessionController(engine)

    load_task = controller.load(str(tmp_path))
    assert await asyncio.to_thread(started.wait, 2.0)
    await controller.unload()

    assert load_task.cancelled()
    assert controller.state == SessionState.UNLOADED
    assert not engine.loaded
    await asyncio.sleep(0.4)
    assert not engine.loaded


@pytest.mark.asyncio
async def test_unload_during_stream_stops_generation(tmp_path, monkeypatch):
    model = _FakeModel()
    monkeypatch.setattr(airllm_engine, "AutoModel", _slow_auto_model(threading.Event(), model, delay=0.0))
    engine = _engine_in(tmp_path)
    controller = SessionController(engine)
    await controller.load(str(tmp_path))
    controller.update_draft("hi")

    send_task = controller.send()
    assert await asyncio.to_thread(model.generating.wait, 2.0)
    await asyncio.wait_for(controller.unload(), timeout=5.0)

    assert send_task.cancelled()
    assert model.stopped.is_set()
    assert not engine.loaded
    assert controller.state == SessionState.UNLOADED
