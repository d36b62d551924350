"""AirLLM engine implementation."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, AsyncIterator

import torch
from airllm import AutoModel
from transformers import StoppingCriteria, StoppingCriteriaList, TextIteratorStreamer

from .base import DeviceSpec, GenerationSpec
from ..bench.report import format_bench_table
from ..config import EngineConfig, GenerationDefaults
from ..errors import EngineError
from ..prompts import build_chat_messages, render_prompt

LOGGER = logging.getLogger(__name__)

_STREAM_END = object()


def _ensure_safetensors_index(model_path: str) -> None:
    index_path = Path(model_path) / "model.safetensors.index.json"
    if index_path.exists():
        return
    st_path = Path(model_path) / "model.safetensors"
    if not st_path.exists():
        return
    from safetensors import safe_open

    weight_map: dict[str, str] = {}
    with safe_open(str(st_path), framework="pt") as f:
        for key in f.keys():
            weight_map[key] = st_path.name
    data = {
        "metadata": {"total_size": os.path.getsize(st_path)},
        "weight_map": weight_map,
    }
    with open(index_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle)


def _resolve_cache_dir(base_dir: str, model_key: str) -> str:
    if not base_dir:
        return base_dir
    if "{model_key}" in base_dir:
        return base_dir.replace("{model_key}", model_key)
    base = os.path.basename(base_dir.rstrip("/\\"))
    if base != model_key:
        return os.path.join(base_dir, model_key)
    return base_dir


def _model_size_bytes(model_path: str) -> int:
    path = Path(model_path)
    if path.is_file():
        return path.stat().st_size
    if not path.is_dir():
        return 0
    return sum(p.stat().st_size for p in path.glob("*.safetensors"))


def _model_desc(model: Any, model_path: str) -> str:
    config = getattr(model, "config", None)
    model_type = getattr(config, "model_type", None)
    name = os.path.basename(model_path.rstrip("/\\"))
    return f"{name} ({model_type})" if model_type else name


def _sync(device: torch.device | None) -> None:
    if device is not None and device.type == "cuda":
        torch.cuda.synchronize(device)


class _StopOnEvent(StoppingCriteria):
    """Ends generation once its event is set."""

    def __init__(self, event: threading.Event) -> None:
        self._event = event

    def __call__(self, input_ids: Any, scores: Any, **kwargs: Any) -> bool:
        return self._event.is_set()


class AirLLMEngine:
    """Layer-streaming engine over ``airllm``.

    The blocking model calls run in worker threads so the session's event
    loop keeps serving the UI. ``_call_lock`` keeps a single model call in
    flight, so unloading waits for a running load, generate or bench to
    return before the model is dropped. Each unload bumps ``_epoch``; a load
    that started under an older epoch discards its model.
    """

    def __init__(
        self,
        device: DeviceSpec,
        engine_cfg: EngineConfig | None = None,
        gen_defaults: GenerationDefaults | None = None,
    ) -> None:
        self._device_spec = device
        self._engine_cfg = engine_cfg or EngineConfig()
        self._gen_defaults = gen_defaults or GenerationDefaults()
        self._model: Any | None = None
        self._tokenizer: Any | None = None
        self._device: torch.device | None = None
        self._model_path: str | None = None
        self._call_lock = threading.Lock()
        self._epoch = 0
        self._stops: set[threading.Event] = set()

    @property
    def loaded(self) -> bool:
        return self._model is not None

    # Blocking primitives

    def _load_sync(self, model_path: str, epoch: int) -> None:
        with self._call_lock:
            if epoch != self._epoch:
                return
            device = self._device_spec
            if device.kind == "cuda" and torch.cuda.is_available():
                index = device.gpu_index if device.gpu_index is not None else 0
                target = torch.device(f"cuda:{index}")
            else:
                target = torch.device("cpu")

            if not os.path.exists(model_path):
                raise EngineError(f"Model path not found: {model_path}")
            if os.path.isdir(model_path):
                _ensure_safetensors_index(model_path)

            model_key = os.path.basename(model_path.rstrip("/\\"))
            cache_dir = _resolve_cache_dir(self._engine_cfg.layer_cache_dir, model_key)
            if cache_dir:
                os.makedirs(cache_dir, exist_ok=True)

            model = AutoModel.from_pretrained(
                model_path,
                layer_shards_saving_path=cache_dir,
                compression=self._engine_cfg.compression,
            )
            tokenizer = getattr(model, "tokenizer", None)
            if tokenizer is None:
                raise EngineError("Model tokenizer not available")
            if epoch != self._epoch:
                LOGGER.info("Discarding %s, unloaded while loading", model_path)
                return
            self._model = model
            self._tokenizer = tokenizer
            self._device = target
            self._model_path = model_path

    def _unload_sync(self) -> None:
        with self._call_lock:
            self._model = None
            self._tokenizer = None
            self._device = None
            self._model_path = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    def _require_loaded(self) -> None:
        if self._model is None or self._tokenizer is None or self._device is None:
            raise EngineError("Engine not loaded")

    def _generate_sync(
        self,
        prompt: str,
        gen: GenerationSpec,
        streamer: TextIteratorStreamer,
        stop: threading.Event,
    ) -> None:
        try:
            with self._call_lock:
                self._require_loaded()
                inputs = self._tokenizer(
                    prompt,
                    return_tensors="pt",
                    truncation=True,
                    max_length=gen.max_context,
                )
                input_ids = inputs["input_ids"].to(self._device)
                attention_mask = inputs.get("attention_mask")
                if attention_mask is not None:
                    attention_mask = attention_mask.to(self._device)
                self._model.generate(
                    input_ids=input_ids,
                    attention_mask=attention_mask,
                    max_new_tokens=gen.max_new_tokens,
                    temperature=gen.temperature,
                    top_p=gen.top_p,
                    do_sample=gen.do_sample,
                    use_cache=False,
                    streamer=streamer,
                    stopping_criteria=StoppingCriteriaList([_StopOnEvent(stop)]),
                )
        except BaseException:
            # Unblocks the consumer when generate() raised before ending the stream.
            streamer.end()
            raise

    def _bench_sync(self, pp: int, tg: int, pl: int, nr: int) -> str:
        pp_rates: list[float] = []
        tg_rates: list[float] = []
        with self._call_lock, torch.no_grad():
            self._require_loaded()
            vocab = int(getattr(self._tokenizer, "vocab_size", 0) or 32000)
            for _ in range(max(1, nr)):
                prompt_ids = torch.randint(0, vocab, (pl, pp), device=self._device)
                _sync(self._device)
                start = time.perf_counter()
                self._model(input_ids=prompt_ids)
                _sync(self._device)
                pp_time = time.perf_counter() - start
                pp_rates.append(pp * pl / pp_time if pp_time > 0 else 0.0)

                seed_ids = torch.randint(0, vocab, (pl, 1), device=self._device)
                start = time.perf_counter()
                self._model.generate(
                    input_ids=seed_ids,
                    max_new_tokens=tg,
                    min_new_tokens=tg,
                    do_sample=False,
                    use_cache=False,
                )
                _sync(self._device)
                tg_time = time.perf_counter() - start
                tg_rates.append(tg * pl / tg_time if tg_time > 0 else 0.0)

            return format_bench_table(
                model_desc=_model_desc(self._model, self._model_path or ""),
                size_bytes=_model_size_bytes(self._model_path or ""),
                backend=self._device.type.upper(),
                pp=pp,
                tg=tg,
                pp_rates=pp_rates,
                tg_rates=tg_rates,
            )

    # Engine contract

    async def load(self, path: str) -> None:
        epoch = self._epoch
        try:
            await asyncio.to_thread(self._load_sync, path, epoch)
        except EngineError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise EngineError(f"Failed to load {path}: {exc}") from exc

    async def unload(self) -> None:
        self._epoch += 1
        for stop in list(self._stops):
            stop.set()
        try:
            await asyncio.to_thread(self._unload_sync)
        except Exception as exc:  # noqa: BLE001
            raise EngineError(f"Failed to unload: {exc}") from exc

    async def bench(self, pp: int, tg: int, pl: int, nr: int) -> str:
        try:
            return await asyncio.to_thread(self._bench_sync, pp, tg, pl, nr)
        except EngineError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise EngineError(f"bench() failed: {exc}") from exc

    async def send(self, text: str) -> AsyncIterator[str]:
        self._require_loaded()
        defaults = self._gen_defaults
        gen = GenerationSpec(
            max_new_tokens=defaults.max_new_tokens,
            temperature=defaults.temperature,
            top_p=defaults.top_p,
            do_sample=defaults.do_sample,
            max_context=defaults.max_context,
        )
        prompt = render_prompt(self._tokenizer, build_chat_messages(text))
        streamer = TextIteratorStreamer(
            self._tokenizer, skip_prompt=True, skip_special_tokens=True
        )
        stop = threading.Event()
        errors: list[BaseException] = []

        def _worker() -> None:
            try:
                self._generate_sync(prompt, gen, streamer, stop)
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        self._stops.add(stop)
        thread = threading.Thread(target=_worker, daemon=True)
        thread.start()
        try:
            fragments = iter(streamer)
            while True:
                fragment = await asyncio.to_thread(next, fragments, _STREAM_END)
                if fragment is _STREAM_END:
                    break
                if fragment:
                    yield fragment
            await asyncio.to_thread(thread.join)
        finally:
            # Consumer gone or done; a still running generate() stops at its next token.
            stop.set()
            self._stops.discard(stop)
        if errors:
            LOGGER.debug("generate() worker failed", exc_info=errors[0])
            raise EngineError(f"Generation failed: {errors[0]}") from errors[0]
