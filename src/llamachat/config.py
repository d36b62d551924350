"""Configuration loading and dataclasses."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

import yaml


@dataclass
class AppConfig:
    title: str = "LlamaChat"
    host: str = "127.0.0.1"
    port: int = 7860
    concurrency_limit: int = 4
    storage_root: str = "./models"
    model_filename: str = "model"
    offline_mode: bool = True
    gpu_index: int | None = 0
    poll_interval_ms: int = 100
    log_level: str = "INFO"


@dataclass
class GenerationDefaults:
    max_new_tokens: int = 256
    temperature: float = 0.0
    top_p: float = 1.0
    do_sample: bool = False
    max_context: int = 4096


@dataclass
class EngineConfig:
    compression: str | None = None
    layer_cache_dir: str = "./cache/airllm_layers"


@dataclass
class BenchConfig:
    # Warm-up latency above which the main phase is skipped.
    abort_after_s: float = 5.0
    main_pp: int = 512
    main_tg: int = 128
    main_pl: int = 1
    main_nr: int = 3
    warmup_pp: int = 8
    warmup_tg: int = 4
    warmup_pl: int = 1
    warmup_nr: int = 1
    output_dir: str | None = None


@dataclass
class RootConfig:
    app: AppConfig = field(default_factory=AppConfig)
    generation_defaults: GenerationDefaults = field(default_factory=GenerationDefaults)
    engine: EngineConfig = field(default_factory=EngineConfig)
    bench: BenchConfig = field(default_factory=BenchConfig)


def model_path(cfg: AppConfig) -> str:
    return os.path.join(cfg.storage_root, cfg.model_filename)


def _get(data: dict[str, Any], key: str, default: Any) -> Any:
    return data.get(key, default) if isinstance(data, dict) else default


def load_config(path: str) -> RootConfig:
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    app_raw = _get(raw, "app", {})
    gen_raw = _get(raw, "generation_defaults", {})
    engine_raw = _get(raw, "engine", {})
    bench_raw = _get(raw, "bench", {})

    app = AppConfig(
        title=_get(app_raw, "title", AppConfig.title),
        host=_get(app_raw, "host", AppConfig.host),
        port=int(_get(app_raw, "port", AppConfig.port)),
        concurrency_limit=int(_get(app_raw, "concurrency_limit", AppConfig.concurrency_limit)),
        storage_root=_get(app_raw, "storage_root", AppConfig.storage_root),
        model_filename=_get(app_raw, "model_filename", AppConfig.model_filename),
        offline_mode=bool(_get(app_raw, "offline_mode", AppConfig.offline_mode)),
        gpu_index=_get(app_raw, "gpu_index", AppConfig.gpu_index),
        poll_interval_ms=int(_get(app_raw, "poll_interval_ms", AppConfig.poll_interval_ms)),
        log_level=str(_get(app_raw, "log_level", AppConfig.log_level)).upper(),
    )

    gen = GenerationDefaults(
        max_new_tokens=int(_get(gen_raw, "max_new_tokens", GenerationDefaults.max_new_tokens)),
        temperature=float(_get(gen_raw, "temperature", GenerationDefaults.temperature)),
        top_p=float(_get(gen_raw, "top_p", GenerationDefaults.top_p)),
        do_sample=bool(_get(gen_raw, "do_sample", GenerationDefaults.do_sample)),
        max_context=int(_get(gen_raw, "max_context", GenerationDefaults.max_context)),
    )

    engine = EngineConfig(
        compression=_get(engine_raw, "compression", EngineConfig.compression),
        layer_cache_dir=_get(engine_raw, "layer_cache_dir", EngineConfig.layer_cache_dir),
    )

    bench = BenchConfig(
        abort_after_s=float(_get(bench_raw, "abort_after_s", BenchConfig.abort_after_s)),
        main_pp=int(_get(bench_raw, "main_pp", BenchConfig.main_pp)),
        main_tg=int(_get(bench_raw, "main_tg", BenchConfig.main_tg)),
        main_pl=int(_get(bench_raw, "main_pl", BenchConfig.main_pl)),
        main_nr=int(_get(bench_raw, "main_nr", BenchConfig.main_nr)),
        warmup_pp=int(_get(bench_raw, "warmup_pp", BenchConfig.warmup_pp)),
        warmup_tg=int(_get(bench_raw, "warmup_tg", BenchConfig.warmup_tg)),
        warmup_pl=int(_get(bench_raw, "warmup_pl", BenchConfig.warmup_pl)),
        warmup_nr=int(_get(bench_raw, "warmup_nr", BenchConfig.warmup_nr)),
        output_dir=_get(bench_raw, "output_dir", BenchConfig.output_dir),
    )

    return RootConfig(
        app=app,
        generation_defaults=gen,
        engine=engine,
        bench=bench,
    )
