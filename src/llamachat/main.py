"""LlamaChat UI entrypoint."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
from typing import AsyncIterator

import gradio as gr
import torch

from .config import AppConfig, RootConfig, load_config, model_path
from .engines.airllm_engine import AirLLMEngine
from .engines.base import DeviceSpec
from .errors import StateError
from .session.controller import SessionController
from .ui.state import SessionRegistry

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="LlamaChat UI")
    parser.add_argument("--config", default="configs/llamachat.yaml")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--title")
    parser.add_argument("--storage-root")
    parser.add_argument("--model-filename")
    parser.add_argument("--gpu-index", type=int)
    parser.add_argument("--log-level")
    parser.add_argument("--offline", action="store_true")
    parser.add_argument("--share", action="store_true")
    return parser.parse_args()


def load_root_config(path: str) -> RootConfig:
    if not os.path.exists(path):
        return RootConfig()
    return load_config(path)


def apply_overrides(cfg: RootConfig, args: argparse.Namespace) -> RootConfig:
    if args.title:
        cfg.app.title = args.title
    if args.host:
        cfg.app.host = args.host
    if args.port is not None:
        cfg.app.port = args.port
    if args.storage_root:
        cfg.app.storage_root = args.storage_root
    if args.model_filename:
        cfg.app.model_filename = args.model_filename
    if args.gpu_index is not None:
        cfg.app.gpu_index = args.gpu_index
    if args.log_level:
        cfg.app.log_level = args.log_level.upper()
    if args.offline:
        cfg.app.offline_mode = True
    return cfg


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def ensure_offline(cfg: AppConfig) -> None:
    if cfg.offline_mode:
        os.environ.setdefault("HF_HUB_OFFLINE", "1")
        os.environ.setdefault("TRANSFORMERS_OFFLINE", "1")


def _build_device(cfg: AppConfig) -> DeviceSpec:
    if torch.cuda.is_available() and cfg.gpu_index is not None and cfg.gpu_index >= 0:
        return DeviceSpec(kind="cuda", gpu_index=cfg.gpu_index)
    return DeviceSpec(kind="cpu", gpu_index=None)


def render_transcript(entries: tuple[str, ...]) -> str:
    return "\n".join(entries)


def greeting_lines(cfg: AppConfig) -> list[str]:
    return [
        f"Models directory: {os.path.abspath(cfg.storage_root)}",
        f"Model path: {model_path(cfg)}",
    ]


def _status(controller: SessionController) -> str:
    return f"**state:** {controller.state.value}"


def build_app(cfg: RootConfig) -> gr.Blocks:
    device = _build_device(cfg.app)

    def _greet(controller: SessionController) -> None:
        for line in greeting_lines(cfg.app):
            controller.log(line)

    registry = SessionRegistry(
        lambda: AirLLMEngine(device, cfg.engine, cfg.generation_defaults),
        bench_cfg=cfg.bench,
        on_open=_greet,
    )
    poll_s = max(cfg.app.poll_interval_ms, 10) / 1000.0

    def _controller(request: gr.Request) -> SessionController:
        return registry.get(request.session_hash)

    async def _follow(
        controller: SessionController, task: asyncio.Task
    ) -> AsyncIterator[tuple[str, str]]:
        while not task.done():
            yield render_transcript(controller.transcript), _status(controller)
            await asyncio.sleep(poll_s)
        yield render_transcript(controller.transcript), _status(controller)

    with gr.Blocks(title=cfg.app.title) as demo:
        gr.Markdown(f"# {cfg.app.title}")

        with gr.Row():
            path_box = gr.Textbox(label="Model path", value=model_path(cfg.app), scale=4)
            load_btn = gr.Button("Load")
            unload_btn = gr.Button("Unload")

        status_md = gr.Markdown("**state:** unloaded")
        transcript_box = gr.Textbox(
            label="Transcript", lines=20, interactive=False, show_copy_button=True
        )
        user_input = gr.Textbox(label="Message", placeholder="Type a message...")
        with gr.Row():
            send_btn = gr.Button("Send")
            clear_btn = gr.Button("Clear")

        with gr.Accordion("Benchmark", open=False):
            with gr.Row():
                pp_num = gr.Number(label="pp", value=cfg.bench.warmup_pp, precision=0)
                tg_num = gr.Number(label="tg", value=cfg.bench.warmup_tg, precision=0)
                pl_num = gr.Number(label="pl", value=cfg.bench.warmup_pl, precision=0)
                nr_num = gr.Number(label="nr", value=cfg.bench.warmup_nr, precision=0)
            bench_btn = gr.Button("Run benchmark")

        async def _handle_load(path: str, request: gr.Request):
            controller = _controller(request)
            try:
                task = controller.load(path)
            except StateError as exc:
                gr.Warning(str(exc))
                yield render_transcript(controller.transcript), _status(controller)
                return
            async for update in _follow(controller, task):
                yield update

        async def _handle_unload(request: gr.Request):
            controller = _controller(request)
            try:
                task = controller.unload()
            except StateError as exc:
                gr.Warning(str(exc))
                yield render_transcript(controller.transcript), _status(controller)
                return
            async for update in _follow(controller, task):
                yield update

        async def _handle_send(message: str, request: gr.Request):
            controller = _controller(request)
            controller.update_draft(message)
            try:
                task = controller.send()
            except StateError as exc:
                gr.Warning(str(exc))
                yield render_transcript(controller.transcript), _status(controller), message
                return
            async for transcript, status in _follow(controller, task):
                yield transcript, status, controller.draft

        async def _handle_bench(pp: float, tg: float, pl: float, nr: float, request: gr.Request):
            controller = _controller(request)
            try:
                task = controller.benchmark(int(pp), int(tg), int(pl), int(nr))
            except StateError as exc:
                gr.Warning(str(exc))
                yield render_transcript(controller.transcript), _status(controller)
                return
            async for update in _follow(controller, task):
                yield update

        def _handle_clear(request: gr.Request):
            controller = _controller(request)
            controller.clear()
            return render_transcript(controller.transcript), _status(controller)

        def _handle_open(request: gr.Request):
            controller = _controller(request)
            return render_transcript(controller.transcript), _status(controller)

        async def _handle_close(request: gr.Request) -> None:
            await registry.close(request.session_hash)

        load_btn.click(_handle_load, inputs=[path_box], outputs=[transcript_box, status_md])
        unload_btn.click(_handle_unload, inputs=[], outputs=[transcript_box, status_md])
        send_btn.click(
            _handle_send,
            inputs=[user_input],
            outputs=[transcript_box, status_md, user_input],
        )
        user_input.submit(
            _handle_send,
            inputs=[user_input],
            outputs=[transcript_box, status_md, user_input],
        )
        bench_btn.click(
            _handle_bench,
            inputs=[pp_num, tg_num, pl_num, nr_num],
            outputs=[transcript_box, status_md],
        )
        clear_btn.click(_handle_clear, inputs=[], outputs=[transcript_box, status_md])
        demo.load(_handle_open, inputs=[], outputs=[transcript_box, status_md])
        demo.unload(_handle_close)

    return demo


def main() -> None:
    args = parse_args()
    cfg = load_root_config(args.config)
    cfg = apply_overrides(cfg, args)
    configure_logging(cfg.app.log_level)
    ensure_offline(cfg.app)

    LOGGER.info("Model path: %s", model_path(cfg.app))
    app = build_app(cfg)
    app.queue(default_concurrency_limit=cfg.app.concurrency_limit)
    app.launch(server_name=cfg.app.host, server_port=cfg.app.port, share=args.share)


if __name__ == "__main__":
    main()
