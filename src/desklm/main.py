"""DeskLM UI entrypoint."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Any

import gradio as gr
import torch

from .catalog import DEFAULT_CATALOG, ModelCatalog, ModelCategory
from .config import AppConfig, RootConfig, SettingsStore, load_config, settings_from_config
from .downloads import HubDownloader, ModelStore
from .engines.airllm_engine import AirLLMEngine
from .engines.base import DeviceSpec, GenerationSpec, LLMEngine
from .engines.remote_engine import RemoteEngine
from .errors import OrchestratorBusy
from .generation import GenerationEngine, split_thinking
from .lifecycle import ModelLifecycleManager, describe_state
from .metrics.resource_monitor import ResourceMonitor, format_bytes
from .orchestrator import ConversationOrchestrator, Status
from .tools.builtin import builtin_tools
from .tools.dispatcher import ToolCallDispatcher

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 0.25


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="DeskLM UI")
    parser.add_argument("--config", default="configs/desklm.yaml")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--title")
    parser.add_argument("--concurrency-limit", type=int)
    parser.add_argument("--sampling-interval-ms", type=int)
    parser.add_argument("--gpu-index", type=int)
    parser.add_argument("--backend", choices=["airllm", "remote"])
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
    if args.concurrency_limit is not None:
        cfg.app.concurrency_limit = args.concurrency_limit
    if args.sampling_interval_ms is not None:
        cfg.app.sampling_interval_ms = args.sampling_interval_ms
    if args.gpu_index is not None:
        cfg.app.gpu_index = args.gpu_index
    if args.backend:
        cfg.engine.backend = args.backend
    if args.log_level:
        cfg.app.log_level = args.log_level.upper()
    if args.offline:
        cfg.app.offline_mode = True
    return cfg


def configure_logging(cfg: AppConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def ensure_offline(cfg: AppConfig) -> None:
    if cfg.offline_mode:
        os.environ.setdefault("HF_HUB_OFFLINE", "1")
        os.environ.setdefault("TRANSFORMERS_OFFLINE", "1")


def _build_device(cfg: AppConfig) -> DeviceSpec:
    if torch.cuda.is_available() and cfg.gpu_index is not None and cfg.gpu_index >= 0:
        return DeviceSpec(kind="cuda", gpu_index=cfg.gpu_index)
    return DeviceSpec(kind="cpu", gpu_index=None)


def build_engine(cfg: RootConfig, settings: SettingsStore) -> LLMEngine:
    if cfg.engine.backend == "remote":
        return RemoteEngine.from_settings(settings)
    return AirLLMEngine(cfg.engine.layer_cache_dir, _build_device(cfg.app))


def build_orchestrator(cfg: RootConfig) -> tuple[ConversationOrchestrator, ResourceMonitor]:
    catalog: ModelCatalog = DEFAULT_CATALOG.with_extra(cfg.models.extra)
    settings = settings_from_config(cfg)
    monitor = ResourceMonitor(cfg.app.sampling_interval_ms, cfg.app.gpu_index)
    lifecycle = ModelLifecycleManager(
        engine=build_engine(cfg, settings),
        store=ModelStore(cfg.engine.models_dir),
        downloader=HubDownloader(token=os.environ.get("HF_TOKEN")),
        monitor=monitor,
        settings=settings,
    )
    generation = GenerationEngine(lifecycle)
    defaults = GenerationSpec(
        max_new_tokens=cfg.generation_defaults.max_tokens,
        temperature=cfg.generation_defaults.temperature,
        top_p=cfg.generation_defaults.top_p,
        do_sample=cfg.generation_defaults.do_sample,
        max_context=cfg.generation_defaults.max_context,
        display_every_n_tokens=cfg.generation_defaults.display_every_n_tokens,
    )
    dispatcher = ToolCallDispatcher()
    orchestrator = ConversationOrchestrator(
        lifecycle=lifecycle,
        generation=generation,
        dispatcher=dispatcher,
        catalog=catalog,
        settings=settings,
        monitor=monitor,
        defaults=defaults,
    )
    for tool in builtin_tools(settings, generation, orchestrator.generation_params):
        dispatcher.register(tool)
    return orchestrator, monitor


def _status_markdown(status: Status) -> str:
    lines = [f"**status:** {status.phase.value}", f"**model:** {describe_state(status.load_state)}"]
    if status.progress is not None and status.phase.value == "downloading":
        lines.append(f"**download:** {status.progress:.0%}")
    if status.error:
        lines.append(f"**error:** {status.error}")
    sample = status.resources
    if sample is not None:
        lines.append(f"**cpu:** {sample.cpu_percent:.1f}%")
        lines.append(
            f"**memory:** {format_bytes(sample.used_memory_bytes)} / "
            f"{format_bytes(sample.total_memory_bytes)} ({sample.memory_percent:.0f}%)"
        )
        if sample.gpu_total_bytes:
            lines.append(
                f"**gpu memory:** {format_bytes(sample.gpu_used_bytes or 0)} / {format_bytes(sample.gpu_total_bytes)}"
            )
    return "\n".join(lines)


def _extract_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        if "content" in content:
            return _extract_text(content.get("content"))
        if "text" in content:
            return str(content.get("text"))
    if isinstance(content, list):
        return "".join(_extract_text(item) for item in content)
    return str(content)


def _history_to_messages(history: list[Any]) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    for item in history or []:
        if isinstance(item, (tuple, list)) and len(item) == 2:
            messages.append({"role": "user", "content": str(item[0])})
            messages.append({"role": "assistant", "content": str(item[1])})
        elif isinstance(item, dict) and item.get("role") in ("user", "assistant"):
            messages.append({"role": item["role"], "content": _extract_text(item.get("content"))})
    return messages


def _render_answer(text: str) -> str:
    reasoning, answer = split_thinking(text)
    if not reasoning:
        return answer
    quoted = "\n".join(f"> {line}" for line in reasoning.splitlines())
    return f"{quoted}\n\n{answer}" if answer else quoted


def build_app(cfg: RootConfig, orchestrator: ConversationOrchestrator) -> gr.Blocks:
    catalog = orchestrator.catalog
    model_choices = [(m.display_name, m.name) for m in catalog.descriptors_for(ModelCategory.CORE)]
    default_model = catalog.default_descriptor(ModelCategory.CORE).name
    selected = cfg.models.selected.get(ModelCategory.CORE.value, default_model)

    with gr.Blocks(title=cfg.app.title) as demo:
        gr.Markdown(f"# {cfg.app.title}")

        with gr.Row():
            model_dd = gr.Dropdown(label="Model", choices=model_choices, value=selected)
            switch_btn = gr.Button("Load")
            download_btn = gr.Button("Download")
            cancel_btn = gr.Button("Cancel")

        status_md = gr.Markdown(_status_markdown(orchestrator.status))
        chatbot = gr.Chatbot(label="Chat", type="messages")
        user_input = gr.Textbox(label="Message", placeholder="Type a message...")
        with gr.Row():
            send_btn = gr.Button("Send")
            stop_btn = gr.Button("Stop")

        async def _handle_chat(message: str, history: list[Any]):
            messages = _history_to_messages(history)
            if not message:
                yield messages, _status_markdown(orchestrator.status), ""
                return
            turns = messages + [{"role": "user", "content": message}]
            task = asyncio.create_task(orchestrator.send_message(turns))
            while not task.done():
                await asyncio.wait([task], timeout=POLL_INTERVAL_S)
                partial = _render_answer(orchestrator.status.output)
                yield turns + [{"role": "assistant", "content": partial}], _status_markdown(orchestrator.status), ""
            try:
                reply = task.result()
            except OrchestratorBusy as exc:
                text = f"[busy] {exc}"
            else:
                text = _render_answer(reply.display_text)
                if reply.error:
                    text = f"{text}\n\n[error] {reply.error}".strip()
                elif reply.cancelled:
                    text = f"{text}\n\n[stopped]".strip()
            yield turns + [{"role": "assistant", "content": text}], _status_markdown(orchestrator.status), ""

        def _handle_stop():
            orchestrator.stop_generation()
            return _status_markdown(orchestrator.status)

        async def _handle_switch(name: str):
            await orchestrator.switch_model(name)
            return _status_markdown(orchestrator.status)

        async def _handle_download(name: str):
            await orchestrator.download_model(name)
            return _status_markdown(orchestrator.status)

        async def _handle_cancel():
            await orchestrator.cancel_model_transition()
            return _status_markdown(orchestrator.status)

        send_btn.click(_handle_chat, inputs=[user_input, chatbot], outputs=[chatbot, status_md, user_input])
        user_input.submit(_handle_chat, inputs=[user_input, chatbot], outputs=[chatbot, status_md, user_input])
        stop_btn.click(_handle_stop, outputs=[status_md], queue=False)
        switch_btn.click(_handle_switch, inputs=[model_dd], outputs=[status_md])
        download_btn.click(_handle_download, inputs=[model_dd], outputs=[status_md])
        cancel_btn.click(_handle_cancel, outputs=[status_md], queue=False)

        timer = gr.Timer(cfg.app.sampling_interval_ms / 1000.0)
        timer.tick(lambda: _status_markdown(orchestrator.status), outputs=[status_md])

    return demo


def main() -> None:
    args = parse_args()
    cfg = load_root_config(args.config) if args.config else load_root_config("configs/desklm.yaml")
    cfg = apply_overrides(cfg, args)
    configure_logging(cfg.app)
    ensure_offline(cfg.app)

    orchestrator, monitor = build_orchestrator(cfg)
    monitor.start()
    try:
        app = build_app(cfg, orchestrator)
        app.queue(default_concurrency_limit=cfg.app.concurrency_limit)
        app.launch(server_name=cfg.app.host, server_port=cfg.app.port, share=args.share)
    finally:
        monitor.stop()


if __name__ == "__main__":
    main()
