"""AirLLM engine implementation."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import threading
from pathlib import Path
from typing import Any, AsyncIterator

import torch
from airllm import AutoModel
from transformers import StoppingCriteria, StoppingCriteriaList
from transformers.generation.streamers import BaseStreamer

from .base import DeviceSpec, GenerationSpec
from ..catalog import ModelDescriptor
from ..errors import ModelLoadError, ModelNotReady
from ..prompts import _render_prompt

logger = logging.getLogger(__name__)

_DONE = object()


class _QueueStreamer(BaseStreamer):
    """Forwards generated token ids from the worker thread to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
        self._loop = loop
        self._queue = queue
        self._prompt_seen = False

    def put(self, value: Any) -> None:
        # generate() passes the prompt ids first
        if not self._prompt_seen:
            self._prompt_seen = True
            return
        ids = value.reshape(-1).tolist()
        self._loop.call_soon_threadsafe(self._queue.put_nowait, ids)

    def end(self) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, _DONE)


class _StopOnEvent(StoppingCriteria):
    def __init__(self, *events: threading.Event) -> None:
        self._events = events

    def __call__(self, input_ids: torch.LongTensor, scores: torch.FloatTensor, **kwargs: Any) -> torch.BoolTensor:
        stop = any(event.is_set() for event in self._events)
        return torch.full((input_ids.shape[0],), stop, dtype=torch.bool, device=input_ids.device)


class AirLLMEngine:
    requires_local_files = True

    def __init__(self, layer_cache_dir: str, device: DeviceSpec) -> None:
        self._layer_cache_dir = layer_cache_dir
        self._device_spec = device
        self._model: Any | None = None
        self._tokenizer: Any | None = None
        self._device: torch.device | None = None

    def load(self, descriptor: ModelDescriptor, model_path: Path | None) -> None:
        if model_path is None or not model_path.is_dir():
            raise ModelLoadError(f"Model files for {descriptor.name} not found at {model_path}")

        device = self._device_spec
        if device.kind == "cuda" and torch.cuda.is_available():
            index = device.gpu_index if device.gpu_index is not None else 0
            self._device = torch.device(f"cuda:{index}")
        else:
            self._device = torch.device("cpu")

        cache_dir = os.path.join(self._layer_cache_dir, descriptor.name) if self._layer_cache_dir else ""
        if cache_dir:
            os.makedirs(cache_dir, exist_ok=True)

        logger.info("Loading %s from %s on %s", descriptor.name, model_path, self._device)
        self._model = AutoModel.from_pretrained(
            str(model_path),
            layer_shards_saving_path=cache_dir or None,
            compression=descriptor.compression,
        )
        self._tokenizer = getattr(self._model, "tokenizer", None)
        if self._tokenizer is None:
            self.unload()
            raise ModelLoadError("Model tokenizer not available")

    def unload(self) -> None:
        self._model = None
        self._tokenizer = None
        self._device = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    def decode(self, tokens: list[Any]) -> str:
        if self._tokenizer is None:
            raise ModelNotReady("Engine not loaded")
        return self._tokenizer.decode(tokens, skip_special_tokens=True)

    async def stream(
        self, messages: list[dict[str, str]], gen: GenerationSpec, stop: threading.Event
    ) -> AsyncIterator[list[Any]]:
        if self._model is None or self._tokenizer is None or self._device is None:
            raise ModelNotReady("Engine not loaded")
        model = self._model

        prompt = _render_prompt(self._tokenizer, messages)
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

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        streamer = _QueueStreamer(loop, queue)
        abandoned = threading.Event()
        do_sample = gen.do_sample and gen.temperature > 0

        def _run() -> None:
            try:
                model.generate(
                    input_ids=input_ids,
                    attention_mask=attention_mask,
                    max_new_tokens=gen.max_new_tokens,
                    temperature=gen.temperature if do_sample else None,
                    top_p=gen.top_p if do_sample else None,
                    do_sample=do_sample,
                    use_cache=False,
                    streamer=streamer,
                    stopping_criteria=StoppingCriteriaList([_StopOnEvent(stop, abandoned)]),
                )
            except Exception as exc:
                loop.call_soon_threadsafe(queue.put_nowait, exc)

        worker = loop.run_in_executor(None, _run)
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if isinstance(item, Exception):
                    raise item
                if item:
                    yield item
        finally:
            abandoned.set()
            with contextlib.suppress(Exception):
                await worker
