"""Shared fakes and fixtures."""
from __future__ import annotations

import asyncio
import json
from collections import namedtuple
from pathlib import Path
from types import SimpleNamespace

import pytest

from desklm.catalog import GIB, ModelCatalog, ModelCategory, ModelDescriptor
from desklm.config import MemorySettings
from desklm.downloads import ModelStore
from desklm.errors import DownloadError
from desklm.events import EventBus
from desklm.lifecycle import ModelLifecycleManager
from desklm.metrics.resource_monitor import ResourceMonitor

CpuTimes = namedtuple("CpuTimes", "user nice system idle iowait")

TINY = ModelDescriptor("tiny", "Tiny", "Test", 1 * GIB, ModelCategory.CORE, "test/tiny")
SMALL = ModelDescriptor("small", "Small", "Test", 2 * GIB, ModelCategory.CORE, "test/small")
THINKER = ModelDescriptor("thinker", "Thinker", "Test", 1 * GIB, ModelCategory.REASONING, "test/thinker")


def memory(total: float, available: float | None = None):
    return lambda: SimpleNamespace(total=int(total), available=int(total / 2 if available is None else available))


def install_model(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    (path / "tokenizer.json").write_text("{}", encoding="utf-8")
    shard = "model-00001-of-00001.safetensors"
    (path / shard).write_bytes(b"\0")
    index = {"metadata": {"total_size": 1}, "weight_map": {"layer.weight": shard}}
    (path / "model.safetensors.index.json").write_text(json.dumps(index), encoding="utf-8")


class FakeEngine:
    """Engine whose tokens are strings; each stream call plays the next response.

    A response is a list of token batches or a plain string (one batch).
    """

    requires_local_files = True

    def __init__(self, *responses, fail_load: str | None = None, fault_after: int | None = None) -> None:
        self.responses = list(responses) or [[["Hello", " world"]]]
        self.fail_load = fail_load
        self.fault_after = fault_after
        self.fail_unload = False
        self.loaded: str | None = None
        self.load_calls: list[str] = []
        self.unload_calls = 0
        self.prompts: list[list[dict]] = []
        self.gate: asyncio.Event | None = None

    def load(self, descriptor, model_path) -> None:
        self.load_calls.append(descriptor.name)
        if self.fail_load:
            raise RuntimeError(self.fail_load)
        self.loaded = descriptor.name

    def unload(self) -> None:
        self.unload_calls += 1
        self.loaded = None
        if self.fail_unload:
            raise RuntimeError("unload exploded")

    def decode(self, tokens) -> str:
        return "".join(tokens)

    def _next_response(self):
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, str):
            return [[response]]
        return response

    async def stream(self, messages, gen, stop):
        self.prompts.append(messages)
        for index, batch in enumerate(self._next_response()):
            if self.fault_after is not None and index == self.fault_after:
                raise RuntimeError("model session invalid")
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(0)
            yield list(batch)


class RemoteFakeEngine(FakeEngine):
    requires_local_files = False


class FakeDownloader:
    def __init__(self, fractions=(0.25, 0.5, 1.0), fail: str | None = None, install: bool = True) -> None:
        self.fractions = fractions
        self.fail = fail
        self.install = install
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def download(self, descriptor, destination, progress) -> None:
        self.calls.append(descriptor.name)
        self.started.set()
        for fraction in self.fractions:
            progress(fraction)
            await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise DownloadError(self.fail)
        if self.install:
            install_model(destination)


def make_monitor(total: float = 64 * GIB) -> ResourceMonitor:
    return ResourceMonitor(
        interval_ms=10,
        cpu_times=lambda: CpuTimes(1.0, 0.0, 1.0, 8.0, 0.0),
        virtual_memory=memory(total),
    )


def make_lifecycle(
    tmp_path: Path,
    engine=None,
    downloader=None,
    total: float = 64 * GIB,
    level: str = "balanced",
    settings: MemorySettings | None = None,
) -> ModelLifecycleManager:
    settings = settings or MemorySettings({"guardrails.level": level})
    return ModelLifecycleManager(
        engine=engine or FakeEngine(),
        store=ModelStore(tmp_path / "models"),
        downloader=downloader or FakeDownloader(),
        monitor=make_monitor(total),
        settings=settings,
        bus=EventBus(),
    )


@pytest.fixture
def catalog() -> ModelCatalog:
    return ModelCatalog(
        {ModelCategory.CORE: [TINY, SMALL], ModelCategory.REASONING: [THINKER]},
        {ModelCategory.CORE: "tiny", ModelCategory.REASONING: "thinker"},
    )
