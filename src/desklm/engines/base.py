"""Engine protocol and dataclasses."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Literal, Protocol

from ..catalog import ModelDescriptor


@dataclass
class DeviceSpec:
    kind: Literal["cuda", "cpu"]
    gpu_index: int | None


@dataclass
class GenerationSpec:
    max_new_tokens: int = 4096
    temperature: float = 0.7
    top_p: float = 0.9
    do_sample: bool = True
    max_context: int = 4096
    display_every_n_tokens: int = 4

    def __post_init__(self) -> None:
        if self.max_new_tokens < 1:
            raise ValueError("max_new_tokens must be at least 1")
        if self.display_every_n_tokens < 1:
            raise ValueError("display_every_n_tokens must be at least 1")


class LLMEngine(Protocol):
    """A loaded-model backend.

    ``stream`` yields batches of opaque tokens; only ``decode`` interprets
    them. Backends check ``stop`` between batches where they can.
    """

    requires_local_files: bool

    def load(self, descriptor: ModelDescriptor, model_path: Path | None) -> None:
        ...

    def unload(self) -> None:
        ...

    def stream(
        self, messages: list[dict[str, str]], gen: GenerationSpec, stop: threading.Event
    ) -> AsyncIterator[list[Any]]:
        ...

    def decode(self, tokens: list[Any]) -> str:
        ...
