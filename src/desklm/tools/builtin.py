"""Host capabilities exposed to the model as tools."""
from __future__ import annotations

import asyncio
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable

from ..config import SettingsStore
from ..errors import InvalidParameters, ToolExecutionError
from ..metrics.resource_monitor import format_bytes
from ..prompts import REASONING_PROMPT, PromptTurn, Role
from .values import ToolParameters

if TYPE_CHECKING:
    from ..engines.base import GenerationSpec
    from ..generation import GenerationEngine

logger = logging.getLogger(__name__)

MAX_LISTED_FILES = 100

Transcriber = Callable[[Path], Awaitable[str]]
ImageDescriber = Callable[[Path], Awaitable[str]]


def _list_directory(directory: str) -> str:
    path = Path(directory).expanduser()
    if not path.is_dir():
        raise InvalidParameters(f"Directory does not exist at path: {directory}")
    try:
        entries = sorted(
            (entry for entry in os.scandir(path) if not entry.name.startswith(".")),
            key=lambda entry: entry.name.lower(),
        )
    except OSError as exc:
        raise ToolExecutionError(f"Failed to list files: {exc}") from exc

    lines = [f"Contents of {directory}:"]
    if not entries:
        lines.append("No files found (directory may be empty or access restricted)")
    for entry in entries[:MAX_LISTED_FILES]:
        try:
            info = entry.stat()
            kind = "Directory" if entry.is_dir() else "File"
        except OSError:
            lines.append(f"{entry.name} (Error: Unable to access file attributes)")
            continue
        stamp = datetime.fromtimestamp(info.st_mtime).strftime("%Y-%m-%d %H:%M")
        lines.append(f"{entry.name} ({kind}, {format_bytes(info.st_size)}, {stamp})")
    if len(entries) > MAX_LISTED_FILES:
        lines.append(f"... and {len(entries) - MAX_LISTED_FILES} more files (listing truncated)")
    return "\n".join(lines) + "\n"


class ListFilesTool:
    name = "list_files"
    description = "List the files in a directory on this computer."
    required = {"directory": str}

    def __init__(self, settings: SettingsStore | None = None) -> None:
        self._settings = settings

    async def execute(self, parameters: ToolParameters, cancel: threading.Event | None = None) -> str:
        if self._settings is not None and not self._settings.get("tools.enabled", True):
            raise ToolExecutionError("File listing is disabled in settings")
        return await asyncio.to_thread(_list_directory, parameters["directory"])


class TranscribeAudioTool:
    name = "transcribe_audio"
    description = "Transcribe the speech in an audio file."
    required = {"audio_path": str}

    def __init__(self, transcriber: Transcriber | None = None) -> None:
        self._transcriber = transcriber

    async def execute(self, parameters: ToolParameters, cancel: threading.Event | None = None) -> str:
        path = Path(parameters["audio_path"]).expanduser()
        if not path.is_file():
            raise InvalidParameters(f"Invalid audio file at path: {path}")
        if self._transcriber is None:
            raise ToolExecutionError("No transcription backend is configured")
        return await self._transcriber(path)


class AnalyzeImageTool:
    name = "analyze_image"
    description = "Describe the contents of an image file in detail."
    required = {"image_path": str}

    def __init__(self, describer: ImageDescriber | None = None) -> None:
        self._describer = describer

    async def execute(self, parameters: ToolParameters, cancel: threading.Event | None = None) -> str:
        path = Path(parameters["image_path"]).expanduser()
        if not path.is_file():
            raise InvalidParameters(f"Invalid image at path: {path}")
        if self._describer is None:
            raise ToolExecutionError("No vision backend is configured")
        return await self._describer(path)


class PerformReasoningTool:
    """Asks the active model to reason step by step about a problem."""

    name = "perform_reasoning"
    description = "Think through a hard problem step by step before answering."
    required = {"problem": str}

    def __init__(
        self,
        generation: "GenerationEngine",
        params: Callable[[], "GenerationSpec"],
    ) -> None:
        self._generation = generation
        self._params = params

    async def execute(self, parameters: ToolParameters, cancel: threading.Event | None = None) -> str:
        history = [
            PromptTurn(Role.SYSTEM, "You are a careful, precise reasoner."),
            PromptTurn(Role.USER, REASONING_PROMPT.format(problem=parameters["problem"])),
        ]
        result = await self._generation.run(history, self._params(), cancel)
        if result.fault:
            raise ToolExecutionError(f"Reasoning failed: {result.fault}")
        if result.cancelled:
            raise ToolExecutionError("Reasoning was cancelled")
        return f"<think>\n{result.text.strip()}\n</think>"


def builtin_tools(
    settings: SettingsStore,
    generation: "GenerationEngine",
    params: Callable[[], "GenerationSpec"],
    transcriber: Transcriber | None = None,
    describer: ImageDescriber | None = None,
) -> list:
    return [
        TranscribeAudioTool(transcriber),
        AnalyzeImageTool(describer),
        PerformReasoningTool(generation, params),
        ListFilesTool(settings),
    ]
