"""Tool-call directive parsing and dispatch.

A directive is a fenced block labelled ``json`` whose payload is an object
with a string ``id``, a string ``name`` and an object ``parameters``::

    ```json
    {"id": "1", "name": "list_files", "parameters": {"directory": "/tmp"}}
    ```

The fences must sit on their own lines (``\\n`` or ``\\r\\n``). Blocks whose
payload does not match are treated as plain text.
"""
from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass
from typing import Iterable, Protocol, Union

from ..errors import InvalidParameters, ToolError, ToolExecutionError, UnknownTool
from .values import ToolParameters, matches, type_name

logger = logging.getLogger(__name__)

DIRECTIVE = re.compile(r"```json\r?\n(.*?)\r?\n```", re.DOTALL)


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    parameters: ToolParameters

    # parameters are an unhashable mapping; equal calls share id and name
    def __hash__(self) -> int:
        return hash((self.id, self.name))


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    name: str
    output: str | None = None
    error_kind: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    def render(self) -> str:
        if self.ok:
            return self.output or ""
        return f"Error ({self.name}): {self.error}"


@dataclass(frozen=True)
class TextSegment:
    text: str


@dataclass(frozen=True)
class CallSegment:
    call: ToolCall
    raw: str


Segment = Union[TextSegment, CallSegment]


class Tool(Protocol):
    name: str
    description: str
    required: dict[str, type]

    async def execute(self, parameters: ToolParameters, cancel: threading.Event | None = None) -> str:
        ...


def parse_call(payload: str) -> ToolCall | None:
    try:
        data = json.loads(payload)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    call_id, name, params = data.get("id"), data.get("name"), data.get("parameters")
    if not isinstance(call_id, str) or not isinstance(name, str) or not isinstance(params, dict):
        return None
    try:
        return ToolCall(call_id, name, ToolParameters(params))
    except TypeError:
        return None


def parse(text: str) -> list[Segment]:
    """Split ``text`` into plain-text and call segments, in source order."""
    segments: list[Segment] = []
    pos = 0
    for match in DIRECTIVE.finditer(text):
        call = parse_call(match.group(1))
        if call is None:
            logger.debug("Skipping malformed directive at offset %d", match.start())
            continue
        if match.start() > pos:
            segments.append(TextSegment(text[pos:match.start()]))
        segments.append(CallSegment(call, match.group(0)))
        pos = match.end()
    if pos < len(text):
        segments.append(TextSegment(text[pos:]))
    return segments


def extract(text: str) -> list[ToolCall] | None:
    calls = [segment.call for segment in parse(text) if isinstance(segment, CallSegment)]
    return calls or None


def reconstruct(segments: Iterable[Segment], results: Iterable[ToolResult]) -> str:
    """Replace call segments with rendered results, positionally.

    Call segments left without a result keep their original directive text.
    """
    pending = iter(results)
    out: list[str] = []
    for segment in segments:
        if isinstance(segment, TextSegment):
            out.append(segment.text)
            continue
        result = next(pending, None)
        out.append(segment.raw if result is None else result.render())
    return "".join(out)


class ToolCallDispatcher:
    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Replacing tool %s", tool.name)
        self._tools[tool.name] = tool

    def names(self) -> list[str]:
        return list(self._tools)

    def describe(self) -> str:
        lines = []
        for tool in self._tools.values():
            params = ", ".join(f"{key}: {type_name(kind)}" for key, kind in tool.required.items())
            lines.append(f"- {tool.name}({params}): {tool.description}")
        return "\n".join(lines)

    parse = staticmethod(parse)
    extract = staticmethod(extract)
    reconstruct = staticmethod(reconstruct)

    def _check(self, call: ToolCall) -> Tool:
        tool = self._tools.get(call.name)
        if tool is None:
            raise UnknownTool(call.name)
        problems = [
            f"{key} ({type_name(kind)})"
            for key, kind in tool.required.items()
            if key not in call.parameters or not matches(call.parameters[key], kind)
        ]
        if problems:
            raise InvalidParameters(f"Missing or invalid parameter for {call.name}: {', '.join(problems)}")
        return tool

    async def execute(self, call: ToolCall, cancel: threading.Event | None = None) -> ToolResult:
        """Run one call. Errors come back as results, never raised.

        ``cancel`` is handed to the tool so long-running tools can stop early.
        """
        logger.info("Executing tool %s (id=%s)", call.name, call.id)
        try:
            tool = self._check(call)
            output = await tool.execute(call.parameters, cancel)
        except ToolError as exc:
            logger.warning("Tool %s failed: %s", call.name, exc)
            return ToolResult(call.id, call.name, error_kind=exc.kind, error=str(exc))
        except Exception as exc:
            logger.exception("Tool %s raised", call.name)
            error = ToolExecutionError(f"{type(exc).__name__}: {exc}")
            return ToolResult(call.id, call.name, error_kind=error.kind, error=str(error))
        return ToolResult(call.id, call.name, output=output)

    async def execute_all(
        self, calls: Iterable[ToolCall], cancel: threading.Event | None = None
    ) -> list[ToolResult]:
        """Run calls in order; calls after a cancel are not started."""
        results = []
        for call in calls:
            if cancel is not None and cancel.is_set():
                logger.info("Skipping tool %s (id=%s) after cancel", call.name, call.id)
                break
            results.append(await self.execute(call, cancel))
        return results

    async def process(self, text: str, cancel: threading.Event | None = None) -> tuple[str, list[ToolResult]]:
        segments = parse(text)
        calls = [segment.call for segment in segments if isinstance(segment, CallSegment)]
        results = await self.execute_all(calls, cancel)
        return reconstruct(segments, results), results
