"""Conversation façade: model selection, generation, tool rounds and status."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from .catalog import ModelCatalog, ModelCategory, ModelDescriptor
from .config import SettingsStore
from .engines.base import GenerationSpec
from .errors import ModelNotFound, OrchestratorBusy
from .events import EventBus, StateChanged, StatusChanged
from .generation import Fragment, GenerationEngine, GenerationResult, thinking_phase
from .lifecycle import Downloading, Failed, Idle, Loaded, LoadState, Loading, ModelLifecycleManager
from .metrics.resource_monitor import ResourceMonitor, ResourceSample
from .prompts import PromptTurn, Role, build_prompt_history, coerce_history, strip_thinking_markup, validate_history
from .tools.dispatcher import CallSegment, ToolCallDispatcher, ToolResult, parse, reconstruct

logger = logging.getLogger(__name__)

TOOL_RESULTS_HEADER = "Tool results:"
TOOL_LIMIT_NOTE = "Stopped: too many tool calls (limit is {limit} rounds)."


class Phase(str, Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    LOADING = "loading"
    THINKING = "thinking"
    GENERATING = "generating"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class Status:
    phase: Phase = Phase.IDLE
    load_state: LoadState = field(default_factory=Idle)
    generating: bool = False
    output: str = ""
    progress: float | None = None
    error: str | None = None
    resources: ResourceSample | None = None


@dataclass
class Reply:
    initial_output: str = ""
    tool_results: list[ToolResult] = field(default_factory=list)
    tool_turns: list[PromptTurn] = field(default_factory=list)
    final_output: str = ""
    display_text: str = ""
    cancelled: bool = False
    error: str | None = None
    tool_limit_reached: bool = False
    token_count: int = 0


def _phase_for(state: LoadState) -> Phase:
    if isinstance(state, Downloading):
        return Phase.DOWNLOADING
    if isinstance(state, Loading):
        return Phase.LOADING
    if isinstance(state, Failed):
        return Phase.FAILED
    return Phase.IDLE


def tool_results_turn(results: Iterable[ToolResult]) -> PromptTurn:
    lines = [TOOL_RESULTS_HEADER]
    for result in results:
        lines.append(f"[{result.call_id}] {result.name}: {result.render()}")
    return PromptTurn(Role.USER, "\n".join(lines))


class ConversationOrchestrator:
    """Serializes sends and model operations and publishes one status value.

    A second ``send_message`` while one is running is rejected with
    ``OrchestratorBusy``. ``switch_model`` and ``download_model`` wait for the
    running send to finish.
    """

    def __init__(
        self,
        lifecycle: ModelLifecycleManager,
        generation: GenerationEngine,
        dispatcher: ToolCallDispatcher,
        catalog: ModelCatalog,
        settings: SettingsStore,
        monitor: ResourceMonitor | None = None,
        defaults: GenerationSpec | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._generation = generation
        self._dispatcher = dispatcher
        self._catalog = catalog
        self._settings = settings
        self._defaults = defaults or GenerationSpec()
        self._bus: EventBus = lifecycle.bus
        self._status = Status(load_state=lifecycle.state)
        self._status_lock = threading.Lock()
        self._op_lock = asyncio.Lock()
        self._busy = False
        self._cancel: threading.Event | None = None
        self._preferred: ModelDescriptor | None = None
        self._bus.subscribe(self._on_state_changed, StateChanged)
        if monitor is not None:
            monitor.subscribe(self._on_sample)

    @property
    def status(self) -> Status:
        return self._status

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def catalog(self) -> ModelCatalog:
        return self._catalog

    @property
    def dispatcher(self) -> ToolCallDispatcher:
        return self._dispatcher

    def subscribe(self, handler: Callable[[StatusChanged], None]) -> Callable[[], None]:
        return self._bus.subscribe(handler, StatusChanged)

    def _publish(self, **changes: Any) -> None:
        with self._status_lock:
            self._status = dataclasses.replace(self._status, **changes)
            status = self._status
        self._bus.publish(StatusChanged(status))

    def _on_state_changed(self, event: StateChanged) -> None:
        state = event.state
        changes: dict[str, Any] = {"load_state": state}
        if isinstance(state, Downloading):
            changes["progress"] = state.fraction
        if isinstance(state, Failed):
            changes["error"] = state.reason
        elif isinstance(state, (Downloading, Loading, Loaded)):
            changes["error"] = None
        if not self._busy or not self._status.generating:
            changes["phase"] = _phase_for(state)
        self._publish(**changes)

    def _on_sample(self, sample: ResourceSample) -> None:
        self._publish(resources=sample)

    def generation_params(self) -> GenerationSpec:
        """Current generation parameters: defaults overlaid with settings."""
        base = self._defaults
        return GenerationSpec(
            max_new_tokens=int(self._settings.get("generation.max_tokens", base.max_new_tokens)),
            temperature=float(self._settings.get("generation.temperature", base.temperature)),
            top_p=float(self._settings.get("generation.top_p", base.top_p)),
            do_sample=base.do_sample,
            max_context=base.max_context,
            display_every_n_tokens=int(
                self._settings.get("generation.display_every_n_tokens", base.display_every_n_tokens)
            ),
        )

    def _tools_enabled(self) -> bool:
        return bool(self._settings.get("tools.enabled", True)) and bool(self._dispatcher.names())

    def _selected(self, category: ModelCategory = ModelCategory.CORE) -> ModelDescriptor:
        if self._preferred is not None and self._preferred.category is category:
            return self._preferred
        name = self._settings.get(f"models.selected.{category.value}")
        return self._catalog.resolve(name, category)

    async def _ensure_loaded(self) -> str | None:
        """Load the selected model if needed; returns an error message or None."""
        state = self._lifecycle.state
        if isinstance(state, Loaded):
            return None
        try:
            descriptor = self._selected()
        except ModelNotFound as exc:
            await self._lifecycle.report_missing(exc.name, str(exc))
            return str(exc)
        state = await self._lifecycle.select(descriptor)
        if isinstance(state, Loaded):
            return None
        if isinstance(state, Failed):
            return state.reason
        return f"Model {descriptor.name} is not loaded"

    async def send_message(self, history: Iterable[Any], params: GenerationSpec | None = None) -> Reply:
        """Generate a reply to ``history``, running tool calls it contains."""
        if self._busy:
            raise OrchestratorBusy("A message is already being generated")
        turns = coerce_history(history)
        validate_history(turns)
        if not any(turn.role is Role.USER for turn in turns):
            raise ValueError("The prompt history needs at least one user turn")

        self._busy = True
        cancel = threading.Event()
        self._cancel = cancel
        try:
            async with self._op_lock:
                return await self._send(turns, params, cancel)
        finally:
            self._busy = False
            self._cancel = None

    async def _send(
        self, turns: list[PromptTurn], params: GenerationSpec | None, cancel: threading.Event
    ) -> Reply:
        reply = Reply()
        error = await self._ensure_loaded()
        if error is not None:
            reply.error = error
            self._publish(phase=Phase.FAILED, generating=False, error=error)
            return reply
        if cancel.is_set():
            reply.cancelled = True
            self._publish(phase=Phase.CANCELLED, generating=False)
            return reply

        spec = params or self.generation_params()
        tools_enabled = self._tools_enabled()
        conversation = build_prompt_history(
            turns,
            self._settings.get("system_prompt"),
            self._dispatcher.describe() if tools_enabled else None,
        )
        max_rounds = int(self._settings.get("tools.max_rounds", 3))
        display = ""
        rounds = 0
        self._publish(phase=Phase.THINKING, generating=True, output="", error=None, progress=None)

        while True:
            result = await self._generate_pass(conversation, spec, cancel, display)
            reply.token_count += result.token_count
            if rounds == 0:
                reply.initial_output = result.text
            else:
                reply.final_output = result.text

            if result.fault is not None:
                display += result.text
                reply.error = f"Generation failed: {result.fault}"
                await self._lifecycle.invalidate(result.fault)
                break
            if result.cancelled:
                display += result.text
                reply.cancelled = True
                break

            segments = parse(result.text) if tools_enabled else []
            calls = [segment.call for segment in segments if isinstance(segment, CallSegment)]
            if not calls:
                display += result.text
                break
            if rounds >= max_rounds:
                logger.warning("Tool call limit of %d rounds reached", max_rounds)
                reply.tool_limit_reached = True
                display += result.text + "\n\n" + TOOL_LIMIT_NOTE.format(limit=max_rounds)
                break

            results = await self._dispatcher.execute_all(calls, cancel)
            reply.tool_results.extend(results)
            display += reconstruct(segments, results) + "\n\n"
            new_turns = [
                PromptTurn(Role.ASSISTANT, strip_thinking_markup(result.text)),
                tool_results_turn(results),
            ]
            reply.tool_turns.extend(new_turns)
            conversation.extend(new_turns)
            rounds += 1
            self._publish(output=display)
            if cancel.is_set():
                reply.cancelled = True
                break

        reply.display_text = display
        if reply.error is not None:
            phase = Phase.FAILED
        elif reply.cancelled:
            phase = Phase.CANCELLED
        else:
            phase = Phase.IDLE
        self._publish(phase=phase, generating=False, output=display, error=reply.error)
        return reply

    async def _generate_pass(
        self,
        conversation: list[PromptTurn],
        spec: GenerationSpec,
        cancel: threading.Event,
        prefix: str,
    ) -> GenerationResult:
        shown = prefix
        result: GenerationResult | None = None
        async for item in self._generation.generate(conversation, spec, cancel):
            if isinstance(item, Fragment):
                shown += item.text
                phase = Phase.THINKING if thinking_phase(shown[len(prefix):]) else Phase.GENERATING
                self._publish(phase=phase, output=shown)
            else:
                result = item
        assert result is not None
        return result

    def stop_generation(self) -> None:
        """Request cancellation of the running send. Safe to call at any time."""
        cancel = self._cancel
        if cancel is not None and not cancel.is_set():
            logger.info("Stopping generation")
            cancel.set()

    async def switch_model(self, name: str, category: ModelCategory = ModelCategory.CORE) -> LoadState:
        async with self._op_lock:
            try:
                descriptor = self._catalog.resolve(name, category)
            except ModelNotFound as exc:
                return await self._lifecycle.report_missing(name, str(exc))
            self._preferred = descriptor
            return await self._lifecycle.switch_to(descriptor)

    async def download_model(self, name: str, category: ModelCategory = ModelCategory.CORE) -> LoadState:
        async with self._op_lock:
            try:
                descriptor = self._catalog.resolve(name, category)
            except ModelNotFound as exc:
                return await self._lifecycle.report_missing(name, str(exc))
            return await self._lifecycle.download(descriptor)

    async def cancel_model_transition(self) -> bool:
        return await self._lifecycle.cancel()

    async def unload(self) -> None:
        async with self._op_lock:
            await self._lifecycle.unload()
