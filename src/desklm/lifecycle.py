"""Model lifecycle state machine.

    Idle -> Downloading -> Loading -> Loaded
                 |            |
                 +-> Failed <-+     (also reached straight from a guardrail denial)

``Loaded`` and ``Failed`` stay put until a new selection. Cancelling an
in-flight download or load returns to ``Idle``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Union

from .catalog import ModelDescriptor
from .config import SettingsStore
from .downloads import Downloader, ModelStore, ProgressTracker
from .engines.base import LLMEngine
from .errors import CatalogInvariantError, ModelNotReady
from .events import EventBus, StateChanged
from .metrics.resource_monitor import GuardrailPolicy, ResourceMonitor

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    GUARDRAIL = "guardrail"
    NOT_FOUND = "not_found"
    DOWNLOAD = "download"
    LOAD = "load"


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Downloading:
    model_name: str
    fraction: float = 0.0


@dataclass(frozen=True)
class Loading:
    model_name: str


@dataclass(frozen=True)
class Loaded:
    model_name: str


@dataclass(frozen=True)
class Failed:
    model_name: str
    reason: str
    kind: FailureKind


LoadState = Union[Idle, Downloading, Loading, Loaded, Failed]


def describe_state(state: LoadState) -> str:
    if isinstance(state, Downloading):
        return f"Downloading {state.model_name} ({state.fraction:.0%})"
    if isinstance(state, Loading):
        return f"Loading {state.model_name}"
    if isinstance(state, Loaded):
        return f"Loaded {state.model_name}"
    if isinstance(state, Failed):
        return f"Failed: {state.reason}"
    return "Idle"


class ModelLifecycleManager:
    """Drives a single engine through download and load.

    Transitions are serialized by one lock, so a switch waits for the previous
    transition to resolve. ``cancel`` does not take the lock; it cancels the
    task running the current transition.
    """

    def __init__(
        self,
        engine: LLMEngine,
        store: ModelStore,
        downloader: Downloader,
        monitor: ResourceMonitor,
        settings: SettingsStore,
        bus: EventBus | None = None,
    ) -> None:
        self._engine = engine
        self._store = store
        self._downloader = downloader
        self._monitor = monitor
        self._settings = settings
        self._bus = bus or EventBus()
        self._tracker = ProgressTracker(self._bus)
        self._state: LoadState = Idle()
        self._descriptor: ModelDescriptor | None = None
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._abandoned_load: asyncio.Future | None = None

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def descriptor(self) -> ModelDescriptor | None:
        return self._descriptor

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def tracker(self) -> ProgressTracker:
        return self._tracker

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def policy(self) -> GuardrailPolicy:
        return GuardrailPolicy.from_setting(
            self._settings.get("guardrails.level", "balanced"),
            self._settings.get("guardrails.custom_percentage", 50),
        )

    def _set_state(self, state: LoadState) -> None:
        self._state = state
        if isinstance(state, Downloading):
            logger.debug("State -> %s", describe_state(state))
        else:
            logger.info("State -> %s", describe_state(state))
        self._bus.publish(StateChanged(state))

    def _fail(self, descriptor: ModelDescriptor, reason: str, kind: FailureKind) -> LoadState:
        self._descriptor = None
        self._set_state(Failed(descriptor.name, reason, kind))
        return self._state

    def require_loaded(self) -> LLMEngine:
        if not isinstance(self._state, Loaded):
            raise ModelNotReady(f"No model loaded ({describe_state(self._state)})")
        return self._engine

    async def select(self, descriptor: ModelDescriptor) -> LoadState:
        """Bring ``descriptor`` to ``Loaded``; returns the resulting state.

        A different loaded model is released before the new one is fetched.
        """
        async with self._lock:
            if isinstance(self._state, Loaded) and self._state.model_name == descriptor.name:
                return self._state
            if isinstance(self._state, (Loaded, Failed)):
                self._release()
            return await self._run(lambda: self._select(descriptor))

    switch_to = select

    async def download(self, descriptor: ModelDescriptor) -> LoadState:
        """Fetch the model files without loading them.

        The active session is released first; the manager ends in ``Idle`` on
        success or ``Failed`` on error.
        """
        async with self._lock:
            if isinstance(self._state, (Loaded, Failed)):
                self._release()
            return await self._run(lambda: self._download_only(descriptor))

    async def unload(self) -> None:
        async with self._lock:
            self._release()

    async def invalidate(self, reason: str) -> None:
        """Drop a model whose session faulted so the next request reloads it."""
        async with self._lock:
            logger.warning("Invalidating %s: %s", self._state, reason)
            self._release()

    async def report_missing(self, name: str, reason: str) -> LoadState:
        async with self._lock:
            self._descriptor = None
            self._set_state(Failed(name, reason, FailureKind.NOT_FOUND))
            return self._state

    async def cancel(self) -> bool:
        """Cancel the in-flight download or load. Returns False when idle."""
        task = self._task
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait([task])
        return True

    def _release(self) -> None:
        try:
            self._engine.unload()
        except Exception:
            logger.warning("Unloading %s failed", self._descriptor, exc_info=True)
        self._descriptor = None
        if not isinstance(self._state, Idle):
            self._set_state(Idle())

    async def _run(self, operation: Callable[[], Awaitable[LoadState]]) -> LoadState:
        task = asyncio.create_task(self._cancellable(operation))
        self._task = task
        try:
            return await task
        finally:
            self._task = None

    async def _cancellable(self, operation: Callable[[], Awaitable[LoadState]]) -> LoadState:
        try:
            await self._drain_abandoned_load()
            return await operation()
        except asyncio.CancelledError:
            logger.info("Model transition cancelled")
            self._descriptor = None
            self._set_state(Idle())
            return self._state

    async def _drain_abandoned_load(self) -> None:
        pending, self._abandoned_load = self._abandoned_load, None
        if pending is not None and not pending.done():
            logger.info("Waiting for a cancelled load to finish")
            await asyncio.wait([pending])

    def _discard_abandoned_load(self, future: asyncio.Future) -> None:
        if not future.cancelled() and future.exception() is None:
            try:
                self._engine.unload()
            except Exception:
                logger.warning("Unloading a cancelled load failed", exc_info=True)

    async def _select(self, descriptor: ModelDescriptor) -> LoadState:
        model_path = None
        if self._engine.requires_local_files:
            admission = self._monitor.admit(descriptor.size_bytes, self.policy())
            if not admission.allowed:
                return self._fail(descriptor, admission.reason or "Guardrail denied", FailureKind.GUARDRAIL)
            if not self._store.is_installed(descriptor):
                if not await self._fetch(descriptor):
                    return self._state
            model_path = await asyncio.to_thread(self._store.prepare, descriptor)

        self._set_state(Loading(descriptor.name))
        load = asyncio.ensure_future(asyncio.to_thread(self._engine.load, descriptor, model_path))
        try:
            await asyncio.shield(load)
        except asyncio.CancelledError:
            # the worker thread cannot be interrupted; release its result once it lands
            load.add_done_callback(self._discard_abandoned_load)
            self._abandoned_load = load
            raise
        except CatalogInvariantError:
            raise
        except Exception as exc:
            logger.exception("Loading %s failed", descriptor.name)
            try:
                self._engine.unload()
            except Exception:
                logger.warning("Cleanup after failed load raised", exc_info=True)
            return self._fail(descriptor, f"Failed to load {descriptor.name}: {exc}", FailureKind.LOAD)

        self._descriptor = descriptor
        self._set_state(Loaded(descriptor.name))
        return self._state

    async def _download_only(self, descriptor: ModelDescriptor) -> LoadState:
        if self._engine.requires_local_files and not self._store.is_installed(descriptor):
            if not await self._fetch(descriptor):
                return self._state
        if not isinstance(self._state, Idle):
            self._set_state(Idle())
        return self._state

    async def _fetch(self, descriptor: ModelDescriptor) -> bool:
        self._tracker.begin(descriptor.name)
        self._set_state(Downloading(descriptor.name, 0.0))

        def _progress(fraction: float) -> None:
            if self._tracker.update(fraction):
                self._set_state(Downloading(descriptor.name, self._tracker.fraction))

        try:
            await self._downloader.download(descriptor, self._store.path_for(descriptor), _progress)
        except CatalogInvariantError:
            raise
        except Exception as exc:
            logger.warning("Download of %s failed: %s", descriptor.name, exc)
            self._fail(descriptor, f"Failed to download {descriptor.name}: {exc}", FailureKind.DOWNLOAD)
            return False

        if not self._store.is_installed(descriptor):
            await asyncio.to_thread(self._store.remove, descriptor)
            self._fail(descriptor, f"Downloaded files for {descriptor.name} are incomplete", FailureKind.DOWNLOAD)
            return False
        return True
