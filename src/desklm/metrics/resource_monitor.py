"""System resource sampling and memory guardrails."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import psutil

from .vram_monitor import VramSampler

logger = logging.getLogger(__name__)


class GuardrailLevel(str, Enum):
    OFF = "off"
    RELAXED = "relaxed"
    BALANCED = "balanced"
    STRICT = "strict"
    CUSTOM = "custom"


_PRESET_PERCENTAGES = {
    GuardrailLevel.OFF: 100,
    GuardrailLevel.RELAXED: 80,
    GuardrailLevel.BALANCED: 60,
    GuardrailLevel.STRICT: 40,
}


@dataclass(frozen=True)
class GuardrailPolicy:
    level: GuardrailLevel = GuardrailLevel.BALANCED
    custom_percentage: int = 50

    def __post_init__(self) -> None:
        value = self.custom_percentage
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
            raise ValueError(f"custom_percentage must be an integer in 0..100, got {value!r}")

    @property
    def resolved_percentage(self) -> int:
        if self.level is GuardrailLevel.CUSTOM:
            return self.custom_percentage
        return _PRESET_PERCENTAGES[self.level]

    @classmethod
    def from_setting(cls, level: str | GuardrailLevel | None, custom_percentage: Any = 50) -> "GuardrailPolicy":
        """Build a policy from persisted setting values.

        Unknown levels fall back to balanced; the custom percentage is coerced
        to an int and clamped into 0..100.
        """
        try:
            parsed = GuardrailLevel(str(level.value if isinstance(level, GuardrailLevel) else level).lower())
        except ValueError:
            logger.warning("Unknown guardrail level %r, using balanced", level)
            parsed = GuardrailLevel.BALANCED
        try:
            custom = int(round(float(custom_percentage)))
        except (TypeError, ValueError):
            custom = 50
        return cls(level=parsed, custom_percentage=min(100, max(0, custom)))


@dataclass(frozen=True)
class ResourceSample:
    cpu_percent: float
    used_memory_bytes: int
    total_memory_bytes: int
    gpu_used_bytes: int | None = None
    gpu_total_bytes: int | None = None

    @property
    def memory_percent(self) -> float:
        if self.total_memory_bytes <= 0:
            return 0.0
        return self.used_memory_bytes / self.total_memory_bytes * 100.0


@dataclass(frozen=True)
class Admission:
    allowed: bool
    required_bytes: int
    budget_bytes: int
    reason: str | None = None


def format_bytes(num: float) -> str:
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(num) < 1024:
            return f"{num:.0f} {unit}" if unit == "B" else f"{num:.2f} {unit}"
        num /= 1024
    return f"{num:.2f} TiB"


def budget_bytes(policy: GuardrailPolicy, total_memory_bytes: int) -> int:
    return total_memory_bytes * policy.resolved_percentage // 100


class ResourceMonitor:
    """Samples CPU load and memory utilisation.

    ``sample()`` can be called directly; ``start()`` runs it on a fixed period
    in a daemon thread and hands every sample to subscribers.
    """

    def __init__(
        self,
        interval_ms: int = 2000,
        gpu_index: int | None = None,
        cpu_times: Callable[[], Any] = psutil.cpu_times,
        virtual_memory: Callable[[], Any] = psutil.virtual_memory,
    ) -> None:
        self._interval = interval_ms / 1000.0
        self._cpu_times = cpu_times
        self._virtual_memory = virtual_memory
        self._vram = VramSampler(gpu_index)
        self._previous_ticks: tuple[float, float] | None = None
        self._latest: ResourceSample | None = None
        self._subscribers: list[Callable[[ResourceSample], None]] = []
        self._lock = threading.Lock()
        self._running = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def latest(self) -> ResourceSample | None:
        return self._latest

    def subscribe(self, callback: Callable[[ResourceSample], None]) -> None:
        self._subscribers.append(callback)

    def _ticks(self) -> tuple[float, float]:
        times = self._cpu_times()
        total = float(sum(times))
        idle = float(getattr(times, "idle", 0.0)) + float(getattr(times, "iowait", 0.0))
        return total - idle, total

    def sample(self) -> ResourceSample:
        busy, total = self._ticks()
        memory = self._virtual_memory()
        gpu = self._vram.read()
        with self._lock:
            cpu_percent = 0.0
            if self._previous_ticks is not None:
                prev_busy, prev_total = self._previous_ticks
                delta_total = total - prev_total
                if delta_total > 0:
                    cpu_percent = max(0.0, min(100.0, (busy - prev_busy) / delta_total * 100.0))
            self._previous_ticks = (busy, total)
            sample = ResourceSample(
                cpu_percent=cpu_percent,
                used_memory_bytes=int(memory.total - memory.available),
                total_memory_bytes=int(memory.total),
                gpu_used_bytes=gpu[0] if gpu else None,
                gpu_total_bytes=gpu[1] if gpu else None,
            )
            self._latest = sample
        return sample

    def total_memory_bytes(self) -> int:
        return int(self._virtual_memory().total)

    def budget_bytes(self, policy: GuardrailPolicy, total_memory_bytes: int | None = None) -> int:
        if total_memory_bytes is None:
            total_memory_bytes = self.total_memory_bytes()
        return budget_bytes(policy, total_memory_bytes)

    def admit(
        self,
        required_bytes: int,
        policy: GuardrailPolicy,
        total_memory_bytes: int | None = None,
    ) -> Admission:
        budget = self.budget_bytes(policy, total_memory_bytes)
        if policy.level is not GuardrailLevel.OFF and required_bytes > budget:
            reason = (
                f"Model memory requirement ({format_bytes(required_bytes)}) exceeds "
                f"guardrails limit ({format_bytes(budget)}, {policy.level.value} "
                f"{policy.resolved_percentage}%)."
            )
            logger.info("Guardrail denied load: %s", reason)
            return Admission(allowed=False, required_bytes=required_bytes, budget_bytes=budget, reason=reason)
        return Admission(allowed=True, required_bytes=required_bytes, budget_bytes=budget)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._running.set()
        self._thread = threading.Thread(target=self._run, name="resource-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._running.clear()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=self._interval + 1.0)
        self._thread = None
        self._vram.close()

    def _run(self) -> None:
        while self._running.is_set():
            try:
                sample = self.sample()
            except Exception:
                logger.exception("Resource sampling failed")
            else:
                for callback in list(self._subscribers):
                    try:
                        callback(sample)
                    except Exception:
                        logger.exception("Resource subscriber failed")
            self._wake.wait(self._interval)
            self._wake.clear()
