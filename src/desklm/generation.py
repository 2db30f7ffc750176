"""Streaming generation against the loaded model."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Iterable

from .engines.base import GenerationSpec
from .lifecycle import ModelLifecycleManager
from .prompts import coerce_history, to_messages, validate_history

logger = logging.getLogger(__name__)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


def thinking_phase(text: str) -> bool:
    """True while the last ``<think>`` marker has no closing marker after it."""
    start = text.rfind(THINK_OPEN)
    if start == -1:
        return False
    return text.find(THINK_CLOSE, start + len(THINK_OPEN)) == -1


def split_thinking(text: str) -> tuple[str, str]:
    """Split ``text`` into ``(reasoning, answer)``.

    Every ``<think>`` section counts as reasoning, including an unterminated
    trailing one; everything else is the answer.
    """
    reasoning: list[str] = []
    answer: list[str] = []
    pos = 0
    while True:
        start = text.find(THINK_OPEN, pos)
        if start == -1:
            answer.append(text[pos:])
            break
        answer.append(text[pos:start])
        end = text.find(THINK_CLOSE, start + len(THINK_OPEN))
        if end == -1:
            reasoning.append(text[start + len(THINK_OPEN):])
            break
        reasoning.append(text[start + len(THINK_OPEN):end])
        pos = end + len(THINK_CLOSE)
    return "\n".join(part.strip() for part in reasoning if part.strip()), "".join(answer).strip()


@dataclass(frozen=True)
class Fragment:
    text: str
    thinking: bool


@dataclass(frozen=True)
class GenerationResult:
    text: str
    cancelled: bool
    token_count: int
    elapsed_s: float
    fault: str | None = None

    @property
    def ok(self) -> bool:
        return self.fault is None

    @property
    def tokens_per_second(self) -> float:
        if self.elapsed_s <= 0:
            return 0.0
        return self.token_count / self.elapsed_s


class GenerationEngine:
    def __init__(
        self,
        lifecycle: ModelLifecycleManager,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._lifecycle = lifecycle
        self._clock = clock

    async def generate(
        self,
        history: Iterable[Any],
        params: GenerationSpec,
        cancel: threading.Event | None = None,
    ) -> AsyncIterator[Fragment | GenerationResult]:
        """Stream one completion.

        Yields ``Fragment`` objects every ``display_every_n_tokens`` tokens and
        finally one ``GenerationResult``. The cancel flag and the token ceiling
        are checked after every batch from the backend; tokens past the ceiling
        are dropped. Backend faults end the stream with ``fault`` set.
        """
        engine = self._lifecycle.require_loaded()
        turns = coerce_history(history)
        validate_history(turns)
        messages = to_messages(turns)
        cancel = cancel if cancel is not None else threading.Event()

        pieces: list[str] = []
        pending: list[Any] = []
        count = 0
        cancelled = False
        fault: str | None = None
        start = self._clock()

        stream = engine.stream(messages, params, cancel)
        try:
            async for batch in stream:
                taken = list(batch)[: params.max_new_tokens - count]
                pending.extend(taken)
                count += len(taken)
                if len(pending) >= params.display_every_n_tokens:
                    text = engine.decode(pending)
                    pending = []
                    pieces.append(text)
                    yield Fragment(text, thinking_phase("".join(pieces)))
                if cancel.is_set():
                    cancelled = True
                    break
                if count >= params.max_new_tokens:
                    break
        except Exception as exc:
            logger.exception("Generation failed after %d tokens", count)
            fault = str(exc) or type(exc).__name__
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if pending:
            try:
                pieces.append(engine.decode(pending))
            except Exception as exc:
                logger.exception("Decoding trailing tokens failed")
                fault = fault or str(exc) or type(exc).__name__

        elapsed = self._clock() - start
        logger.debug("Generated %d tokens in %.2fs (cancelled=%s)", count, elapsed, cancelled)
        yield GenerationResult(
            text="".join(pieces),
            cancelled=cancelled,
            token_count=count,
            elapsed_s=elapsed,
            fault=fault,
        )

    async def run(
        self,
        history: Iterable[Any],
        params: GenerationSpec,
        cancel: threading.Event | None = None,
        on_fragment: Callable[[Fragment], None] | None = None,
    ) -> GenerationResult:
        result: GenerationResult | None = None
        async for item in self.generate(history, params, cancel):
            if isinstance(item, Fragment):
                if on_fragment is not None:
                    on_fragment(item)
            else:
                result = item
        assert result is not None
        return result
