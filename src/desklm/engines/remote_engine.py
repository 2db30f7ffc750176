"""OpenAI-compatible HTTP streaming engine."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, AsyncIterator

import httpx

from .base import GenerationSpec
from ..catalog import ModelDescriptor
from ..config import SettingsStore
from ..errors import ModelLoadError, ModelNotReady

logger = logging.getLogger(__name__)


class RemoteEngine:
    """Streams chat completions from a remote server.

    Tokens are the text deltas of the server-sent events, so one batch is one
    event and ``decode`` is a join.
    """

    requires_local_files = False

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        model: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sync_transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model_override = model
        self._transport = transport
        self._sync_transport = sync_transport
        self._model: str | None = None

    @classmethod
    def from_settings(cls, settings: SettingsStore, **kwargs: Any) -> "RemoteEngine":
        """Build from the ``remote.url``, ``remote.api_key`` and ``remote.model`` settings."""
        url = settings.get("remote.url")
        if not url:
            raise ValueError("remote.url is not configured")
        return cls(
            str(url),
            api_key=settings.get("remote.api_key") or None,
            model=settings.get("remote.model") or None,
            **kwargs,
        )

    def _headers(self) -> dict[str, str]:
        if self._api_key:
            return {"Authorization": f"Bearer {self._api_key}"}
        return {}

    def load(self, descriptor: ModelDescriptor, model_path: Path | None) -> None:
        model = self._model_override or descriptor.name
        try:
            with httpx.Client(
                timeout=httpx.Timeout(30.0, connect=10.0), transport=self._sync_transport
            ) as client:
                resp = client.get(f"{self._base_url}/v1/models", headers=self._headers())
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as exc:
            raise ModelLoadError(f"Remote server at {self._base_url} unavailable: {exc}") from exc

        available = [item.get("id") for item in data.get("data", []) if isinstance(item, dict)]
        if available and model not in available:
            raise ModelLoadError(f"Remote server does not serve {model}")
        self._model = model
        logger.info("Using remote model %s at %s", model, self._base_url)

    def unload(self) -> None:
        self._model = None

    def decode(self, tokens: list[Any]) -> str:
        return "".join(str(token) for token in tokens)

    async def stream(
        self, messages: list[dict[str, str]], gen: GenerationSpec, stop: threading.Event
    ) -> AsyncIterator[list[Any]]:
        if self._model is None:
            raise ModelNotReady("Engine not loaded")
        payload = {
            "model": self._model,
            "messages": messages,
            "stream": True,
            "max_tokens": gen.max_new_tokens,
            "temperature": gen.temperature,
            "top_p": gen.top_p,
        }
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(300.0, connect=10.0), transport=self._transport
        ) as client:
            async with client.stream(
                "POST",
                f"{self._base_url}/v1/chat/completions",
                json=payload,
                headers=self._headers(),
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if stop.is_set():
                        return
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        return
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning("Failed to parse chunk: %s", data[:100])
                        continue
                    for choice in chunk.get("choices", []):
                        content = (choice.get("delta") or {}).get("content")
                        if content:
                            yield [content]
