"""Local model storage and Hugging Face Hub downloads."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Callable, Protocol

import httpx
from huggingface_hub import HfApi, hf_hub_url

from .catalog import ModelDescriptor
from .errors import DownloadError
from .events import DownloadProgress, DownloadStarted, EventBus

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

_TOKENIZER_FILES = ("tokenizer.json", "tokenizer.model")
_WEIGHT_SUFFIXES = (".safetensors", ".bin", ".pt", ".pth", ".msgpack", ".h5")
_SKIPPED_DIRS = ("original/", "onnx/", "openvino/", "coreml/")
_SKIPPED_SUFFIXES = (".md", ".png", ".jpg", ".jpeg", ".gif", ".onnx", ".gguf")


def _ensure_safetensors_index(model_path: str) -> None:
    index_path = Path(model_path) / "model.safetensors.index.json"
    if index_path.exists():
        return
    st_path = Path(model_path) / "model.safetensors"
    if not st_path.exists():
        return
    try:
        from safetensors import safe_open
    except Exception:
        return
    weight_map: dict[str, str] = {}
    with safe_open(str(st_path), framework="pt") as f:
        for key in f.keys():
            weight_map[key] = st_path.name
    data = {
        "metadata": {"total_size": os.path.getsize(st_path)},
        "weight_map": weight_map,
    }
    with open(index_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle)


def select_repo_files(names: list[str]) -> list[str]:
    """Pick the files worth fetching from a hub repository listing."""
    wanted = [
        name
        for name in names
        if not name.startswith(".")
        and not name.startswith(_SKIPPED_DIRS)
        and not name.lower().endswith(_SKIPPED_SUFFIXES)
    ]
    if any(name.endswith(".safetensors") for name in wanted):
        wanted = [
            name
            for name in wanted
            if name.endswith(".safetensors") or not name.endswith(_WEIGHT_SUFFIXES)
        ]
    return wanted


class ModelStore:
    """Directory layout for downloaded models: ``<root>/<model name>/``."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, descriptor: ModelDescriptor) -> Path:
        return self._root / descriptor.name

    def staging_path_for(self, descriptor: ModelDescriptor) -> Path:
        return self._root / f".{descriptor.name}.partial"

    def is_installed(self, descriptor: ModelDescriptor) -> bool:
        """True when every weight shard and a tokenizer are on disk.

        Sharded checkpoints are validated against their
        ``model.safetensors.index.json`` weight map, so an interrupted copy
        never counts as installed.
        """
        path = self.path_for(descriptor)
        if not path.is_dir():
            return False
        if not any((path / name).is_file() for name in _TOKENIZER_FILES):
            return False
        index_path = path / "model.safetensors.index.json"
        if index_path.is_file():
            try:
                with open(index_path, "r", encoding="utf-8") as handle:
                    weight_map = json.load(handle).get("weight_map", {})
            except (OSError, ValueError):
                logger.warning("Unreadable safetensors index in %s", path)
                return False
            shards = set(weight_map.values())
            return bool(shards) and all((path / shard).is_file() for shard in shards)
        return (path / "model.safetensors").is_file()

    def prepare(self, descriptor: ModelDescriptor) -> Path:
        """Return the model directory, ready for layer-by-layer loading."""
        path = self.path_for(descriptor)
        _ensure_safetensors_index(str(path))
        return path

    def remove(self, descriptor: ModelDescriptor) -> None:
        shutil.rmtree(self.path_for(descriptor), ignore_errors=True)
        shutil.rmtree(self.staging_path_for(descriptor), ignore_errors=True)


class Downloader(Protocol):
    async def download(
        self, descriptor: ModelDescriptor, destination: Path, progress: ProgressCallback
    ) -> None:
        ...


class HubDownloader:
    """Fetches a model repository from the Hugging Face Hub.

    Files are streamed into a hidden staging directory next to the
    destination and promoted with a single rename once every file arrived.
    Any failure or cancellation removes the staging directory.
    """

    def __init__(
        self,
        token: str | None = None,
        endpoint: str | None = None,
        chunk_size: int = 256 * 1024,
        api: Any | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = token
        self._endpoint = endpoint
        self._chunk_size = chunk_size
        self._api = api if api is not None else HfApi(endpoint=endpoint, token=token)
        self._transport = transport

    def _list_files(self, repo_id: str) -> list[tuple[str, int]]:
        info = self._api.model_info(repo_id, files_metadata=True)
        sizes = {sibling.rfilename: int(sibling.size or 0) for sibling in info.siblings or []}
        return [(name, sizes[name]) for name in select_repo_files(list(sizes))]

    async def download(
        self, descriptor: ModelDescriptor, destination: Path, progress: ProgressCallback
    ) -> None:
        repo_id = descriptor.repo_id
        staging = destination.with_name(f".{destination.name}.partial")
        try:
            files = await asyncio.to_thread(self._list_files, repo_id)
        except Exception as exc:
            raise DownloadError(f"Could not list files of {repo_id}: {exc}") from exc
        if not files:
            raise DownloadError(f"No downloadable files in {repo_id}")

        total = sum(size for _, size in files) or descriptor.size_bytes
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
        logger.info("Downloading %s (%d files) into %s", repo_id, len(files), destination)

        shutil.rmtree(staging, ignore_errors=True)
        staging.mkdir(parents=True)
        downloaded = 0
        last_pct = -1
        try:
            async with httpx.AsyncClient(
                follow_redirects=True, timeout=None, headers=headers, transport=self._transport
            ) as client:
                for filename, _ in files:
                    url = hf_hub_url(repo_id=repo_id, filename=filename, endpoint=self._endpoint)
                    target = staging / filename
                    target.parent.mkdir(parents=True, exist_ok=True)
                    async with client.stream("GET", url) as resp:
                        resp.raise_for_status()
                        with open(target, "wb") as f:
                            async for chunk in resp.aiter_bytes(chunk_size=self._chunk_size):
                                f.write(chunk)
                                downloaded += len(chunk)
                                pct = int(downloaded * 100 / total) if total else 0
                                if total and pct != last_pct:
                                    last_pct = pct
                                    progress(min(1.0, downloaded / total))
            if destination.exists():
                shutil.rmtree(destination)
            staging.rename(destination)
        except (httpx.HTTPError, OSError) as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise DownloadError(f"Download of {repo_id} failed: {exc}") from exc
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        progress(1.0)


class ProgressTracker:
    """Per-download progress that never moves backwards.

    ``begin`` starts a new download id and publishes ``DownloadStarted`` at
    zero; ``update`` publishes ``DownloadProgress`` only for fractions at or
    above the last published one.
    """

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._download_id = 0
        self._model_name: str | None = None
        self._fraction = 0.0

    @property
    def download_id(self) -> int:
        return self._download_id

    @property
    def model_name(self) -> str | None:
        return self._model_name

    @property
    def fraction(self) -> float:
        return self._fraction

    def begin(self, model_name: str) -> int:
        self._download_id += 1
        self._model_name = model_name
        self._fraction = 0.0
        self._bus.publish(DownloadStarted(self._download_id, model_name, 0.0))
        return self._download_id

    def update(self, fraction: float) -> bool:
        if self._model_name is None:
            return False
        fraction = min(1.0, max(0.0, float(fraction)))
        if fraction < self._fraction:
            logger.debug("Dropping regressed progress %.3f < %.3f", fraction, self._fraction)
            return False
        self._fraction = fraction
        self._bus.publish(DownloadProgress(self._download_id, self._model_name, fraction))
        return True
