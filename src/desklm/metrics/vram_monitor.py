"""GPU memory sampling through NVML."""
from __future__ import annotations

import logging

try:
    import pynvml  # provided by nvidia-ml-py
except Exception:  # pragma: no cover
    pynvml = None

logger = logging.getLogger(__name__)


class VramSampler:
    """Reads used/total memory of one GPU.

    Disables itself permanently when NVML is missing or fails to initialise,
    so callers can sample unconditionally.
    """

    def __init__(self, gpu_index: int | None) -> None:
        self._gpu_index = gpu_index if gpu_index is not None else 0
        self._enabled = pynvml is not None and gpu_index is not None and gpu_index >= 0
        self._handle = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    def open(self) -> None:
        if not self._enabled or self._handle is not None:
            return
        try:
            pynvml.nvmlInit()
            self._handle = pynvml.nvmlDeviceGetHandleByIndex(self._gpu_index)
        except Exception as exc:
            logger.info("NVML unavailable, GPU memory will not be reported: %s", exc)
            self._enabled = False

    def close(self) -> None:
        if self._handle is None:
            return
        self._handle = None
        try:
            pynvml.nvmlShutdown()
        except Exception:
            logger.debug("nvmlShutdown failed", exc_info=True)

    def read(self) -> tuple[int, int] | None:
        """Return ``(used_bytes, total_bytes)`` or None when unavailable."""
        self.open()
        if not self._enabled or self._handle is None:
            return None
        try:
            info = pynvml.nvmlDeviceGetMemoryInfo(self._handle)
        except Exception:
            logger.debug("nvmlDeviceGetMemoryInfo failed", exc_info=True)
            return None
        return int(info.used), int(info.total)
