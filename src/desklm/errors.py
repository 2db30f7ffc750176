"""Error types raised across desklm."""
from __future__ import annotations


class DeskLMError(Exception):
    """Base class for desklm errors."""


class ModelNotFound(DeskLMError, LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Model not found: {name}")
        self.name = name


class CatalogInvariantError(DeskLMError):
    """A descriptor violates the catalog's invariants.

    This is a programming error, not a runtime condition, and is never
    converted into a failed state.
    """


class ModelNotReady(DeskLMError):
    """Generation was requested without a loaded model."""


class DownloadError(DeskLMError):
    pass


class ModelLoadError(DeskLMError):
    pass


class OrchestratorBusy(DeskLMError):
    """A message is already being generated."""


class ToolError(DeskLMError):
    """Base class for errors surfaced by tool execution."""

    kind = "execution_failed"


class UnknownTool(ToolError):
    kind = "unknown_tool"

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool function: {name}")
        self.name = name


class InvalidParameters(ToolError):
    kind = "invalid_parameters"


class ToolExecutionError(ToolError):
    pass
