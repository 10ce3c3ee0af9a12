"""Exception types raised by the sync core."""
from __future__ import annotations


class RewindError(Exception):
    """Base class for Rewind Sync errors."""


class DataRootNotConfigured(RewindError):
    """The transcript data root is missing or does not exist."""

    def __init__(self, path: str = ""):
        self.path = path
        if path:
            message = f"Rewind data path does not exist: {path}"
        else:
            message = "Rewind data path not configured"
        super().__init__(message)


class IngestUnavailable(RewindError):
    """The ingest backend failed its reachability check."""


class OperationTimeout(RewindError, TimeoutError):
    """A guarded operation did not finish before its deadline."""

    def __init__(self, label: str, deadline: float):
        self.label = label
        self.deadline = deadline
        super().__init__(f"{label} timed out after {deadline:g}s")
