# hls_ingest/errors.py
"""
Error kinds raised inside one item's pipeline.

Each stage raises exactly one kind so the orchestrator can report
Failed(stage, cause) without guessing where a failure came from.
"""
from __future__ import annotations


class IngestError(Exception):
    """Base class for everything the pipeline knows how to handle."""


class ConfigError(IngestError):
    """Invalid or missing settings. Raised before any item is touched."""


class DerivationError(IngestError):
    """The work item has no usable source URL to derive an identity from."""


class StorageError(IngestError):
    """Local filesystem failure (workspace creation, metadata file)."""


class FetchError(IngestError):
    """Network or remote failure while downloading the source media."""

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class TranscodeError(IngestError):
    """The external transcoder could not be launched or exited non-zero."""

    def __init__(self, message: str, *, stderr: str = "", returncode: int | None = None):
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class UploadError(IngestError):
    """Object store failure, or an output tree that does not hold exactly one playlist."""


class CatalogError(IngestError):
    """Document store failure."""
