"""Error taxonomy for the ingestion run.

A contract that cannot be keyed or scored is not an error: the transformer
returns None for it and the run carries on.
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for failures that end a run."""


class ConfigurationError(IngestionError):
    """A required setting (usually the API key) is missing."""


class InvalidRequestError(IngestionError):
    """The caller asked for something the service cannot do."""


class UpstreamFetchError(IngestionError):
    def __init__(self, message: str, *, page: int | None = None, status: str | int | None = None) -> None:
        super().__init__(message)
        self.page = page
        self.status = status


class WriteBatchError(IngestionError):
    """A merge batch failed; batches before it stay committed."""

    def __init__(self, message: str, *, batch_index: int, rows_written: int) -> None:
        super().__init__(message)
        self.batch_index = batch_index
        self.rows_written = rows_written
