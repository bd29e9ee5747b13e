"""Error taxonomy for the monetization pipeline.

Every error carries a human-readable message plus a ``details`` dict that is
safe to persist into ``AgentRun.error_details`` or return from the API.
"""

from __future__ import annotations

from typing import Any


class MonetizationError(Exception):
    """Base error for the monetization pipeline."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(MonetizationError):
    """Referenced record does not exist."""


class InvalidStateError(MonetizationError):
    """Operation is not allowed from the record's current status."""


class ExternalFetchError(MonetizationError):
    """An external data source failed or timed out."""


class PartialBatchFailure(MonetizationError):
    """No item of a batch succeeded."""
