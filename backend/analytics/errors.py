"""Error taxonomy for the ingestion path."""
from __future__ import annotations


class IngestionError(Exception):
    """Base class for failures that reject a beacon request."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MalformedInput(IngestionError):
    """Body unparseable or structurally wrong."""

    status_code = 400


class PayloadTooLarge(MalformedInput):
    status_code = 413


class UnknownTenant(IngestionError):
    """Tracking id does not resolve to a website."""

    status_code = 404


class RateLimited(IngestionError):
    """Admission denied by the rate limiter."""

    status_code = 429


class WriteFailure(IngestionError):
    """The store was unavailable or rejected the write."""

    status_code = 500
