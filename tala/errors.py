"""
Error taxonomy for the ingestion pipeline.

- ValidationError: caller error, surfaced immediately (never reaches the pipeline)
- UpstreamUnavailable: model gateway or a collaborator is down or too slow;
  stages recover locally with a safe default
- ParseError: a model reply could not be turned into the expected JSON
- PersistenceError: Origin Log / projection store write failed; fatal for the
  current request, never corrupts committed rows
"""

from __future__ import annotations


class TalaError(Exception):
    """Base class for all domain errors."""


class ValidationError(TalaError):
    """Request is invalid (e.g. missing profile id)."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class UpstreamUnavailable(TalaError):
    """An external dependency failed, timed out, or is disabled."""

    def __init__(self, message: str, collaborator: str, status_code: int | None = None):
        super().__init__(message)
        self.collaborator = collaborator
        self.status_code = status_code


class ParseError(TalaError):
    """Model output could not be parsed as a JSON object."""

    def __init__(self, message: str, raw_text: str | None = None):
        super().__init__(message)
        self.raw_text = raw_text


class PersistenceError(TalaError):
    """A database write failed and was rolled back."""
