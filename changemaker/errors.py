"""
changemaker.errors — Request-layer exception taxonomy
======================================================

Raised by the review / profile services before any mutation and mapped to
HTTP responses by the handler registered in :mod:`changemaker.api.main`.
The reward pipeline itself never raises these; it returns
:class:`~changemaker.engine.results.Err` instead.
"""

from __future__ import annotations


class ChangemakerError(Exception):
    """Base class; ``status_code`` is the HTTP status it maps to."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthorizationError(ChangemakerError):
    """Wrong role, not assigned to the challenge, or self-review."""

    status_code = 403


class ValidationError(ChangemakerError):
    status_code = 400


class NotFoundError(ChangemakerError):
    status_code = 404


class ConflictError(ChangemakerError):
    """The row was not in a state that allows the requested transition."""

    status_code = 409
