"""Domain error taxonomy.

Each error carries the HTTP status the API layer answers with.
"""

from __future__ import annotations


class LiberoError(Exception):
    """Base class."""

    status = 500


class ValidationError(LiberoError):
    """Bad input shape, e.g. purchasing or cancelling a free pack."""

    status = 400


class AccessDeniedError(LiberoError):
    """The user may not see the requested content (also used for unknown ids)."""

    status = 403


class NotFoundError(LiberoError):
    status = 404


class ConflictError(LiberoError):
    """Duplicate subscription, downgrade attempt, circular pack hierarchy."""

    status = 409


class ExternalProviderError(LiberoError):
    """Payment or messaging provider call failed."""

    status = 502


class SignatureVerificationError(LiberoError):
    """Webhook authentication failure. Never processed."""

    status = 400
