"""Error taxonomy for fountain sessions.

Every error a client can see derives from :class:`FountainError`, which knows
its HTTP status and any extra detail fields for the response body.
"""

from __future__ import annotations

from typing import Any

HTTP_BAD_REQUEST = 400
HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409


class FountainError(Exception):
    """Base class for errors surfaced to fountain clients."""

    status_code: int = HTTP_BAD_REQUEST

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any]:
        """Return extra fields merged into the error response body."""
        return {}


class ValidationError(FountainError):
    """A required field is missing or malformed. No state was touched."""


class SessionConflictError(FountainError):
    """The wallet already holds a fresh pending session.

    The caller can wait for it to go stale or call ``clear``.
    """

    def __init__(self, session_id: str | None, age_ms: int | None) -> None:
        super().__init__("Already have pending session")
        self.session_id = session_id
        self.age_ms = age_ms

    def details(self) -> dict[str, Any]:
        return {"sessionId": self.session_id, "age": self.age_ms}


class ResolutionInProgressError(FountainError):
    """Another request is currently resolving the same session."""

    status_code = HTTP_CONFLICT

    def __init__(self, session_id: str) -> None:
        super().__init__("Session resolution already in progress")
        self.session_id = session_id

    def details(self) -> dict[str, Any]:
        return {"sessionId": self.session_id}


class SessionNotFoundError(FountainError):
    """No session exists under the given id."""

    status_code = HTTP_NOT_FOUND

    def __init__(self, session_id: str) -> None:
        super().__init__("Invalid session")
        self.session_id = session_id


class AlreadyResolvedError(FountainError):
    """The session has already been resolved; resolution is not idempotent."""

    def __init__(self, session_id: str) -> None:
        super().__init__("Session already resolved")
        self.session_id = session_id


class BurnNotVerifiedError(FountainError):
    """The burn transaction is missing, failed, or does not match the stake."""

    def __init__(self, reason: str) -> None:
        super().__init__("Burn transaction not verified")
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {"reason": self.reason}


class BurnReplayError(FountainError):
    """The burn transaction was already used to resolve a different session."""

    def __init__(self, signature: str) -> None:
        super().__init__("Burn transaction already used")
        self.signature = signature


class ChainError(RuntimeError):
    """Raised when the chain RPC endpoint fails or returns an error."""


class PayoutError(RuntimeError):
    """Raised when a payout transfer cannot be built, submitted, or lands with an error.

    Never surfaced to the resolving client; the session records a failed payout
    reference instead.
    """

    def __init__(self, message: str, signature: str | None = None) -> None:
        super().__init__(message)
        self.signature = signature
