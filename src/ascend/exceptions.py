"""Domain exceptions for the Ascend gamification core.

Services raise these for missing sessions, missing records, terminal
attempts and store failures. The API layer maps each class to a status code
via ``status_code``; background jobs log ``to_dict()``.
"""

from __future__ import annotations

from typing import Any


class AscendError(Exception):
    """Base exception for all Ascend domain errors.

    Args:
        message: Human-readable error message
        details: Additional structured context about the error
        is_retryable: Whether the caller may retry the same operation
        error_code: Stable identifier for programmatic handling
    """

    status_code: int = 500
    DEFAULT_RETRYABLE: bool = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        is_retryable: bool | None = None,
        error_code: str | None = None,
    ) -> None:
        self.message = message
        self.details: dict[str, Any] = details or {}
        self.is_retryable = is_retryable if is_retryable is not None else self.DEFAULT_RETRYABLE
        self.error_code = error_code or self.__class__.__name__
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "is_retryable": self.is_retryable,
        }

    def __str__(self) -> str:
        details_str = f" | Details: {self.details}" if self.details else ""
        return f"[{self.error_code}] {self.message}{details_str}"


class NotAuthenticated(AscendError):
    """An operation requiring a user identity was invoked without one."""

    status_code = 401

    def __init__(self, message: str = "You must be signed in", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class NotFound(AscendError):
    """A referenced challenge, attempt, user or leaderboard window does not exist."""

    status_code = 404

    def __init__(
        self,
        resource: str,
        identifier: Any = None,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if message is None:
            message = f"{resource} not found" if identifier is None else f"{resource} {identifier} not found"
        super().__init__(message, details=details or {"resource": resource, "id": identifier})
        self.resource = resource
        self.identifier = identifier


class ChallengeClosed(NotFound):
    """The attempt is completed or failed and accepts no further mutation."""

    status_code = 409

    def __init__(self, user_challenge_id: int, status: str) -> None:
        super().__init__(
            "Challenge attempt",
            user_challenge_id,
            message=f"Challenge attempt {user_challenge_id} is already {status}",
            details={"user_challenge_id": user_challenge_id, "status": status},
        )
        self.status = status


class AlreadyStarted(AscendError):
    """The user already has an open attempt at this challenge."""

    status_code = 409

    def __init__(self, user_id: int, challenge_id: int) -> None:
        super().__init__(
            "Challenge already started",
            details={"user_id": user_id, "challenge_id": challenge_id},
        )


class InvalidRequirements(AscendError):
    """A challenge's requirements map is malformed."""

    status_code = 422


class PersistenceFailed(AscendError):
    """A store write failed (network, constraint, timeout)."""

    status_code = 503
    DEFAULT_RETRYABLE = True


class RecordFailed(PersistenceFailed):
    """Writing an XP ledger row failed."""


class ReadFailed(AscendError):
    """A store read failed."""

    status_code = 503
    DEFAULT_RETRYABLE = True


class PartialAward(AscendError):
    """The challenge was completed but its XP award failed.

    Logged by the challenge engine, never raised to API callers. The attempt
    stays completed and is repaired by ``reconcile_challenge_awards``.
    """

    DEFAULT_RETRYABLE = True
