"""Error hierarchy for issuepilot.

Every error carries a ``retryable`` flag and a free-form ``context``
mapping. The flag is informational: the engine never retries inside a
cycle, but controllers use it to decide whether to offer a retry, and
the remote transport uses it to decide whether to resend a command.
"""

from __future__ import annotations

from typing import Any


class IssuePilotError(Exception):
    """Base exception for all issuepilot errors.

    Attributes:
        retryable: Whether the failure is plausibly transient.
        context: Arbitrary diagnostic data.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.context: dict[str, Any] = dict(context or {})

    @property
    def is_retryable(self) -> bool:
        """Whether this error is safe to retry."""
        return self.retryable


class ConfigurationError(IssuePilotError):
    """Invalid or missing setup. Never retryable."""

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, retryable=False, context=context)


class PipelineError(IssuePilotError):
    """A pipeline step failed.

    Retryable when the cause is transient (agent failure, parse failure,
    merge race); non-retryable for deliberate outcomes such as a rejected
    plan, failed verification, exhausted branch names or a monitor timeout.
    """


class CollaboratorError(IssuePilotError):
    """The tracker or agent boundary itself failed."""

    def __init__(
        self,
        message: str,
        *,
        collaborator: str = "",
        retryable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, retryable=retryable, context=context)
        self.collaborator = collaborator


# ---------------------------------------------------------------------------
# Transport errors
# ---------------------------------------------------------------------------


class TransportError(IssuePilotError):
    """Base class for failures crossing a transport boundary.

    Attributes:
        status_code: HTTP status code, if the failure came from a response.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, retryable=retryable, context=context)
        self.status_code = status_code


class ServerError(TransportError):
    """5xx, 408 or 429: the server is failing or overloaded."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class ClientError(TransportError):
    """4xx: bad request, unauthorized, conflict and the like."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)


class ConnectionFailedError(TransportError):
    """Network-level failure (connection refused, DNS, reset)."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class TransportDisposedError(TransportError):
    """A command was sent through a transport after ``dispose()``."""


class AbortedError(IssuePilotError):
    """A retrying operation was cancelled before it could finish."""


_RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


def error_from_status(
    status_code: int,
    message: str,
    *,
    context: dict[str, Any] | None = None,
) -> TransportError:
    """Create the appropriate TransportError subclass for an HTTP status.

    Args:
        status_code: Status code of the failed response.
        message: Error message.
        context: Extra diagnostic data.

    Returns:
        ``ServerError`` for 5xx/408/429, ``ClientError`` for other 4xx,
        and a retryable ``TransportError`` for anything else.
    """
    if status_code >= 500 or status_code in _RETRYABLE_CLIENT_STATUSES:
        return ServerError(message, status_code=status_code, context=context)
    if 400 <= status_code < 500:
        return ClientError(message, status_code=status_code, context=context)
    return TransportError(
        message, status_code=status_code, retryable=True, context=context
    )
