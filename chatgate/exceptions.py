"""
Unified Exception Hierarchy for chatgate.

Every component raises one of these instead of leaking driver or SDK
exceptions. The Message Router and the HTTP layer are the only places that
turn them into user-visible or HTTP-visible behavior.

Usage:
    from chatgate.exceptions import (
        StoreError,
        UpstreamError,
        VerificationError,
    )

    try:
        await store.increment_usage(account_id)
    except StoreError:
        # Fail closed - never answer without charging
        logger.error("Usage increment failed")
"""

from typing import Any


class ChatGateError(Exception):
    """Base exception for all chatgate errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dict with additional error context.
        status_code: HTTP status code if applicable.
        service: Name of the service that raised the error.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
        service: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.status_code = status_code
        self.service = service

    def __str__(self) -> str:
        parts = [self.message]
        if self.service:
            parts.insert(0, f"[{self.service}]")
        if self.status_code:
            parts.append(f"(HTTP {self.status_code})")
        return " ".join(parts)


class ConfigurationError(ChatGateError):
    """Configuration is invalid or missing.

    Raised at startup when required credentials are not set.

    Attributes:
        missing: Names of the settings that were empty.
    """

    def __init__(
        self,
        message: str = "Configuration is incomplete",
        *,
        missing: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.missing = missing or []


class StoreError(ChatGateError):
    """A persistence read or write failed.

    Callers treat this as fail-closed: the in-flight turn is aborted without
    answering the user and without charging the usage counter.
    """

    def __init__(self, message: str = "Account store operation failed", **kwargs: Any) -> None:
        kwargs.setdefault("service", "store")
        super().__init__(message, **kwargs)


class UpstreamError(ChatGateError):
    """An external call (completion or payment provider) failed.

    Attributes:
        timed_out: True when the call exceeded its bounded timeout.
    """

    def __init__(
        self,
        message: str = "Upstream call failed",
        *,
        timed_out: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.timed_out = timed_out


class CompletionError(UpstreamError):
    """The completion API call failed or timed out."""

    def __init__(self, message: str = "Completion request failed", **kwargs: Any) -> None:
        kwargs.setdefault("service", "completion")
        super().__init__(message, **kwargs)


class PaymentProviderError(UpstreamError):
    """A payment provider call failed or timed out."""

    def __init__(self, message: str = "Payment provider request failed", **kwargs: Any) -> None:
        kwargs.setdefault("service", "stripe")
        super().__init__(message, **kwargs)


class NotFoundError(PaymentProviderError):
    """The payment provider no longer knows the referenced resource.

    Attributes:
        resource_type: Type of resource (e.g., "subscription").
        resource_id: Identifier of the missing resource.
    """

    def __init__(
        self,
        message: str = "Resource not found",
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, status_code=404, **kwargs)
        self.resource_type = resource_type
        self.resource_id = resource_id


class VerificationError(ChatGateError):
    """A webhook delivery failed signature or payload verification.

    The delivery is rejected with HTTP 400 and no state is changed.
    """

    def __init__(self, message: str = "Webhook verification failed", **kwargs: Any) -> None:
        kwargs.setdefault("service", "stripe")
        super().__init__(message, status_code=400, **kwargs)


__all__ = [
    "ChatGateError",
    "ConfigurationError",
    "StoreError",
    "UpstreamError",
    "CompletionError",
    "PaymentProviderError",
    "NotFoundError",
    "VerificationError",
]
