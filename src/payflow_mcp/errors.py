"""Exception hierarchy for payflow-mcp.

Registration problems raise immediately. Everything raised inside the paid
invocation pipeline is caught by the pipeline and turned into an error
envelope, so callers only ever see these types in logs and tests.
"""

from __future__ import annotations

from typing import Any


class PayflowError(Exception):
    """Base exception for payflow-mcp."""


class ConfigurationError(PayflowError):
    """Raised at registration/startup time when a tool or server is misconfigured."""


# ---------------------------------------------------------------------------
# Admission (before any facilitator call)
# ---------------------------------------------------------------------------


class PaymentDecodeError(PayflowError):
    """Raised when the payment token cannot be decoded into a payment payload."""


class ArgumentValidationError(PayflowError):
    """Raised when declared tool arguments fail schema validation."""


class RequirementsError(PayflowError):
    """Raised when payment requirements cannot be built for a call."""


class UnsupportedNetworkError(RequirementsError):
    """Raised when a network or asset has no known settlement metadata."""


class NoMatchingRequirementsError(RequirementsError):
    """Raised when the payment's scheme/network matches no offered requirement."""

    def __init__(self, message: str = "No matching payment requirements found") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Facilitator
# ---------------------------------------------------------------------------


class VerificationError(PayflowError):
    """Raised when the facilitator rejects a payment during verification."""

    def __init__(self, message: str, reason: str | None = None, outcome: Any = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.outcome = outcome


class SettlementError(PayflowError):
    """Raised when the facilitator fails to settle a verified payment."""

    def __init__(self, message: str, reason: str | None = None, outcome: Any = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.outcome = outcome


class FacilitatorError(PayflowError):
    """Transport-level failure talking to the facilitator."""


class FacilitatorConnectionError(FacilitatorError):
    """Network error reaching the facilitator."""


class FacilitatorTimeoutError(FacilitatorError):
    """The facilitator did not answer in time."""
