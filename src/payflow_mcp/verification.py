"""Verifier and settler adapters around the x402 facilitator client.

Both are single-shot: one facilitator request per call, no retry. Transport
faults are raised as FacilitatorError subclasses.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, TypeVar

import httpx
from x402.types import PaymentPayload, PaymentRequirements, SettleResponse, VerifyResponse

from payflow_mcp.errors import (
    FacilitatorConnectionError,
    FacilitatorError,
    FacilitatorTimeoutError,
    SettlementError,
    VerificationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Facilitator(Protocol):
    async def verify(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> VerifyResponse: ...

    async def settle(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> SettleResponse: ...


async def _call_facilitator(operation: str, call: Awaitable[T]) -> T:
    """Await a facilitator request, mapping transport and parse faults."""
    try:
        return await call
    except FacilitatorError:
        raise
    except httpx.TimeoutException as e:
        raise FacilitatorTimeoutError(f"Facilitator /{operation} timed out: {e}") from e
    except httpx.HTTPError as e:
        raise FacilitatorConnectionError(f"Facilitator /{operation} unreachable: {e}") from e
    except ValueError as e:
        # Non-JSON or unexpected body; pydantic's ValidationError is a ValueError
        logger.warning("Unexpected facilitator %s response: %s", operation, e)
        raise FacilitatorError(f"Facilitator returned a malformed {operation} response") from e


class InvalidReason(str, Enum):
    """Verification rejection reasons with a dedicated message."""

    INSUFFICIENT_FUNDS = "insufficient_funds"
    VALID_AFTER = "invalid_exact_evm_payload_authorization_valid_after"
    VALID_BEFORE = "invalid_exact_evm_payload_authorization_valid_before"
    VALUE = "invalid_exact_evm_payload_authorization_value"
    SIGNATURE = "invalid_exact_evm_payload_signature"
    RECIPIENT_MISMATCH = "invalid_exact_evm_payload_recipient_mismatch"
    NETWORK = "invalid_network"


_MESSAGES: dict[InvalidReason, str] = {
    InvalidReason.INSUFFICIENT_FUNDS: "Insufficient funds for payment. Required: {amount}",
    InvalidReason.VALID_AFTER: "Invalid validAfter value in the payment",
    InvalidReason.VALID_BEFORE: "Invalid validBefore value in the payment (authorization expired)",
    InvalidReason.VALUE: "The value of the payment is incorrect, it should be {amount}",
    InvalidReason.SIGNATURE: "Invalid signature in the payment",
    InvalidReason.RECIPIENT_MISMATCH: "Recipient mismatch in the payment. Pay to: {pay_to}",
    InvalidReason.NETWORK: "Invalid network in the payment. Network: {network}",
}


def describe_invalid_reason(requirements: PaymentRequirements, reason: str | None) -> str:
    """Human-readable, actionable text for a verification rejection."""
    try:
        known = InvalidReason(reason)
    except ValueError:
        return f"Payment verification failed: {reason or 'unknown reason'}"
    message = _MESSAGES[known].format(
        amount=requirements.max_amount_required,
        pay_to=requirements.pay_to,
        network=requirements.network,
    )
    return f"{known.value}: {message}"


@dataclass(frozen=True)
class VerificationOutcome:
    valid: bool
    reason: str | None = None
    payer: str | None = None


@dataclass(frozen=True)
class SettlementOutcome:
    success: bool
    transaction: str | None = None
    reason: str | None = None
    network: str | None = None
    payer: str | None = None


class PaymentVerifier:
    """Submits a payment and its requirement to the facilitator for verification."""

    def __init__(self, facilitator: Facilitator) -> None:
        self._facilitator = facilitator

    async def verify(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> VerificationOutcome:
        response = await _call_facilitator(
            "verify", self._facilitator.verify(payload, requirements)
        )
        return VerificationOutcome(
            valid=response.is_valid,
            reason=None if response.is_valid else response.invalid_reason,
            payer=response.payer,
        )

    async def verify_or_raise(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> VerificationOutcome:
        """Like verify(), but a rejection raises VerificationError."""
        outcome = await self.verify(payload, requirements)
        if not outcome.valid:
            raise VerificationError(
                describe_invalid_reason(requirements, outcome.reason),
                outcome.reason,
                outcome,
            )
        return outcome


class PaymentSettler:
    """Submits a verified payment to the facilitator for on-chain settlement."""

    def __init__(self, facilitator: Facilitator) -> None:
        self._facilitator = facilitator

    async def settle(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> SettlementOutcome:
        response = await _call_facilitator(
            "settle", self._facilitator.settle(payload, requirements)
        )
        return SettlementOutcome(
            success=response.success,
            transaction=response.transaction,
            reason=None if response.success else response.error_reason,
            network=response.network,
            payer=response.payer,
        )

    async def settle_or_raise(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> SettlementOutcome:
        """Like settle(), but a failure (or a missing tx reference) raises SettlementError."""
        outcome = await self.settle(payload, requirements)
        if not outcome.success:
            reason = outcome.reason or "unknown reason"
            raise SettlementError(reason, outcome.reason, outcome)
        if not outcome.transaction:
            raise SettlementError(
                "facilitator returned no transaction reference", outcome=outcome
            )
        return outcome
