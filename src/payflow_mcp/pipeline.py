"""Paid invocation pipeline.

One call moves through:

    RECEIVED -> REQUIREMENTS_RESOLVED -> VERIFY_PENDING -> VERIFIED
             -> EXECUTED -> SETTLED -> COMPLETED

or stops in REJECTED at the first failing stage. Verification always precedes
execution and settlement always follows it. A handler that fails is never
settled; a settlement that fails after the handler ran is reported but its
side effects are not undone.

Nothing raised inside a stage escapes ``run``; every failure becomes an error
envelope the caller can read.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError
from x402.types import PaymentPayload, PaymentRequirements

from payflow_mcp.errors import (
    ArgumentValidationError,
    FacilitatorError,
    PaymentDecodeError,
    RequirementsError,
    SettlementError,
    VerificationError,
)
from payflow_mcp.registration import PAYMENT_PARAM, ToolRegistrationRecord
from payflow_mcp.requirements import DEFAULT_NETWORK, decode_payment_token, generate_requirements
from payflow_mcp.responses import ToolResponse
from payflow_mcp.verification import (
    PaymentSettler,
    PaymentVerifier,
    SettlementOutcome,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)


class InvocationState(str, Enum):
    RECEIVED = "received"
    REQUIREMENTS_RESOLVED = "requirements_resolved"
    VERIFY_PENDING = "verify_pending"
    VERIFIED = "verified"
    EXECUTED = "executed"
    SETTLED = "settled"
    COMPLETED = "completed"
    REJECTED = "rejected"


class Stage(str, Enum):
    """Where a rejected invocation stopped."""

    VALIDATE = "validate"
    DECODE = "decode"
    REQUIREMENTS = "requirements"
    VERIFY = "verify"
    EXECUTE = "execute"
    SETTLE = "settle"


@dataclass(frozen=True)
class InvocationContext:
    """Per-call correlation data, forwarded untouched to the handler."""

    tool_name: str
    session_id: str | None = None
    request_id: str | None = None
    transport: Any = None


@dataclass
class InvocationResult:
    """Everything one pass through the pipeline produced."""

    tool_name: str
    state: InvocationState = InvocationState.RECEIVED
    response: ToolResponse = field(default_factory=ToolResponse)
    rejected_stage: Stage | None = None
    requirements: PaymentRequirements | None = None
    verification: VerificationOutcome | None = None
    settlement: SettlementOutcome | None = None
    history: list[InvocationState] = field(default_factory=lambda: [InvocationState.RECEIVED])

    @property
    def is_error(self) -> bool:
        return self.state is InvocationState.REJECTED

    def advance(self, state: InvocationState) -> None:
        logger.debug("%s: %s -> %s", self.tool_name, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def reject(self, stage: Stage, response: ToolResponse) -> InvocationResult:
        logger.warning("%s rejected at %s: %s", self.tool_name, stage.value, response.text)
        self.rejected_stage = stage
        self.response = response
        self.advance(InvocationState.REJECTED)
        return self


class PaymentPipeline:
    """Drives one paid tool through requirements, verify, execute and settle."""

    def __init__(
        self,
        record: ToolRegistrationRecord,
        verifier: PaymentVerifier,
        settler: PaymentSettler,
        x402_version: int = 1,
        default_network: str | int | None = DEFAULT_NETWORK,
    ) -> None:
        self.record = record
        self._verifier = verifier
        self._settler = settler
        self._x402_version = x402_version
        self._network = (
            record.payment.network if record.payment.network is not None else default_network
        )

    async def __call__(self, arguments: Mapping[str, Any], ctx: Any = None) -> ToolResponse:
        result = await self.run(arguments, ctx)
        return result.response

    async def run(self, arguments: Mapping[str, Any], ctx: Any = None) -> InvocationResult:
        name = self.record.name
        result = InvocationResult(tool_name=name)
        if ctx is None:
            ctx = InvocationContext(tool_name=name)

        # RECEIVED: validate declared params, then decode the payment token
        tool_args = dict(arguments)
        token = tool_args.pop(PAYMENT_PARAM, None)
        try:
            validated = self._validate(tool_args)
        except ArgumentValidationError as e:
            return result.reject(Stage.VALIDATE, ToolResponse.error(str(e)))
        try:
            payload = self._decode(token)
        except PaymentDecodeError as e:
            return result.reject(Stage.DECODE, ToolResponse.error(str(e)))
        result.advance(InvocationState.REQUIREMENTS_RESOLVED)

        try:
            requirements = generate_requirements(
                payload,
                name,
                self.record.payment.price,
                self.record.payment.recipient,
                self._network,
                self.record.payment.asset,
            )
        except RequirementsError as e:
            return result.reject(Stage.REQUIREMENTS, ToolResponse.error(str(e)))
        result.requirements = requirements
        result.advance(InvocationState.VERIFY_PENDING)

        try:
            result.verification = await self._verifier.verify_or_raise(payload, requirements)
        except VerificationError as e:
            result.verification = e.outcome
            return result.reject(Stage.VERIFY, ToolResponse.error(str(e)))
        except FacilitatorError as e:
            return result.reject(
                Stage.VERIFY, ToolResponse.error(f"Payment verification failed: {e}")
            )
        result.advance(InvocationState.VERIFIED)

        try:
            response = ToolResponse.coerce(await self.record.handler(validated, ctx))
        except Exception as e:
            logger.error("Paid tool %s failed; payment not settled", name, exc_info=True)
            return result.reject(Stage.EXECUTE, ToolResponse.error(f"Tool execution failed: {e}"))
        if response.is_error:
            return result.reject(Stage.EXECUTE, response)
        result.advance(InvocationState.EXECUTED)

        try:
            result.settlement = await self._settler.settle_or_raise(payload, requirements)
        except (SettlementError, FacilitatorError) as e:
            result.settlement = getattr(e, "outcome", None)
            self._log_unsettled(requirements, result.verification, e)
            return result.reject(
                Stage.SETTLE,
                ToolResponse.error(
                    f"Tool '{name}' executed successfully but payment settlement failed: {e}"
                ),
            )
        result.advance(InvocationState.SETTLED)

        result.response = response.with_segment(f"Payment: {result.settlement.transaction}")
        result.advance(InvocationState.COMPLETED)
        logger.info(
            "Paid tool %s settled: tx=%s network=%s",
            name, result.settlement.transaction, requirements.network,
        )
        return result

    # -- stages ---------------------------------------------------------------

    def _validate(self, tool_args: dict[str, Any]) -> dict[str, Any]:
        try:
            return self.record.validate_arguments(tool_args)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors()
            )
            raise ArgumentValidationError(f"Invalid arguments: {problems}") from e

    def _decode(self, token: Any) -> PaymentPayload:
        if not isinstance(token, str) or not token:
            raise PaymentDecodeError(f"Missing '{PAYMENT_PARAM}': this tool requires an x402 payment")
        payload = decode_payment_token(token)
        return payload.model_copy(update={"x402_version": self._x402_version})

    def _log_unsettled(
        self,
        requirements: PaymentRequirements,
        verification: VerificationOutcome | None,
        error: Exception,
    ) -> None:
        # Side effects already happened; needs manual reconciliation
        logger.error(
            "UNSETTLED paid call: tool=%s payer=%s pay_to=%s amount=%s asset=%s network=%s error=%s",
            self.record.name,
            verification.payer if verification else None,
            requirements.pay_to,
            requirements.max_amount_required,
            requirements.asset,
            requirements.network,
            error,
        )
