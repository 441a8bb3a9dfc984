"""Tests for the paid invocation pipeline (requirements -> verify -> execute -> settle)."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import PAYER, RECIPIENT, TX_HASH, make_token, settle_response, verify_response
from payflow_mcp.errors import FacilitatorConnectionError, FacilitatorError
from payflow_mcp.pipeline import (
    InvocationContext,
    InvocationResult,
    InvocationState,
    PaymentPipeline,
    Stage,
)
from payflow_mcp.registration import HandlerKind, PaidToolConfig, build_record
from payflow_mcp.responses import ToolResponse
from payflow_mcp.verification import PaymentSettler, PaymentVerifier


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _pipeline(
    facilitator: AsyncMock,
    handler=None,
    kind: HandlerKind = HandlerKind.WITH_ARGS,
    schema=None,
    price=0.05,
    network=None,
) -> PaymentPipeline:
    if handler is None:
        handler = AsyncMock(return_value="tool output")
    options = {"price": price, "recipient": RECIPIENT}
    if network is not None:
        options["network"] = network
    record = build_record(
        PaidToolConfig(
            name="lookup",
            payment=options,
            handler=handler,
            kind=kind,
            param_schema=schema if schema is not None else {"query": str},
        )
    )
    return PaymentPipeline(record, PaymentVerifier(facilitator), PaymentSettler(facilitator))


def _args(**overrides) -> dict:
    args = {"query": "blocks", "payment": make_token()}
    args.update(overrides)
    return args


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSuccessfulInvocation:
    @pytest.mark.asyncio
    async def test_appends_payment_reference(self, facilitator: AsyncMock) -> None:
        handler = AsyncMock(return_value="tool output")
        result = await _pipeline(facilitator, handler).run(_args())

        assert result.state is InvocationState.COMPLETED
        assert not result.is_error
        texts = [segment.text for segment in result.response.content]
        assert texts == ["tool output", f"Payment: {TX_HASH}"]

    @pytest.mark.asyncio
    async def test_walks_every_state_in_order(self, facilitator: AsyncMock) -> None:
        result = await _pipeline(facilitator).run(_args())
        assert result.history == [
            InvocationState.RECEIVED,
            InvocationState.REQUIREMENTS_RESOLVED,
            InvocationState.VERIFY_PENDING,
            InvocationState.VERIFIED,
            InvocationState.EXECUTED,
            InvocationState.SETTLED,
            InvocationState.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_handler_segments_not_mutated_or_reordered(self, facilitator: AsyncMock) -> None:
        original = ToolResponse.coerce(["first", "second", "third"])
        handler = AsyncMock(return_value=original)
        result = await _pipeline(facilitator, handler).run(_args())

        assert [s.text for s in result.response.content[:3]] == ["first", "second", "third"]
        assert result.response.content[-1].text == f"Payment: {TX_HASH}"
        # The handler's own envelope is left as it was
        assert len(original.content) == 3

    @pytest.mark.asyncio
    async def test_handler_receives_validated_args_without_payment(self, facilitator: AsyncMock) -> None:
        handler = AsyncMock(return_value="ok")
        ctx = InvocationContext(tool_name="lookup", session_id="session-1")
        await _pipeline(facilitator, handler).run(_args(), ctx)

        handler.assert_awaited_once()
        args, passed_ctx = handler.await_args.args
        assert args == {"query": "blocks"}
        assert passed_ctx is ctx

    @pytest.mark.asyncio
    async def test_context_only_handler(self, facilitator: AsyncMock) -> None:
        handler = AsyncMock(return_value="ok")
        pipeline = _pipeline(facilitator, handler, kind=HandlerKind.CONTEXT_ONLY, schema={})
        result = await pipeline.run({"payment": make_token()})

        assert result.state is InvocationState.COMPLETED
        (ctx,) = handler.await_args.args
        assert isinstance(ctx, InvocationContext)
        assert ctx.tool_name == "lookup"

    @pytest.mark.asyncio
    async def test_sync_handler(self, facilitator: AsyncMock) -> None:
        handler = MagicMock(return_value={"rows": 3})
        result = await _pipeline(facilitator, handler).run(_args())

        assert result.state is InvocationState.COMPLETED
        assert '"rows": 3' in result.response.content[0].text

    @pytest.mark.asyncio
    async def test_call_returns_envelope(self, facilitator: AsyncMock) -> None:
        response = await _pipeline(facilitator)(_args())
        assert isinstance(response, ToolResponse)
        assert response.content[-1].text == f"Payment: {TX_HASH}"

    @pytest.mark.asyncio
    async def test_call_returns_rejection_envelope(self, facilitator: AsyncMock) -> None:
        response = await _pipeline(facilitator)({"query": "blocks"})
        assert isinstance(response, ToolResponse)
        assert response.is_error

    def test_new_result_has_empty_envelope(self) -> None:
        result = InvocationResult(tool_name="lookup")
        assert isinstance(result.response, ToolResponse)
        assert result.response.content == []

    @pytest.mark.asyncio
    async def test_requirements_sent_to_facilitator(self, facilitator: AsyncMock) -> None:
        await _pipeline(facilitator).run(_args())

        payload, requirements = facilitator.verify.await_args.args
        assert requirements.max_amount_required == "50000"
        assert requirements.pay_to == RECIPIENT
        assert requirements.network == "base"
        assert requirements.resource == "lookup"
        assert payload.payload.authorization.from_ == PAYER
        # Settle gets the exact same pair
        assert facilitator.settle.await_args.args == (payload, requirements)


# ---------------------------------------------------------------------------
# Admission failures (no network calls)
# ---------------------------------------------------------------------------


class TestAdmissionRejections:
    @pytest.mark.asyncio
    async def test_missing_payment(self, facilitator: AsyncMock) -> None:
        result = await _pipeline(facilitator).run({"query": "blocks"})

        assert result.state is InvocationState.REJECTED
        assert result.rejected_stage is Stage.DECODE
        assert result.response.is_error
        facilitator.verify.assert_not_called()

    @pytest.mark.asyncio
    async def test_malformed_payment(self, facilitator: AsyncMock) -> None:
        result = await _pipeline(facilitator).run(_args(payment="not-a-token!"))

        assert result.rejected_stage is Stage.DECODE
        assert "Invalid payment" in result.response.text
        facilitator.verify.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, facilitator: AsyncMock) -> None:
        handler = AsyncMock()
        result = await _pipeline(facilitator, handler, schema={"count": int}).run(
            {"count": "many", "payment": make_token()}
        )

        assert result.rejected_stage is Stage.VALIDATE
        assert "count" in result.response.text
        handler.assert_not_called()
        facilitator.verify.assert_not_called()

    @pytest.mark.asyncio
    async def test_network_mismatch_rejected_before_verify(self, facilitator: AsyncMock) -> None:
        handler = AsyncMock()
        result = await _pipeline(facilitator, handler).run(
            _args(payment=make_token(network="base-sepolia"))
        )

        assert result.rejected_stage is Stage.REQUIREMENTS
        assert "No matching payment requirements found" in result.response.text
        assert facilitator.verify.call_count == 0
        assert facilitator.settle.call_count == 0
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_scheme_mismatch_rejected_before_verify(self, facilitator: AsyncMock) -> None:
        result = await _pipeline(facilitator).run(_args(payment=make_token(scheme="upto")))

        assert result.rejected_stage is Stage.REQUIREMENTS
        assert facilitator.verify.call_count == 0
        assert facilitator.settle.call_count == 0


# ---------------------------------------------------------------------------
# Verification failures
# ---------------------------------------------------------------------------


class TestVerificationRejections:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reason",
        [
            "insufficient_funds",
            "invalid_exact_evm_payload_signature",
            "invalid_exact_evm_payload_recipient_mismatch",
            "invalid_network",
            "invalid_exact_evm_payload_authorization_valid_before",
        ],
    )
    async def test_rejection_blocks_handler(self, facilitator: AsyncMock, reason: str) -> None:
        facilitator.verify.return_value = verify_response(isValid=False, invalidReason=reason)
        handler = AsyncMock()
        result = await _pipeline(facilitator, handler).run(_args())

        assert result.rejected_stage is Stage.VERIFY
        assert result.response.content[0].is_error is True
        assert reason in result.response.text
        assert handler.call_count == 0
        facilitator.settle.assert_not_called()

    @pytest.mark.asyncio
    async def test_underpayment_scenario(self, facilitator: AsyncMock) -> None:
        facilitator.verify.return_value = verify_response(
            isValid=False, invalidReason="invalid_exact_evm_payload_authorization_value"
        )
        handler = AsyncMock()
        result = await _pipeline(facilitator, handler).run(
            _args(payment=make_token(value=40_000))
        )

        assert result.verification.valid is False
        assert result.verification.reason == "invalid_exact_evm_payload_authorization_value"
        assert "it should be 50000" in result.response.text
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_facilitator_fault_is_terminal(self, facilitator: AsyncMock) -> None:
        facilitator.verify.side_effect = FacilitatorConnectionError("DNS failed")
        handler = AsyncMock()
        result = await _pipeline(facilitator, handler).run(_args())

        assert result.rejected_stage is Stage.VERIFY
        assert "DNS failed" in result.response.text
        assert facilitator.verify.call_count == 1
        handler.assert_not_called()


# ---------------------------------------------------------------------------
# Execution failures
# ---------------------------------------------------------------------------


class TestExecutionFailures:
    @pytest.mark.asyncio
    async def test_handler_raises(self, facilitator: AsyncMock) -> None:
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        result = await _pipeline(facilitator, handler).run(_args())

        assert result.rejected_stage is Stage.EXECUTE
        assert result.response.is_error
        assert "boom" in result.response.text
        facilitator.settle.assert_not_called()
        assert result.settlement is None

    @pytest.mark.asyncio
    async def test_handler_error_envelope_not_settled(self, facilitator: AsyncMock) -> None:
        handler = AsyncMock(return_value=ToolResponse.error("upstream unavailable"))
        result = await _pipeline(facilitator, handler).run(_args())

        assert result.rejected_stage is Stage.EXECUTE
        assert result.response.text == "upstream unavailable"
        facilitator.settle.assert_not_called()


# ---------------------------------------------------------------------------
# Settlement failures
# ---------------------------------------------------------------------------


class TestSettlementFailures:
    @pytest.mark.asyncio
    async def test_settle_rejected_after_execution(self, facilitator: AsyncMock) -> None:
        facilitator.settle.return_value = settle_response(
            success=False, errorReason="invalid_transaction_state"
        )
        handler = AsyncMock(return_value="done")
        result = await _pipeline(facilitator, handler).run(_args())

        handler.assert_awaited_once()
        assert result.rejected_stage is Stage.SETTLE
        assert result.response.is_error
        assert "executed successfully" in result.response.text
        assert "invalid_transaction_state" in result.response.text
        assert result.settlement.success is False

    @pytest.mark.asyncio
    async def test_settle_transport_fault(self, facilitator: AsyncMock) -> None:
        facilitator.settle.side_effect = FacilitatorError("Facilitator returned a malformed settle response")
        result = await _pipeline(facilitator).run(_args())

        assert result.rejected_stage is Stage.SETTLE
        assert "malformed settle response" in result.response.text

    @pytest.mark.asyncio
    async def test_missing_transaction_reference(self, facilitator: AsyncMock) -> None:
        facilitator.settle.return_value = settle_response(success=True)
        result = await _pipeline(facilitator).run(_args())

        assert result.rejected_stage is Stage.SETTLE
        assert "no transaction reference" in result.response.text

    @pytest.mark.asyncio
    async def test_unsettled_call_logged_for_reconciliation(
        self, facilitator: AsyncMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        facilitator.settle.return_value = settle_response(success=False, errorReason="boom")
        with caplog.at_level("ERROR", logger="payflow_mcp.pipeline"):
            await _pipeline(facilitator).run(_args())

        assert any("UNSETTLED" in record.getMessage() for record in caplog.records)
        assert any(PAYER in record.getMessage() for record in caplog.records)


# ---------------------------------------------------------------------------
# Independence of calls
# ---------------------------------------------------------------------------


class TestStatelessness:
    @pytest.mark.asyncio
    async def test_failed_call_does_not_affect_next(self, facilitator: AsyncMock) -> None:
        pipeline = _pipeline(facilitator)
        facilitator.verify.return_value = verify_response(
            isValid=False, invalidReason="insufficient_funds"
        )
        first = await pipeline.run(_args())
        facilitator.verify.return_value = verify_response(isValid=True, payer=PAYER)
        second = await pipeline.run(_args())

        assert first.state is InvocationState.REJECTED
        assert second.state is InvocationState.COMPLETED

    @pytest.mark.asyncio
    async def test_payload_version_stamped(self, facilitator: AsyncMock) -> None:
        record = _pipeline(facilitator).record
        pipeline = PaymentPipeline(
            record, PaymentVerifier(facilitator), PaymentSettler(facilitator), x402_version=2
        )
        await pipeline.run(_args())

        payload, _ = facilitator.verify.await_args.args
        assert payload.x402_version == 2
