"""Pytest configuration and fixtures."""

from unittest.mock import AsyncMock

import pytest
from x402.exact import encode_payment
from x402.types import PaymentPayload, SettleResponse, VerifyResponse

RECIPIENT = "0x1111111111111111111111111111111111111111"
PAYER = "0x2222222222222222222222222222222222222222"
TX_HASH = "0x" + "ab" * 32


def make_payload(
    value: int = 50_000,
    network: str = "base",
    scheme: str = "exact",
    to: str = RECIPIENT,
) -> PaymentPayload:
    return PaymentPayload.model_validate({
        "x402Version": 1,
        "scheme": scheme,
        "network": network,
        "payload": {
            "signature": "0x" + "11" * 65,
            "authorization": {
                "from": PAYER,
                "to": to,
                "value": str(value),
                "validAfter": "0",
                "validBefore": "9999999999",
                "nonce": "0x" + "00" * 32,
            },
        },
    })


def verify_response(**fields) -> VerifyResponse:
    return VerifyResponse.model_validate(fields)


def settle_response(**fields) -> SettleResponse:
    return SettleResponse.model_validate(fields)


def make_token(**kwargs) -> str:
    return encode_payment(make_payload(**kwargs).model_dump(by_alias=True))


@pytest.fixture
def facilitator() -> AsyncMock:
    """Facilitator that accepts every payment and settles with TX_HASH."""
    fake = AsyncMock()
    fake.verify = AsyncMock(return_value=verify_response(isValid=True, payer=PAYER))
    fake.settle = AsyncMock(
        return_value=settle_response(success=True, transaction=TX_HASH, network="base", payer=PAYER)
    )
    return fake


@pytest.fixture
def payment_options() -> dict:
    return {"price": 0.05, "recipient": RECIPIENT}
