"""Payment requirement generation on top of the x402 SDK."""

import logging
from decimal import ROUND_HALF_UP, Decimal

from pydantic import ValidationError
from x402.chains import NETWORK_TO_ID
from x402.common import find_matching_payment_requirements, process_price_to_atomic_amount
from x402.exact import decode_payment
from x402.types import PaymentPayload, PaymentRequirements

from payflow_mcp.errors import (
    NoMatchingRequirementsError,
    PaymentDecodeError,
    UnsupportedNetworkError,
)

logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "base"
EXACT_SCHEME = "exact"
MAX_TIMEOUT_SECONDS = 60
USDC_DECIMALS = 6

_NETWORK_BY_CHAIN_ID = {int(chain_id): name for name, chain_id in NETWORK_TO_ID.items()}


def resolve_network(network: str | int | None) -> str:
    """Normalize a network name, chain id or ``eip155:<id>`` to the x402 network name.

    ``None`` selects DEFAULT_NETWORK.

    Raises:
        UnsupportedNetworkError: If the x402 SDK does not know the network
    """
    if network is None:
        return DEFAULT_NETWORK
    if isinstance(network, bool):
        raise UnsupportedNetworkError(f"Unsupported network: {network!r}")
    if isinstance(network, int):
        found = _NETWORK_BY_CHAIN_ID.get(network)
    else:
        key = network.strip().lower()
        if key.startswith("eip155:"):
            key = key.split(":", 1)[1]
        found = _NETWORK_BY_CHAIN_ID.get(int(key)) if key.isdigit() else (
            key if key in NETWORK_TO_ID else None
        )
    if found is None:
        raise UnsupportedNetworkError(
            f"Unsupported network: {network!r}. "
            f"Supported networks: {', '.join(sorted(NETWORK_TO_ID))}"
        )
    return found


def atomic_amount(
    price: Decimal | int | str,
    network: str | int | None,
    asset: str | None = None,
) -> tuple[str, str, dict]:
    """Price → (atomic amount, asset address, EIP-712 domain) on ``network``.

    The price is rounded half-up to USDC precision before the SDK converts it.

    Raises:
        UnsupportedNetworkError: If the network is unknown or ``asset`` is not its USDC
    """
    name = resolve_network(network)
    rounded = Decimal(str(price)).quantize(
        Decimal(1).scaleb(-USDC_DECIMALS), rounding=ROUND_HALF_UP
    )
    try:
        amount, asset_address, domain = process_price_to_atomic_amount(str(rounded), name)
    except ValueError as e:
        raise UnsupportedNetworkError(f"No settlement asset on network {name}: {e}") from e
    if asset is not None and asset.lower() != asset_address.lower():
        raise UnsupportedNetworkError(
            f"Unsupported asset {asset} on network {name}. Expected {asset_address}"
        )
    return amount, asset_address, domain


def build_requirements(
    tool_name: str,
    price: Decimal | int | str,
    recipient: str,
    network: str | int | None,
    asset: str | None = None,
    description: str = "",
    mime_type: str = "text/plain",
    max_timeout_seconds: int = MAX_TIMEOUT_SECONDS,
) -> PaymentRequirements:
    """Build the single ``exact`` requirement a paid tool offers.

    Raises:
        UnsupportedNetworkError: If the network's asset metadata is unknown
    """
    name = resolve_network(network)
    amount, asset_address, domain = atomic_amount(price, name, asset)
    return PaymentRequirements(
        scheme=EXACT_SCHEME,
        network=name,
        max_amount_required=amount,
        resource=tool_name,
        description=description,
        mime_type=mime_type,
        pay_to=recipient,
        max_timeout_seconds=max_timeout_seconds,
        asset=asset_address,
        extra=domain,
    )


def generate_requirements(
    payload: PaymentPayload,
    tool_name: str,
    price: Decimal | int | str,
    recipient: str,
    network: str | int | None,
    asset: str | None = None,
) -> PaymentRequirements:
    """Build the tool's requirement and match it against the decoded payment.

    Only scheme and network are compared. Amount, recipient and asset are
    checked by the facilitator during verification.

    Raises:
        UnsupportedNetworkError: If the network's asset metadata is unknown
        NoMatchingRequirementsError: If the payment's scheme/network doesn't match
    """
    candidates = [build_requirements(tool_name, price, recipient, network, asset)]
    selected = find_matching_payment_requirements(candidates, payload)
    if selected is None:
        logger.debug(
            "No requirement for %s matches payment scheme=%s network=%s",
            tool_name, payload.scheme, payload.network,
        )
        raise NoMatchingRequirementsError()
    return selected


def decode_payment_token(token: str) -> PaymentPayload:
    """Decode an x402 payment header into a PaymentPayload.

    Raises:
        PaymentDecodeError: If the token is not base64 JSON of a payment payload
    """
    if not isinstance(token, str) or not token.strip():
        raise PaymentDecodeError("Invalid payment: empty payment token")
    try:
        data = decode_payment(token.strip())
    except (ValueError, TypeError) as e:
        raise PaymentDecodeError(f"Invalid payment: could not decode token ({e})") from e
    if isinstance(data, PaymentPayload):
        return data
    if not isinstance(data, dict):
        raise PaymentDecodeError("Invalid payment: token is not a JSON object")
    try:
        return PaymentPayload.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise PaymentDecodeError(f"Invalid payment: malformed payload ({fields})") from e
