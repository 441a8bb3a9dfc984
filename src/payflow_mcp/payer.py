"""Payer-side MCP server: signs x402 payments for paid MCP tools.

Exposes a single ``create_payment`` tool. The returned header is passed as
the ``payment`` argument of a paid tool on another server.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Annotated

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import is_address
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from pydantic import Field
from x402.exact import prepare_payment_header, sign_payment_header

from payflow_mcp.config import Settings, get_settings
from payflow_mcp.errors import ConfigurationError, UnsupportedNetworkError
from payflow_mcp.requirements import DEFAULT_NETWORK, build_requirements, resolve_network

logger = logging.getLogger(__name__)

X402_VERSION = 1
PAYMENT_VALIDITY_SECONDS = 3600


def create_payment_header(
    account: LocalAccount,
    amount: Decimal | float | str,
    recipient: str,
    network: str | int = DEFAULT_NETWORK,
    tool: str | None = None,
) -> str:
    """Sign a payment of ``amount`` USDC to ``recipient`` and encode it as a header."""
    requirements = build_requirements(
        tool or "unknown",
        Decimal(str(amount)),
        recipient,
        network,
        description="Payment for MCP server",
        mime_type="application/json",
        max_timeout_seconds=PAYMENT_VALIDITY_SECONDS,
    )
    header = prepare_payment_header(account.address, X402_VERSION, requirements)
    return sign_payment_header(account, requirements, header)


def create_payer_server(
    private_key: str,
    max_payment_amount_usdc: Decimal | None,
    network: str | int = DEFAULT_NETWORK,
) -> FastMCP:
    """Build the payer MCP server for one wallet and spending cap."""
    if not private_key:
        raise ConfigurationError("PRIVATE_KEY is not set")
    if max_payment_amount_usdc is None or max_payment_amount_usdc <= 0:
        raise ConfigurationError("MAX_PAYMENT_AMOUNT_USDC must be set to a positive amount")
    try:
        account: LocalAccount = Account.from_key(private_key)
    except (ValueError, TypeError) as e:
        raise ConfigurationError("PRIVATE_KEY is not a valid private key") from e
    try:
        resolved = resolve_network(network)
    except UnsupportedNetworkError as e:
        raise ConfigurationError(str(e)) from e

    server = FastMCP("payflow-payer")

    @server.tool()
    async def create_payment(
        amount: Annotated[float, Field(gt=0, description="The payment amount in USDC")],
        recipient: Annotated[str, Field(description="The recipient of the payment")],
        tool: Annotated[str | None, Field(description="The MCP tool to pay for")] = None,
    ) -> str:
        """Create a payment to use with paid MCP servers."""
        if Decimal(str(amount)) > max_payment_amount_usdc:
            raise ToolError(
                f"Amount {amount} exceeds the maximum payment of {max_payment_amount_usdc} USDC"
            )
        if not is_address(recipient):
            raise ToolError(f"Invalid address: {recipient}")
        logger.info("Creating payment of %s USDC to %s for %s", amount, recipient, tool)
        return create_payment_header(account, amount, recipient, resolved, tool)

    return server


def main(settings: Settings | None = None) -> None:
    """Entry point for the payer MCP server (stdio)."""
    settings = settings or get_settings()
    server = create_payer_server(
        settings.private_key or "",
        settings.max_payment_amount_usdc,
        settings.payflow_network,
    )
    logger.info("Starting payer MCP server transport=stdio")
    server.run()


if __name__ == "__main__":
    main()
