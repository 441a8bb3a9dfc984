"""Example paid MCP server: charges 0.001 USDC for the latest Base block number.

Run with:
    PAYFLOW_RECIPIENT=0xYourAddress python examples/paid_server.py

Pair it with ``payflow-payer`` to create the ``payment`` argument.
"""

import logging

import httpx

from payflow_mcp import PayflowMCP
from payflow_mcp.config import get_settings

RPC_URL = "https://mainnet.base.org"

logging.basicConfig(level=logging.INFO)


async def latest_block(ctx) -> dict:
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.post(
            RPC_URL,
            json={"jsonrpc": "2.0", "id": 1, "method": "eth_blockNumber", "params": []},
        )
        response.raise_for_status()
    return {"network": "base", "block": int(response.json()["result"], 16)}


def main() -> None:
    settings = get_settings()
    if not settings.payflow_recipient:
        raise SystemExit("PAYFLOW_RECIPIENT is not set")

    server = PayflowMCP.from_settings("base-blocks", settings)

    @server.tool()
    def ping() -> str:
        """Free health check."""
        return "pong"

    server.paid_tool(
        "latest_block",
        "Latest block number on Base",
        {"price": "0.001", "recipient": settings.payflow_recipient},
        {"readOnlyHint": True, "openWorldHint": True},
        latest_block,
    )
    server.run()


if __name__ == "__main__":
    main()
