"""FastMCP server with paid tools."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from cdp.x402 import create_facilitator_config
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.server.dependencies import get_context
from fastmcp.tools import Tool
from fastmcp.tools.tool import ToolResult
from mcp.types import TextContent
from pydantic import Field
from x402.facilitator import FacilitatorClient, FacilitatorConfig

from payflow_mcp.config import Settings, get_settings
from payflow_mcp.errors import ConfigurationError
from payflow_mcp.pipeline import InvocationContext, PaymentPipeline
from payflow_mcp.registration import (
    PaidToolConfig,
    ToolRegistrationRecord,
    build_record,
    resolve_paid_tool_args,
)
from payflow_mcp.requirements import DEFAULT_NETWORK
from payflow_mcp.verification import Facilitator, PaymentSettler, PaymentVerifier

logger = logging.getLogger(__name__)

DEFAULT_FACILITATOR_URL = "https://x402.org/facilitator"


def facilitator_config(settings: Settings) -> FacilitatorConfig:
    """Facilitator connection settings.

    With CDP API credentials the Coinbase facilitator is used and every
    request is signed; without them, the public x402.org facilitator.
    PAYFLOW_FACILITATOR_URL overrides the URL in both cases.

    Raises:
        ConfigurationError: If only one of the two CDP credentials is set
    """
    key_id, key_secret = settings.cdp_api_key_id, settings.cdp_api_key_secret
    if bool(key_id) != bool(key_secret):
        raise ConfigurationError("CDP_API_KEY_ID and CDP_API_KEY_SECRET must be set together")
    if key_id:
        config = create_facilitator_config(key_id, key_secret)
    else:
        config = FacilitatorConfig(url=DEFAULT_FACILITATOR_URL)
    if settings.payflow_facilitator_url:
        config = FacilitatorConfig(**{**config, "url": settings.payflow_facilitator_url})
    return config


def _invocation_context(tool_name: str) -> InvocationContext:
    """Build the per-call context from the active FastMCP request, if any."""
    try:
        ctx = get_context()
    except RuntimeError:
        return InvocationContext(tool_name=tool_name)

    session_id = request_id = None
    try:
        session_id = ctx.session_id
    except (RuntimeError, ValueError, AttributeError):
        pass
    try:
        request_id = ctx.request_id
    except (RuntimeError, ValueError, AttributeError):
        pass
    return InvocationContext(
        tool_name=tool_name, session_id=session_id, request_id=request_id, transport=ctx
    )


class PaidTool(Tool):
    """FastMCP tool that runs its calls through a PaymentPipeline."""

    pipeline: Any = Field(exclude=True, repr=False)

    async def run(self, arguments: dict[str, Any]) -> ToolResult:
        response = await self.pipeline(arguments, _invocation_context(self.name))
        if response.is_error:
            raise ToolError(response.text)
        return ToolResult(
            content=[TextContent(type="text", text=segment.text) for segment in response.content]
        )


class PayflowMCP(FastMCP):
    """A FastMCP server that can register tools requiring an x402 payment.

    Example:
        server = PayflowMCP(
            "my-paid-server",
            facilitator=FacilitatorClient(create_facilitator_config(key_id, key_secret)),
        )

        @server.tool()
        async def free_tool() -> str: ...

        async def quote(args, ctx):
            return f"Quote for {args['symbol']}"

        server.paid_tool("quote", "Get a quote", {"price": 0.05, "recipient": "0x..."},
                         {"symbol": str}, quote)
    """

    def __init__(
        self,
        name: str | None = None,
        *,
        facilitator: Facilitator | None = None,
        x402_version: int = 1,
        default_network: str | int = DEFAULT_NETWORK,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("on_duplicate_tools", "error")
        super().__init__(name, **kwargs)
        self._facilitator = facilitator if facilitator is not None else FacilitatorClient(
            FacilitatorConfig(url=DEFAULT_FACILITATOR_URL)
        )
        self._verifier = PaymentVerifier(self._facilitator)
        self._settler = PaymentSettler(self._facilitator)
        self._x402_version = x402_version
        self._default_network = default_network
        self._paid_tools: dict[str, ToolRegistrationRecord] = {}
        self._pipelines: dict[str, PaymentPipeline] = {}

    @classmethod
    def from_settings(
        cls, name: str | None = None, settings: Settings | None = None, **kwargs: Any
    ) -> PayflowMCP:
        """Build a server from environment settings (entry points only)."""
        settings = settings or get_settings()
        return cls(
            name,
            facilitator=FacilitatorClient(facilitator_config(settings)),
            x402_version=settings.payflow_x402_version,
            default_network=settings.payflow_network,
            **kwargs,
        )

    @property
    def paid_tools(self) -> Mapping[str, ToolRegistrationRecord]:
        """Registration records of all paid tools, by name."""
        return MappingProxyType(self._paid_tools)

    def pipeline(self, name: str) -> PaymentPipeline:
        """The pipeline serving paid tool ``name``."""
        return self._pipelines[name]

    def paid_tool(self, name: str, *rest: Any) -> PaidTool:
        """Register a paid tool.

        Accepted shapes (in this order, brackets are optional)::

            paid_tool(name, [description], options, [schema], [annotations], handler)

        ``options`` is PaymentOptions or a mapping with ``price`` and
        ``recipient``. ``schema`` maps parameter names to annotations (or
        ``(annotation, default)`` tuples) or is a pydantic model class.
        Handlers taking two positional parameters are called as
        ``handler(args, ctx)``, others as ``handler(ctx)``.

        Raises:
            ConfigurationError: If the shape is invalid, PaymentOptions are
                missing, or the name is already registered
        """
        return self.register_paid_tool(resolve_paid_tool_args(name, *rest))

    def register_paid_tool(self, config: PaidToolConfig) -> PaidTool:
        """Register a paid tool from an explicit configuration."""
        if config.name in self._paid_tools:
            raise ConfigurationError(f"Paid tool '{config.name}' is already registered")

        record = build_record(config, self._default_network)
        pipeline = PaymentPipeline(
            record,
            self._verifier,
            self._settler,
            x402_version=self._x402_version,
            default_network=self._default_network,
        )
        tool = PaidTool(
            name=record.name,
            description=record.description,
            parameters=record.input_schema,
            annotations=record.annotations,
            pipeline=pipeline,
        )
        try:
            self.add_tool(tool)
        except ValueError as e:
            # A free tool already holds the name
            raise ConfigurationError(f"Tool '{record.name}' is already registered: {e}") from e
        self._paid_tools[record.name] = record
        self._pipelines[record.name] = pipeline
        logger.info(
            "Registered paid tool %s (price=%s recipient=%s)",
            record.name, record.payment.price, record.payment.recipient,
        )
        return tool
