"""payflow-mcp: MCP tools that require an x402 payment, settled after they run."""

from payflow_mcp.errors import (
    ConfigurationError,
    FacilitatorError,
    PayflowError,
    SettlementError,
    VerificationError,
)
from payflow_mcp.pipeline import (
    InvocationContext,
    InvocationResult,
    InvocationState,
    PaymentPipeline,
    Stage,
)
from payflow_mcp.registration import (
    HandlerKind,
    PaidToolConfig,
    PaymentOptions,
    ToolRegistrationRecord,
)
from payflow_mcp.responses import TextSegment, ToolResponse
from payflow_mcp.server import PaidTool, PayflowMCP

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "FacilitatorError",
    "HandlerKind",
    "InvocationContext",
    "InvocationResult",
    "InvocationState",
    "PaidTool",
    "PaidToolConfig",
    "PayflowError",
    "PayflowMCP",
    "PaymentOptions",
    "PaymentPipeline",
    "SettlementError",
    "Stage",
    "TextSegment",
    "ToolRegistrationRecord",
    "ToolResponse",
    "VerificationError",
]
