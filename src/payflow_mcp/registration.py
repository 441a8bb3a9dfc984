"""Paid tool registration records and call-shape resolution."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, get_origin

from mcp.types import ToolAnnotations
from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model, field_validator

from payflow_mcp.errors import ConfigurationError, UnsupportedNetworkError
from payflow_mcp.requirements import atomic_amount, resolve_network

logger = logging.getLogger(__name__)

PAYMENT_PARAM = "payment"
PAYMENT_PARAM_DESCRIPTION = "The x402 payment proof for this call."

_ANNOTATION_KEYS = frozenset({
    "title",
    "readOnlyHint",
    "destructiveHint",
    "idempotentHint",
    "openWorldHint",
})


# ---------------------------------------------------------------------------
# Payment options
# ---------------------------------------------------------------------------


class PaymentOptions(BaseModel):
    """Price and payee for a paid tool, fixed at registration time."""

    model_config = ConfigDict(frozen=True)

    price: Decimal = Field(gt=0)
    recipient: str
    asset: str | None = None
    network: str | int | None = None

    @field_validator("price", mode="before")
    @classmethod
    def _parse_money(cls, value: Any) -> Any:
        # Accept "$0.05" / "0.05" as well as numbers
        if isinstance(value, str):
            cleaned = value.strip().lstrip("$").replace(",", "").strip()
            try:
                return Decimal(cleaned)
            except InvalidOperation:
                raise ValueError(f"Invalid price: {value!r}") from None
        if isinstance(value, float):
            return Decimal(str(value))
        return value

    @field_validator("recipient")
    @classmethod
    def _recipient_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("recipient must not be empty")
        return value


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


class HandlerKind(str, Enum):
    """How a paid tool's handler is called."""

    WITH_ARGS = "with_args"  # handler(args, ctx)
    CONTEXT_ONLY = "context_only"  # handler(ctx)


def infer_handler_kind(fn: Callable[..., Any]) -> HandlerKind:
    """Pick a call convention from the handler's declared positional parameters."""
    try:
        params = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Cannot inspect paid tool handler {fn!r}: {e}") from e
    positional = 0
    for param in params:
        if param.kind is inspect.Parameter.VAR_POSITIONAL:
            return HandlerKind.WITH_ARGS
        if param.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
            positional += 1
    return HandlerKind.WITH_ARGS if positional > 1 else HandlerKind.CONTEXT_ONLY


@dataclass(frozen=True)
class ToolHandler:
    """A handler plus its explicit call convention. Sync or async."""

    fn: Callable[..., Any]
    kind: HandlerKind

    async def __call__(self, args: dict[str, Any], ctx: Any) -> Any:
        if self.kind is HandlerKind.WITH_ARGS:
            result = self.fn(args, ctx)
        else:
            result = self.fn(ctx)
        if inspect.isawaitable(result):
            result = await result
        return result


# ---------------------------------------------------------------------------
# Parameter schema
# ---------------------------------------------------------------------------


def _is_annotation(value: Any) -> bool:
    return value is Any or isinstance(value, type) or get_origin(value) is not None


def _is_field_spec(value: Any) -> bool:
    if isinstance(value, tuple):
        return len(value) == 2 and _is_annotation(value[0])
    return _is_annotation(value)


def build_arguments_model(tool_name: str, schema: Any) -> type[BaseModel]:
    """Turn a declared parameter schema into a pydantic model.

    ``schema`` is either a pydantic model class or a mapping of field name to
    an annotation or an ``(annotation, default)`` tuple.
    """
    if schema is None:
        schema = {}
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        fields = schema.model_fields
        model: type[BaseModel] = schema
    elif isinstance(schema, Mapping):
        definitions: dict[str, Any] = {}
        for field_name, spec in schema.items():
            if not _is_field_spec(spec):
                raise ConfigurationError(
                    f"Invalid parameter schema for '{tool_name}': "
                    f"field '{field_name}' has no type annotation"
                )
            definitions[field_name] = spec if isinstance(spec, tuple) else (spec, ...)
        fields = definitions
        model = create_model(f"{_model_name(tool_name)}Arguments", **definitions)
    else:
        raise ConfigurationError(f"Invalid parameter schema for '{tool_name}': {schema!r}")

    if PAYMENT_PARAM in fields:
        raise ConfigurationError(
            f"Paid tool '{tool_name}' cannot declare a '{PAYMENT_PARAM}' parameter"
        )
    return model


def _model_name(tool_name: str) -> str:
    return "".join(part.capitalize() for part in tool_name.replace("-", "_").split("_")) or "Tool"


def input_schema(arguments_model: type[BaseModel]) -> dict[str, Any]:
    """JSON schema for the tool's parameters, with the payment field injected."""
    schema = arguments_model.model_json_schema()
    schema.pop("title", None)
    properties = dict(schema.get("properties", {}))
    properties[PAYMENT_PARAM] = {"type": "string", "description": PAYMENT_PARAM_DESCRIPTION}
    required = [name for name in schema.get("required", []) if name != PAYMENT_PARAM]
    schema.update(type="object", properties=properties, required=[*required, PAYMENT_PARAM])
    return schema


# ---------------------------------------------------------------------------
# Registration record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolRegistrationRecord:
    """Normalized paid tool registration. Created once, never mutated."""

    name: str
    description: str
    param_schema: type[BaseModel]
    payment: PaymentOptions
    handler: ToolHandler
    annotations: ToolAnnotations | None = None

    @property
    def input_schema(self) -> dict[str, Any]:
        return input_schema(self.param_schema)

    def validate_arguments(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        """Validate declared arguments. Raises pydantic.ValidationError."""
        validated = self.param_schema.model_validate(dict(arguments))
        return {name: getattr(validated, name) for name in type(validated).model_fields}


@dataclass(frozen=True)
class PaidToolConfig:
    """Explicit paid tool configuration (no call-shape guessing)."""

    name: str
    payment: PaymentOptions | Mapping[str, Any]
    handler: Callable[..., Any]
    kind: HandlerKind
    description: str | None = None
    param_schema: Any = None
    annotations: ToolAnnotations | Mapping[str, Any] | None = None


def _coerce_payment_options(name: str, payment: Any) -> PaymentOptions:
    if isinstance(payment, PaymentOptions):
        return payment
    try:
        return PaymentOptions.model_validate(dict(payment))
    except (ValidationError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid PaymentOptions for paid tool '{name}': {e}") from e


def _coerce_annotations(name: str, annotations: Any) -> ToolAnnotations | None:
    if annotations is None or isinstance(annotations, ToolAnnotations):
        return annotations
    try:
        return ToolAnnotations.model_validate(dict(annotations))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid annotations for paid tool '{name}': {e}") from e


def payment_details(options: PaymentOptions, network: str) -> str:
    return (
        "IMPORTANT: Payflow payment details:\n"
        f"- Price: {options.price}\n"
        f"- Recipient: {options.recipient}\n"
        f"- Network: {network}"
    )


def build_record(config: PaidToolConfig, default_network: str | int | None = None) -> ToolRegistrationRecord:
    """Validate a PaidToolConfig and build its registration record.

    Raises:
        ConfigurationError: On any invalid piece of configuration
    """
    if not config.name or not isinstance(config.name, str):
        raise ConfigurationError("Paid tool name must be a non-empty string")
    if config.payment is None:
        raise ConfigurationError(f"PaymentOptions are required for paid tool '{config.name}'")
    if not callable(config.handler):
        raise ConfigurationError(f"Handler for paid tool '{config.name}' must be callable")

    options = _coerce_payment_options(config.name, config.payment)
    try:
        network = resolve_network(options.network if options.network is not None else default_network)
        amount, _, _ = atomic_amount(options.price, network, options.asset)
    except UnsupportedNetworkError as e:
        raise ConfigurationError(f"Paid tool '{config.name}': {e}") from e
    if int(amount) <= 0:
        raise ConfigurationError(
            f"Price {options.price} for paid tool '{config.name}' is below the "
            f"smallest unit of the settlement asset on {network}"
        )

    base_description = config.description or f"Paid tool {config.name}"
    return ToolRegistrationRecord(
        name=config.name,
        description=f"{base_description}\n{payment_details(options, network)}",
        param_schema=build_arguments_model(config.name, config.param_schema),
        payment=options,
        handler=ToolHandler(config.handler, HandlerKind(config.kind)),
        annotations=_coerce_annotations(config.name, config.annotations),
    )


# ---------------------------------------------------------------------------
# Variadic call-shape resolution
# ---------------------------------------------------------------------------


def _looks_like_payment_options(value: Any) -> bool:
    if isinstance(value, PaymentOptions):
        return True
    return isinstance(value, Mapping) and "price" in value and "recipient" in value


def _looks_like_schema(value: Any) -> bool:
    if isinstance(value, type) and issubclass(value, BaseModel):
        return True
    if not isinstance(value, Mapping) or _looks_like_payment_options(value):
        return False
    return all(_is_field_spec(spec) for spec in value.values())


def _looks_like_annotations(value: Any) -> bool:
    if isinstance(value, ToolAnnotations):
        return True
    return isinstance(value, Mapping) and bool(value) and set(value) <= _ANNOTATION_KEYS


def resolve_paid_tool_args(name: str, *rest: Any) -> PaidToolConfig:
    """Resolve ``paid_tool(name, [description], options, [schema], [annotations], handler)``.

    Raises:
        ConfigurationError: If PaymentOptions or the handler are missing, or
            more arguments are given than any shape accepts
    """
    remaining = list(rest)
    description = None
    options = None
    schema = None
    annotations = None

    if remaining and isinstance(remaining[0], str):
        description = remaining.pop(0)
    if remaining and _looks_like_payment_options(remaining[0]):
        options = remaining.pop(0)
    if remaining and _looks_like_schema(remaining[0]):
        schema = remaining.pop(0)
    if remaining and _looks_like_annotations(remaining[0]):
        annotations = remaining.pop(0)

    if len(remaining) > 1:
        raise ConfigurationError(f"Too many arguments to paid_tool() for '{name}'")
    if options is None:
        raise ConfigurationError(f"PaymentOptions are required for paid tool '{name}'")
    if not remaining or not callable(remaining[0]):
        raise ConfigurationError(f"No handler given for paid tool '{name}'")

    handler = remaining[0]
    return PaidToolConfig(
        name=name,
        payment=options,
        handler=handler,
        kind=infer_handler_kind(handler),
        description=description,
        param_schema=schema,
        annotations=annotations,
    )
