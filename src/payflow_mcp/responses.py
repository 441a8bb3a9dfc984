"""Result envelope returned by every paid tool call."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class TextSegment(BaseModel):
    """One text item of a tool result."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["text"] = "text"
    text: str
    is_error: bool | None = Field(None, alias="isError")


class ToolResponse(BaseModel):
    """Ordered list of text segments: ``{content: [{type, text, isError?}]}``."""

    content: list[TextSegment] = Field(default_factory=list)

    @property
    def is_error(self) -> bool:
        return any(segment.is_error for segment in self.content)

    @property
    def text(self) -> str:
        return "\n".join(segment.text for segment in self.content)

    @classmethod
    def error(cls, message: str) -> ToolResponse:
        return cls(content=[TextSegment(text=message, is_error=True)])

    def with_segment(self, text: str) -> ToolResponse:
        """A copy with one more trailing segment; existing segments untouched."""
        return ToolResponse(content=[*self.content, TextSegment(text=text)])

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def coerce(cls, value: Any) -> ToolResponse:
        """Normalize a handler return value into an envelope.

        Accepts an envelope, a string, a list of strings/segments/mappings,
        a mapping with a ``content`` list, or any JSON-serializable value.
        """
        if isinstance(value, ToolResponse):
            return value
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(content=[TextSegment(text=value)])
        if isinstance(value, TextSegment):
            return cls(content=[value])
        if isinstance(value, Mapping) and isinstance(value.get("content"), list):
            return cls.model_validate(value)
        if isinstance(value, list | tuple):
            return cls(content=[_coerce_segment(item) for item in value])
        return cls(content=[TextSegment(text=json.dumps(value, indent=2, default=str))])


def _coerce_segment(item: Any) -> TextSegment:
    if isinstance(item, TextSegment):
        return item
    if isinstance(item, str):
        return TextSegment(text=item)
    if isinstance(item, Mapping) and "text" in item:
        return TextSegment.model_validate(item)
    text = getattr(item, "text", None)
    if isinstance(text, str):
        return TextSegment(text=text)
    return TextSegment(text=json.dumps(item, default=str))
