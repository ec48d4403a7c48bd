"""Tool contract and the name-keyed registry the engine dispatches through."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from ..models.messages import FunctionDeclaration, ToolResult

__all__ = ["Tool", "ToolInvocation", "ToolParams", "ToolRegistry"]


class ToolParams(BaseModel):
    """Base class for tool parameter models; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")


@dataclass(slots=True)
class ToolInvocation:
    """Validated call bound to its tool, ready to execute."""

    tool: "Tool"
    params: ToolParams

    def execute(self) -> ToolResult:
        return self.tool.run(self.params)


class Tool(ABC):
    """A named capability with a pydantic parameter model."""

    name: str
    description: str
    params_model: type[ToolParams]

    def declaration(self) -> FunctionDeclaration:
        schema = self.params_model.model_json_schema()
        definitions = schema.get("$defs") or {}
        properties = {
            key: _inline_refs(value, definitions) for key, value in (schema.get("properties") or {}).items()
        }
        return FunctionDeclaration(
            name=self.name,
            description=self.description,
            parameters={"type": "object", "properties": properties, "required": list(schema.get("required") or [])},
        )

    def validate_params(self, raw: Mapping[str, Any]) -> Optional[ToolParams]:
        try:
            return self.params_model.model_validate(dict(raw))
        except ValidationError:
            return None

    def param_errors(self, raw: Mapping[str, Any]) -> list[str]:
        try:
            self.params_model.model_validate(dict(raw))
        except ValidationError as error:
            return [f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}" for item in error.errors()]
        return []

    def build(self, params: ToolParams) -> ToolInvocation:
        return ToolInvocation(self, params)

    @abstractmethod
    def run(self, params: Any) -> ToolResult:
        """Execute the tool; exceptions are converted by the bridge."""


class ToolRegistry:
    """Read-only lookup of tools by name once populated."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: Dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered.")
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def get_function_declarations(self) -> list[FunctionDeclaration]:
        return [tool.declaration() for tool in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


def _inline_refs(node: Any, definitions: Mapping[str, Any]) -> Any:
    """Expand ``$ref`` pointers and drop titles; provider schemas reject both."""
    if isinstance(node, Mapping):
        reference = node.get("$ref")
        if isinstance(reference, str) and reference.startswith("#/$defs/"):
            return _inline_refs(definitions.get(reference.rsplit("/", 1)[-1], {}), definitions)
        return {
            key: _inline_refs(value, definitions)
            for key, value in node.items()
            if key != "$defs" and not (key == "title" and isinstance(value, str))
        }
    if isinstance(node, list):
        return [_inline_refs(item, definitions) for item in node]
    return node
