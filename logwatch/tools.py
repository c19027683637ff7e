"""
Tool descriptors exposed to the model.

A tool is either backed by a local handler (`LocalHandler`) or by nothing at
all (`ExternalHandler`), in which case a `toolCall` event must produce the
result. Arguments are validated with a pydantic model class or a Draft-07 JSON
Schema dict.
"""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type, Union

from jsonschema import Draft7Validator
from pydantic import BaseModel, ValidationError

from .errors import BadUsage, ToolArgumentsError

ToolSchema = Union[Type[BaseModel], Dict[str, Any]]


@dataclass(frozen=True)
class LocalHandler:
    fn: Callable[..., Any]


@dataclass(frozen=True)
class ExternalHandler:
    """The tool has no local logic; a `toolCall` event must answer it."""


EXTERNAL = ExternalHandler()


@dataclass
class Tool:
    name: str
    description: str
    handler: Union[LocalHandler, ExternalHandler]
    schema: Optional[ToolSchema] = None

    @property
    def is_external(self) -> bool:
        return isinstance(self.handler, ExternalHandler)


def tool(
    name: str,
    description: str,
    handler: Union[Callable[..., Any], LocalHandler, ExternalHandler],
    schema: Optional[ToolSchema] = None,
) -> Tool:
    """Build a Tool, wrapping a plain callable into a LocalHandler."""
    if not isinstance(handler, (LocalHandler, ExternalHandler)):
        if not callable(handler):
            raise BadUsage(f"Handler of tool '{name}' must be callable or EXTERNAL")
        handler = LocalHandler(handler)
    if schema is not None and isinstance(schema, dict):
        Draft7Validator.check_schema(schema)
    return Tool(name=name, description=description, handler=handler, schema=schema)


def _is_model_class(schema: Any) -> bool:
    return isinstance(schema, type) and issubclass(schema, BaseModel)


def schema_to_parameters(schema: Optional[ToolSchema]) -> Optional[Dict[str, Any]]:
    if schema is None:
        return None
    if _is_model_class(schema):
        return schema.model_json_schema()
    return dict(schema)


def tools_to_params(tools: Optional[List[Tool]]) -> List[Dict[str, Any]]:
    """Tool descriptors in the chat-completion `tools` format."""
    result: List[Dict[str, Any]] = []
    for item in tools or []:
        function: Dict[str, Any] = {"name": item.name, "description": item.description}
        parameters = schema_to_parameters(item.schema)
        if parameters is not None:
            function["parameters"] = parameters
        result.append({"type": "function", "function": function})
    return result


@dataclass
class ValidationResult:
    ok: bool
    value: Any = None
    errors: List[Dict[str, Any]] = field(default_factory=list)


def validate_arguments(schema: ToolSchema, raw: Any) -> ValidationResult:
    if _is_model_class(schema):
        try:
            return ValidationResult(ok=True, value=schema.model_validate(raw))
        except ValidationError as exc:
            return ValidationResult(
                ok=False,
                errors=[{"path": list(err["loc"]), "message": err["msg"]} for err in exc.errors()],
            )

    validator = Draft7Validator(schema)
    errors = [{"path": list(err.path), "message": err.message} for err in validator.iter_errors(raw)]
    if errors:
        return ValidationResult(ok=False, errors=errors)
    return ValidationResult(ok=True, value=raw)


def parse_arguments(target: Tool, arguments: str) -> Any:
    """Decode the serialized arguments of a tool call and validate them."""
    try:
        raw = json.loads(arguments) if arguments and arguments.strip() else {}
    except json.JSONDecodeError as exc:
        raise ToolArgumentsError(target.name, "arguments are not valid JSON", [{"path": [], "message": str(exc)}]) from exc

    if target.schema is None:
        return raw
    result = validate_arguments(target.schema, raw)
    if not result.ok:
        # TODO: feed validation errors back to the model instead of aborting the step.
        raise ToolArgumentsError(target.name, "; ".join(err["message"] for err in result.errors), result.errors)
    return result.value


def stringify_result(content: Any) -> str:
    """Render a tool result as the text content of a tool message."""
    if isinstance(content, str):
        return content
    if callable(content) and not isinstance(content, type):
        try:
            return inspect.getsource(content)
        except (OSError, TypeError):
            return repr(content)
    if content is None or isinstance(content, (bool, int, float)):
        return str(content)
    if isinstance(content, BaseModel):
        content = content.model_dump(mode="json")
    return json.dumps(content, separators=(",", ":"), ensure_ascii=False, default=str)
