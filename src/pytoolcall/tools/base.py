from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from jsonschema import exceptions as jsonschema_exceptions
from jsonschema import validators

from ..errors import ErrorKind
from ..util.cancel import CancelToken

logger = logging.getLogger(__name__)

# A content part is a one-key dict: text | inline_data | file_data | function_response.
Part = dict[str, Any]
ToolContent = Union[str, list[Part]]

@dataclass(frozen=True)
class ToolDeclaration:
    name: str
    description: str
    parameters: dict[str, Any]   # JSONSchema, kept verbatim
    permission_key: str = "read"  # "read" | "edit" | "execute" | "mcp" | "discovered"

@dataclass(frozen=True)
class ToolError:
    message: str
    kind: ErrorKind

@dataclass
class ToolResult:
    content: ToolContent
    display: str | None = None
    error: ToolError | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @staticmethod
    def failure(message: str, kind: ErrorKind = ErrorKind.EXECUTION_FAILED) -> "ToolResult":
        return ToolResult(content=message, display=message, error=ToolError(message, kind))

@dataclass
class ToolContext:
    cwd: str
    cancel: CancelToken = field(default_factory=CancelToken)
    prompt_id: str | None = None

class Tool(Protocol):
    spec: ToolDeclaration

    @property
    def name(self) -> str: ...
    @property
    def display_name(self) -> str: ...
    @property
    def server_name(self) -> str | None: ...
    @property
    def trusted(self) -> bool: ...
    @property
    def discovered(self) -> bool: ...
    def validate(self, args: dict[str, Any]) -> str | None: ...
    def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult: ...

def validate_against_schema(schema: dict[str, Any], args: Any) -> str | None:
    """Return the first JSON Schema violation as text, or None."""
    if not isinstance(args, dict):
        return "Tool arguments must be an object."
    if not schema:
        return None
    try:
        cls = validators.validator_for(schema)
        cls.check_schema(schema)
    except jsonschema_exceptions.SchemaError as e:
        # Unusual schemas are passed through to the model untouched; don't block calls on them.
        logger.debug("skipping validation for non-conforming schema: %s", e.message)
        return None
    err = jsonschema_exceptions.best_match(cls(schema).iter_errors(args))
    if err is None:
        return None
    where = "/".join(str(p) for p in err.path)
    return f"params/{where} {err.message}" if where else f"params {err.message}"

class BaseTool:
    """Default behavior shared by every tool variant.

    Subclasses provide `spec` and `execute`; everything the registry, executor
    and confirmation layer ask of a tool is answered here or overridden.
    """

    spec: ToolDeclaration

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def display_name(self) -> str:
        return self.spec.name

    @property
    def server_name(self) -> str | None:
        return None

    @property
    def trusted(self) -> bool:
        return False

    @property
    def discovered(self) -> bool:
        return False

    def validate(self, args: dict[str, Any]) -> str | None:
        return validate_against_schema(self.spec.parameters, args)

    def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        raise NotImplementedError

def text_part(text: str) -> Part:
    return {"text": text}

def inline_data_part(mime_type: str, data: str) -> Part:
    return {"inline_data": {"mime_type": mime_type, "data": data}}

def function_response_part(call_id: str, name: str, response: dict[str, Any]) -> Part:
    return {"function_response": {"id": call_id, "name": name, "response": response}}

def is_binary_part(part: Part) -> bool:
    return "inline_data" in part or "file_data" in part

def part_mime_type(part: Part) -> str:
    body = part.get("inline_data") or part.get("file_data") or {}
    return str(body.get("mime_type") or "application/octet-stream")
