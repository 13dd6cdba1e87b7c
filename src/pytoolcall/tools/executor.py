from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from ..errors import ErrorKind, OperationCancelled, PyToolCallError
from ..session.models import ToolCallRequest, ToolCallResponse
from ..util.cancel import CancelToken
from .base import (
    Part,
    ToolContent,
    ToolContext,
    ToolError,
    ToolResult,
    function_response_part,
    is_binary_part,
    part_mime_type,
)

if TYPE_CHECKING:
    from .registry import ToolRegistry

logger = logging.getLogger(__name__)


def to_response_parts(call_id: str, tool_name: str, content: ToolContent) -> list[Part]:
    """Shape a tool's content into parts the model accepts as a reply to its call."""
    if isinstance(content, str):
        return [function_response_part(call_id, tool_name, {"output": content})]

    parts = [p for p in content if p]
    if len(parts) == 1 and "function_response" in parts[0]:
        return [function_response_part(call_id, tool_name, parts[0]["function_response"].get("response") or {})]

    if all("text" in p for p in parts):
        text = "\n".join(str(p["text"]) for p in parts)
        return [function_response_part(call_id, tool_name, {"output": text})]

    binary = [p for p in parts if is_binary_part(p)]
    if binary:
        ack = f"Binary content of type {part_mime_type(binary[0])} was processed."
        return [function_response_part(call_id, tool_name, {"output": ack}), *parts]

    return [function_response_part(call_id, tool_name, {"output": "Tool execution succeeded."}), *parts]


def _display_for(result: ToolResult) -> str:
    if result.display is not None:
        return result.display
    if result.error is not None:
        return result.error.message
    if isinstance(result.content, str):
        return result.content
    try:
        return json.dumps(result.content, ensure_ascii=False)[:2000]
    except (TypeError, ValueError):
        return str(result.content)[:2000]


def error_response(request: ToolCallRequest, message: str, kind: ErrorKind) -> ToolCallResponse:
    return ToolCallResponse(
        call_id=request.call_id,
        response_parts=[function_response_part(request.call_id, request.name, {"error": message})],
        display=message,
        error=ToolError(message, kind),
    )


def execute_tool_call(
    registry: "ToolRegistry",
    request: ToolCallRequest,
    cancel: CancelToken,
    *,
    cwd: str = ".",
) -> ToolCallResponse:
    """Run one model-requested call; every outcome becomes a response, nothing propagates."""
    tool = registry.get(request.name)
    if tool is None:
        return error_response(request, f'Tool "{request.name}" not found in registry.', ErrorKind.NOT_FOUND)

    invalid = tool.validate(request.args)
    if invalid:
        return error_response(request, invalid, ErrorKind.INVALID_PARAMS)

    ctx = ToolContext(cwd=cwd, cancel=cancel, prompt_id=request.prompt_id)
    try:
        result = tool.execute(ctx, request.args)
    except OperationCancelled as e:
        return error_response(request, str(e), ErrorKind.CANCELLED)
    except PyToolCallError as e:
        return error_response(request, str(e) or type(e).__name__, e.kind)
    except Exception as e:
        logger.debug("tool %s raised", request.name, exc_info=True)
        return error_response(request, str(e) or type(e).__name__, ErrorKind.UNHANDLED_EXCEPTION)

    return ToolCallResponse(
        call_id=request.call_id,
        response_parts=to_response_parts(request.call_id, request.name, result.content),
        display=_display_for(result),
        error=result.error,
    )
