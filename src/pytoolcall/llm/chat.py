from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Iterator, Optional

from ..session.models import Message, StreamEvent, ToolCallRequest
from ..tools.base import Part
from ..util.cancel import CancelToken
from .openai_compat import OpenAICompatProvider

if TYPE_CHECKING:
    from ..config.models import Config
    from ..tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are pytoolcall, a non-interactive assistant.
Rules:
- Use the provided tools when they help answer the request.
- Do not fabricate tool outputs: call the tool.
- Keep tool arguments minimal and correct.
- Finish with a direct answer once no further tool calls are needed.
"""


def _tool_definitions(registry: "ToolRegistry") -> list[dict[str, Any]]:
    out = []
    for spec in registry.declarations():
        out.append({
            "type": "function",
            "function": {
                "name": spec.name,
                "description": spec.description,
                "parameters": spec.parameters or {"type": "object", "properties": {}},
            },
        })
    return out


def _user_content_item(part: Part) -> dict[str, Any] | None:
    if "text" in part:
        return {"type": "text", "text": str(part["text"])}
    if "inline_data" in part:
        body = part["inline_data"]
        mime = str(body.get("mime_type") or "application/octet-stream")
        if mime.startswith("image/"):
            return {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{body.get('data', '')}"}}
        return {"type": "text", "text": f"[binary content: {mime}]"}
    if "file_data" in part:
        body = part["file_data"]
        return {"type": "text", "text": f"[file: {body.get('file_uri', '')} ({body.get('mime_type', '')})]"}
    return None


def _tool_message(part: Part) -> dict[str, Any]:
    fr = part["function_response"]
    response = fr.get("response") or {}
    output = response.get("output")
    content = output if isinstance(output, str) else json.dumps(response, ensure_ascii=False)
    return {"role": "tool", "tool_call_id": str(fr.get("id", "")), "content": content}


def to_provider_messages(history: list[Message], system_prompt: str | None = None) -> list[dict[str, Any]]:
    """Convert part-based history to OpenAI chat messages.

    Function responses become `tool` messages directly after the assistant
    turn that requested them; any other parts of the same user message follow
    as one user message.
    """
    out: list[dict[str, Any]] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})
    for msg in history:
        if msg.role == "model":
            text = "".join(str(p["text"]) for p in msg.parts if "text" in p)
            calls = [p["function_call"] for p in msg.parts if "function_call" in p]
            m: dict[str, Any] = {"role": "assistant", "content": text or None}
            if calls:
                m["tool_calls"] = [
                    {
                        "id": c["id"],
                        "type": "function",
                        "function": {"name": c["name"], "arguments": json.dumps(c.get("args") or {}, ensure_ascii=False)},
                    }
                    for c in calls
                ]
            out.append(m)
            continue

        items: list[dict[str, Any]] = []
        for p in msg.parts:
            if "function_response" in p:
                out.append(_tool_message(p))
                continue
            item = _user_content_item(p)
            if item is not None:
                items.append(item)
        if not items:
            continue
        if all(i["type"] == "text" for i in items):
            out.append({"role": "user", "content": "\n".join(i["text"] for i in items)})
        else:
            out.append({"role": "user", "content": items})
    return out


class ChatClient:
    """Conversation history plus one streaming send per turn."""

    def __init__(
        self,
        provider: OpenAICompatProvider,
        config: "Config",
        registry: "ToolRegistry",
        *,
        system_prompt: Optional[str] = SYSTEM_PROMPT,
    ):
        self.provider = provider
        self.config = config
        self.registry = registry
        self.system_prompt = system_prompt
        self.history: list[Message] = []

    def reset_chat(self) -> None:
        self.history = []

    def send_message_stream(self, parts: list[Part], cancel: CancelToken, prompt_id: str) -> Iterator[StreamEvent]:
        self.history.append(Message(role="user", parts=list(parts)))
        model = self.config.get_model()
        logger.debug("sending turn to %s (%d messages)", model, len(self.history))

        text: list[str] = []
        calls: list[Part] = []
        stream = self.provider.stream_chat(
            to_provider_messages(self.history, self.system_prompt),
            _tool_definitions(self.registry),
            model=model,
            cancel=cancel,
        )
        for chunk in stream:
            if isinstance(chunk, str):
                text.append(chunk)
                yield StreamEvent.content(chunk)
                continue
            calls.append({"function_call": {"id": chunk.id, "name": chunk.name, "args": chunk.arguments}})
            yield StreamEvent.tool_call(ToolCallRequest(
                call_id=chunk.id,
                name=chunk.name,
                args=chunk.arguments,
                prompt_id=prompt_id,
            ))

        model_parts: list[Part] = []
        if text:
            model_parts.append({"text": "".join(text)})
        model_parts.extend(calls)
        self.history.append(Message(role="model", parts=model_parts))
