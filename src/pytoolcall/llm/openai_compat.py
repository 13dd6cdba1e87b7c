from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Union

import httpx

from ..errors import OperationCancelled, ProviderError, QuotaExceededError
from ..util.cancel import CancelToken

logger = logging.getLogger(__name__)


@dataclass
class StreamedToolCall:
    id: str
    name: str
    arguments: dict[str, Any]


StreamChunk = Union[str, StreamedToolCall]


class _TransientStatus(ProviderError):
    """5xx from the gateway; worth retrying."""


def _error_message(body: str) -> str:
    try:
        obj = json.loads(body)
    except json.JSONDecodeError:
        return body.strip()[:500]
    err = obj.get("error") if isinstance(obj, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    if isinstance(err, str):
        return err
    return body.strip()[:500]


def _parse_arguments(arg_str: Any) -> dict[str, Any]:
    if isinstance(arg_str, dict):
        return arg_str
    try:
        args = json.loads(arg_str or "{}")
    except json.JSONDecodeError:
        # best-effort: empty args, validation reports what is missing
        return {}
    return args if isinstance(args, dict) else {}


@dataclass
class OpenAICompatProvider:
    """
    Streaming OpenAI-compatible Chat Completions client.
    Works with OpenAI and many compatible gateways (OpenRouter, vLLM, LM Studio, etc.)
    """
    model: str
    base_url: str
    api_key: str
    provider_name: str = "openai"
    timeout: float = 120.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    client: httpx.Client | None = field(default=None, repr=False)

    def _http(self) -> httpx.Client:
        if self.client is None:
            self.client = httpx.Client(timeout=httpx.Timeout(self.timeout, connect=10.0))
        return self.client

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None

    def stream_chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        model: str | None = None,
        cancel: CancelToken | None = None,
    ) -> Iterator[StreamChunk]:
        """Yield text chunks as they arrive, then one StreamedToolCall per requested call.

        Transport failures and 5xx responses are retried with exponential
        backoff, but only while nothing has been yielded yet.
        """
        if not self.api_key:
            raise ProviderError(f"Missing API key for provider '{self.provider_name}'.")
        cancel = cancel or CancelToken()
        payload: dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "temperature": 0.2,
            "stream": True,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        attempt = 0
        while True:
            attempt += 1
            produced = False
            try:
                for chunk in self._stream_once(payload, cancel):
                    produced = True
                    yield chunk
                return
            except (httpx.TransportError, _TransientStatus) as e:
                cancel.raise_if_cancelled()
                if produced or attempt > self.max_retries:
                    if isinstance(e, ProviderError):
                        raise
                    raise ProviderError(f"Request to {self.provider_name} failed: {e}") from e
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "%s request failed (%s); retrying in %.1fs (%d/%d)",
                    self.provider_name, e, delay, attempt, self.max_retries,
                )
                if delay > 0 and cancel.wait(delay):
                    raise OperationCancelled(cancel.reason or "Operation cancelled.") from e

    def _stream_once(self, payload: dict[str, Any], cancel: CancelToken) -> Iterator[StreamChunk]:
        cancel.raise_if_cancelled()
        url = self.base_url.rstrip("/") + "/chat/completions"
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "Authorization": f"Bearer {self.api_key}",
        }
        # tool_calls are streamed as deltas by index; accumulate into strings.
        tc_by_index: dict[int, dict[str, str]] = {}
        with self._http().stream("POST", url, json=payload, headers=headers) as resp:
            if resp.status_code >= 400:
                body = resp.read().decode("utf-8", errors="replace")
                msg = _error_message(body) or resp.reason_phrase
                if resp.status_code == 429:
                    raise QuotaExceededError(msg, model=payload["model"])
                if resp.status_code >= 500:
                    raise _TransientStatus(msg, status_code=resp.status_code)
                raise ProviderError(msg, status_code=resp.status_code)

            remove = cancel.on_cancel(resp.close)
            try:
                for line in resp.iter_lines():
                    cancel.raise_if_cancelled()
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data_str = line[len("data:"):].strip()
                    if data_str == "[DONE]":
                        break
                    try:
                        ev = json.loads(data_str)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(ev, dict):
                        continue
                    if ev.get("error"):
                        raise ProviderError(_error_message(data_str))
                    choices = ev.get("choices") or []
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}
                    if delta.get("content"):
                        yield str(delta["content"])
                    for tc in delta.get("tool_calls") or []:
                        idx = int(tc.get("index", 0))
                        cur = tc_by_index.setdefault(idx, {"id": "", "name": "", "arguments": ""})
                        if tc.get("id"):
                            cur["id"] = str(tc["id"])
                        fn = tc.get("function") or {}
                        if fn.get("name"):
                            cur["name"] = str(fn["name"])
                        if fn.get("arguments"):
                            cur["arguments"] += str(fn["arguments"])
            except (httpx.StreamError, httpx.TransportError):
                if cancel.cancelled:
                    raise OperationCancelled(cancel.reason or "Operation cancelled.")
                raise
            finally:
                remove()

        for idx in sorted(tc_by_index):
            tc = tc_by_index[idx]
            yield StreamedToolCall(
                id=tc["id"] or f"call_{idx}",
                name=tc["name"],
                arguments=_parse_arguments(tc["arguments"]),
            )
