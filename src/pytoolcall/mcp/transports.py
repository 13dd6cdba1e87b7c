from __future__ import annotations

import itertools
import json
import logging
import os
import subprocess
import threading
from collections import deque
from typing import Any, Callable, Iterable, Iterator
from urllib.parse import urljoin

import httpx

from ..config.models import HttpTransportConfig, ServerConfig, SseTransportConfig, StdioTransportConfig
from ..errors import McpRequestError, OperationCancelled, ServerConnectionError
from ..util.cancel import CancelToken

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 200


def iter_sse_events(lines: Iterable[str]) -> Iterator[tuple[str, str]]:
    """Yield (event, data) pairs from text/event-stream lines."""
    event = "message"
    data: list[str] = []
    for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value or "message"
        elif name == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)


class JsonRpcTransport:
    """JSON-RPC 2.0 request/response correlation shared by every transport.

    Subclasses open the channel in `start`, deliver outgoing messages in
    `_send`, and hand each decoded incoming message to `_dispatch`. A caller
    blocked in `request` is woken by the matching response, by the transport
    dying, by its timeout, or by the cancel token.
    """

    def __init__(self, server_name: str, timeout: float):
        self.server_name = server_name
        self.timeout = timeout
        self._id_iter = itertools.count(1)
        self._lock = threading.Lock()
        self._pending: dict[int, tuple[threading.Event, dict[str, Any]]] = {}
        self._closed = False
        self.close_reason: str | None = None

    @property
    def is_closed(self) -> bool:
        return self._closed

    def start(self, cancel: CancelToken) -> None:
        raise NotImplementedError

    def _send(self, msg: dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def _dispatch(self, msg: Any) -> None:
        if isinstance(msg, list):
            for m in msg:
                self._dispatch(m)
            return
        if not isinstance(msg, dict):
            return
        if "method" in msg:
            # server notifications / requests are not needed by a tool-only client
            logger.debug("[%s] ignoring server message: %s", self.server_name, msg.get("method"))
            return
        try:
            mid = int(msg["id"])
        except (KeyError, TypeError, ValueError):
            return
        with self._lock:
            entry = self._pending.get(mid)
        if entry is not None:
            ev, holder = entry
            holder["msg"] = msg
            ev.set()

    def _fail_one(self, rid: int, reason: str) -> None:
        with self._lock:
            entry = self._pending.get(rid)
        if entry is not None:
            ev, holder = entry
            holder.setdefault("failed", reason)
            ev.set()

    def _fail_all(self, reason: str) -> None:
        self._closed = True
        if self.close_reason is None:
            self.close_reason = reason
        with self._lock:
            rids = list(self._pending.keys())
        for rid in rids:
            self._fail_one(rid, reason)

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        self._send({"jsonrpc": "2.0", "method": method, "params": params or {}})

    def _notify_cancelled(self, rid: int, reason: str | None) -> None:
        try:
            self.notify("notifications/cancelled", {"requestId": rid, "reason": reason or "cancelled"})
        except ServerConnectionError as e:
            logger.debug("[%s] could not send cancellation: %s", self.server_name, e)

    def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        cancel: CancelToken | None = None,
        timeout: float | None = None,
    ) -> Any:
        if self._closed:
            raise ServerConnectionError(self.server_name, f"connection closed ({self.close_reason or 'not connected'})")
        timeout = self.timeout if timeout is None else timeout
        rid = next(self._id_iter)
        req = {"jsonrpc": "2.0", "id": rid, "method": method, "params": params or {}}
        ev = threading.Event()
        holder: dict[str, Any] = {}
        with self._lock:
            self._pending[rid] = (ev, holder)
        remove: Callable[[], None] = cancel.on_cancel(ev.set) if cancel is not None else (lambda: None)
        try:
            self._send(req)
            ev.wait(timeout)
        finally:
            remove()
            with self._lock:
                self._pending.pop(rid, None)

        if "msg" not in holder:
            if "failed" in holder:
                raise ServerConnectionError(self.server_name, holder["failed"])
            if cancel is not None and cancel.cancelled:
                self._notify_cancelled(rid, cancel.reason)
                raise OperationCancelled(f"MCP request cancelled: {method}")
            raise ServerConnectionError(self.server_name, f"request timed out after {timeout:g}s: {method}")

        err = holder["msg"].get("error")
        if err is not None:
            if isinstance(err, dict):
                raise McpRequestError(str(err.get("message") or err), code=err.get("code"), data=err.get("data"))
            raise McpRequestError(str(err))
        return holder["msg"].get("result")


class StdioTransport(JsonRpcTransport):
    """Newline-delimited JSON-RPC over a child process's stdin/stdout."""

    def __init__(self, server_name: str, config: StdioTransportConfig, timeout: float):
        super().__init__(server_name, timeout)
        self.config = config
        self._proc: subprocess.Popen[str] | None = None
        self._write_lock = threading.Lock()
        self.stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

    def start(self, cancel: CancelToken) -> None:
        cancel.raise_if_cancelled()
        try:
            self._proc = subprocess.Popen(
                [self.config.command, *self.config.args],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                cwd=self.config.cwd,
                env={**os.environ, **self.config.env},
            )
        except OSError as e:
            self._closed = True
            raise ServerConnectionError(self.server_name, f"failed to start '{self.config.command}': {e}") from e
        threading.Thread(target=self._read_loop, name=f"mcp-{self.server_name}-out", daemon=True).start()
        threading.Thread(target=self._stderr_loop, name=f"mcp-{self.server_name}-err", daemon=True).start()

    def _read_loop(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        for line in self._proc.stdout:
            line = line.strip()
            if not line:
                continue
            try:
                msg = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("[%s] non-JSON line on stdout: %s", self.server_name, line[:200])
                continue
            self._dispatch(msg)
        code = self._proc.poll()
        reason = f"server process exited with code {code}" if code is not None else "server closed its stdout"
        if self.stderr_tail:
            reason += f"; stderr: {self.stderr_tail[-1]}"
        self._fail_all(reason)

    def _stderr_loop(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        for line in self._proc.stderr:
            line = line.rstrip()
            if line:
                self.stderr_tail.append(line)
                logger.debug("[%s] stderr: %s", self.server_name, line)

    def _send(self, msg: dict[str, Any]) -> None:
        if self._proc is None or self._proc.stdin is None:
            raise ServerConnectionError(self.server_name, "not started")
        try:
            with self._write_lock:
                self._proc.stdin.write(json.dumps(msg, ensure_ascii=False) + "\n")
                self._proc.stdin.flush()
        except (OSError, ValueError) as e:
            raise ServerConnectionError(self.server_name, f"write failed: {e}") from e

    def close(self) -> None:
        self._fail_all("connection closed")
        proc = self._proc
        if proc is None:
            return
        try:
            if proc.stdin:
                proc.stdin.close()
        except OSError:
            pass
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=2)


class SseTransport(JsonRpcTransport):
    """Legacy MCP SSE: a GET event stream announces a POST endpoint; replies arrive as events."""

    def __init__(self, server_name: str, config: SseTransportConfig, timeout: float, client: httpx.Client | None = None):
        super().__init__(server_name, timeout)
        self.config = config
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout, read=None))
        self._owns_client = client is None
        self._response: httpx.Response | None = None
        self._endpoint: str | None = None
        self._endpoint_ready = threading.Event()
        self._error: str | None = None

    @property
    def endpoint(self) -> str | None:
        return self._endpoint

    def start(self, cancel: CancelToken) -> None:
        threading.Thread(target=self._stream_loop, name=f"mcp-{self.server_name}-sse", daemon=True).start()
        remove = cancel.on_cancel(self._endpoint_ready.set)
        try:
            self._endpoint_ready.wait(self.timeout)
        finally:
            remove()
        if cancel.cancelled:
            self.close()
            raise OperationCancelled(f"Connecting to '{self.server_name}' cancelled.")
        if self._endpoint is None:
            self.close()
            raise ServerConnectionError(self.server_name, self._error or f"no endpoint event within {self.timeout:g}s")

    def _stream_loop(self) -> None:
        headers = {"Accept": "text/event-stream", **self.config.headers}
        try:
            with self._client.stream("GET", self.config.url, headers=headers) as resp:
                self._response = resp
                if resp.status_code >= 400:
                    self._error = f"SSE connect failed: HTTP {resp.status_code}"
                    return
                for event, data in iter_sse_events(resp.iter_lines()):
                    if event == "endpoint":
                        self._endpoint = urljoin(self.config.url, data.strip())
                        self._endpoint_ready.set()
                    elif event == "message":
                        try:
                            self._dispatch(json.loads(data))
                        except json.JSONDecodeError:
                            logger.debug("[%s] non-JSON SSE message: %s", self.server_name, data[:200])
        except Exception as e:
            # reader thread: surface the failure to waiters
            if not self._closed:
                self._error = str(e)
                logger.warning("[%s] SSE stream failed: %s", self.server_name, e)
        finally:
            self._endpoint_ready.set()
            self._fail_all(self._error or "event stream closed")

    def _send(self, msg: dict[str, Any]) -> None:
        if self._endpoint is None:
            raise ServerConnectionError(self.server_name, "no endpoint announced")
        try:
            resp = self._client.post(self._endpoint, json=msg, headers=self.config.headers)
        except httpx.HTTPError as e:
            raise ServerConnectionError(self.server_name, f"POST failed: {e}") from e
        if resp.status_code >= 400:
            raise ServerConnectionError(self.server_name, f"POST failed: HTTP {resp.status_code}")

    def close(self) -> None:
        self._fail_all("connection closed")
        if self._response is not None:
            self._response.close()
        if self._owns_client:
            self._client.close()


class HttpTransport(JsonRpcTransport):
    """Streamable HTTP: each message is a POST; the reply is a JSON body or an SSE body."""

    def __init__(self, server_name: str, config: HttpTransportConfig, timeout: float, client: httpx.Client | None = None):
        super().__init__(server_name, timeout)
        self.config = config
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None
        self.session_id: str | None = None

    def start(self, cancel: CancelToken) -> None:
        cancel.raise_if_cancelled()

    def _headers(self) -> dict[str, str]:
        h = {"Accept": "application/json, text/event-stream", **self.config.headers}
        if self.session_id:
            h["Mcp-Session-Id"] = self.session_id
        return h

    def _post(self, msg: dict[str, Any]) -> None:
        try:
            with self._client.stream("POST", self.config.url, json=msg, headers=self._headers()) as resp:
                sid = resp.headers.get("mcp-session-id")
                if sid:
                    self.session_id = sid
                if resp.status_code >= 400:
                    resp.read()
                    raise ServerConnectionError(self.server_name, f"HTTP {resp.status_code}: {resp.text[:500]}")
                if "text/event-stream" in resp.headers.get("content-type", ""):
                    for event, data in iter_sse_events(resp.iter_lines()):
                        if event == "message":
                            self._dispatch(json.loads(data))
                elif resp.status_code != 202:
                    body = resp.read().strip()
                    if body:
                        self._dispatch(json.loads(body))
        except httpx.HTTPError as e:
            raise ServerConnectionError(self.server_name, f"request failed: {e}") from e
        except json.JSONDecodeError as e:
            raise ServerConnectionError(self.server_name, f"invalid JSON reply: {e}") from e

    def _post_request(self, msg: dict[str, Any]) -> None:
        try:
            self._post(msg)
        except ServerConnectionError as e:
            self._fail_one(msg["id"], e.detail)
        except httpx.StreamError as e:
            self._fail_one(msg["id"], f"stream error: {e}")

    def _send(self, msg: dict[str, Any]) -> None:
        if "id" in msg:
            # the caller waits on its pending entry
            threading.Thread(target=self._post_request, args=(msg,), daemon=True).start()
        else:
            self._post(msg)

    def close(self) -> None:
        self._fail_all("connection closed")
        if self._owns_client:
            self._client.close()


def create_transport(config: ServerConfig) -> JsonRpcTransport:
    t = config.transport
    if isinstance(t, StdioTransportConfig):
        return StdioTransport(config.name, t, config.timeout_seconds)
    if isinstance(t, SseTransportConfig):
        return SseTransport(config.name, t, config.timeout_seconds)
    if isinstance(t, HttpTransportConfig):
        return HttpTransport(config.name, t, config.timeout_seconds)
    raise ServerConnectionError(config.name, f"unsupported transport: {type(t).__name__}")
