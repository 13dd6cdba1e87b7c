from __future__ import annotations

import json
import logging
import os
import sys
import time
from typing import TYPE_CHECKING, Any, Optional, TextIO

from rich.console import Console
from rich.panel import Panel

from .errors import ErrorKind, OperationCancelled, QuotaExceededError, format_api_error
from .session.models import (
    Message,
    SessionState,
    StreamEventType,
    ToolCallRequest,
    ToolCallResponse,
    TurnState,
)
from .tools.base import Part, text_part
from .tools.executor import error_response, execute_tool_call
from .util.cancel import CancelToken

if TYPE_CHECKING:
    from .app_context import AppContext
    from .config.models import Config
    from .events.store import EventStore
    from .llm.chat import ChatClient
    from .tools.permissions import PermissionGate
    from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_TURN_LIMIT = 53
EXIT_CANCELLED = 130

TURN_LIMIT_MESSAGE = (
    "Reached max session turns for this session. "
    "Increase the number of turns by specifying maxSessionTurns in settings.json."
)
CANCELLED_MESSAGE = "Operation cancelled."
NO_INPUT_MESSAGE = "No input provided via stdin. Input can be provided by piping data or using --prompt."


def _args_preview(args: dict) -> str:
    try:
        s = json.dumps(args, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        s = str(args)
    if len(s) > 2000:
        s = s[:2000] + "\n... (truncated)"
    return s


def _silence_stdout(out: TextIO) -> None:
    # after EPIPE, point the fd at devnull so interpreter shutdown doesn't raise again
    try:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, out.fileno())
    except (AttributeError, OSError, ValueError):
        pass


class TurnOrchestrator:
    """Drives send -> stream -> execute tools -> send ... until the model stops asking.

    One instance runs one non-interactive session. Model text goes to `out`
    as it arrives; notices and errors go to the stderr console.
    """

    def __init__(
        self,
        config: "Config",
        chat: "ChatClient",
        registry: "ToolRegistry",
        *,
        cwd: str = ".",
        gate: Optional["PermissionGate"] = None,
        events: Optional["EventStore"] = None,
        out: TextIO | None = None,
        err_console: Console | None = None,
        trace: bool = False,
    ):
        self.config = config
        self.chat = chat
        self.registry = registry
        self.cwd = cwd
        self.gate = gate
        self.events = events
        self.out = out or sys.stdout
        self.err = err_console or Console(stderr=True)
        self.trace = trace
        self.state = TurnState.IDLE
        self.session: SessionState | None = None

    def _set_state(self, state: TurnState) -> None:
        if state != self.state:
            logger.debug("turn state %s -> %s", self.state.value, state.value)
        self.state = state

    def _event(self, event_type: str, data: dict[str, Any]) -> None:
        if self.events is not None:
            self.events.append(event_type, data)

    def _notice(self, text: str) -> None:
        self.err.print(text, markup=False, highlight=False)

    def _write(self, text: str) -> None:
        self.out.write(text)
        self.out.flush()

    def _abort(self) -> int:
        self._set_state(TurnState.ABORTED)
        self._notice(CANCELLED_MESSAGE)
        return EXIT_CANCELLED

    def _try_fallback(self, err: QuotaExceededError) -> bool:
        assert self.session is not None
        current = self.config.get_model()
        fallback = self.config.get_fallback_model()
        if not fallback or fallback == current:
            return False
        self._notice(
            f"Model {current} reported a quota or capacity limit ({err}). "
            f"Switching to fallback model {fallback} for the rest of this session."
        )
        self.config.set_model(fallback)
        self.config.set_fallback_mode(True)
        self.chat.reset_chat()
        self.session.current_model = fallback
        self.session.fallback_active = True
        self._event("model.fallback", {"from": current, "to": fallback, "error": str(err)[:2000]})
        self._set_state(TurnState.FALLBACK_RESTART)
        return True

    def _execute(self, request: ToolCallRequest, cancel: CancelToken) -> ToolCallResponse:
        assert self.session is not None
        step = self.session.turn_count
        tool = self.registry.get(request.name)
        self._event("tool.call", {
            "step": step,
            "tool": request.name,
            "tool_call_id": request.call_id,
            "args": request.args,
        })

        if tool is not None and self.gate is not None and not self.gate.decide(tool, _args_preview(request.args)):
            self._event("tool.denied", {"step": step, "tool": request.name, "tool_call_id": request.call_id})
            return error_response(
                request,
                f'Tool "{request.name}" was denied by user permissions.',
                ErrorKind.EXECUTION_FAILED,
            )

        t0 = time.perf_counter()
        resp = execute_tool_call(self.registry, request, cancel, cwd=self.cwd)
        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        self._event("tool.result", {
            "step": step,
            "tool": request.name,
            "tool_call_id": request.call_id,
            "error": resp.error.kind.value if resp.error else None,
            "elapsed_ms": elapsed_ms,
            "display_preview": (resp.display or "")[:4000],
        })

        if self.trace:
            shown = resp.display or ""
            self.err.print(Panel.fit(
                shown[:1200] + ("..." if len(shown) > 1200 else ""),
                title=f"tool:{request.name} ({'error' if resp.error else 'ok'})",
                border_style="red" if resp.error else "green",
            ))
        return resp

    def run(self, input_text: str, prompt_id: str, cancel: CancelToken | None = None) -> int:
        """Run the session to completion and return the process exit code."""
        cancel = cancel or CancelToken()
        session = SessionState(
            current_model=self.config.get_model(),
            max_turns=self.config.get_max_session_turns(),
            fallback_active=self.config.is_in_fallback_mode(),
        )
        self.session = session
        original: list[Part] = [text_part(input_text)]
        current: list[Part] = list(original)
        session.conversation = [Message(role="user", parts=list(original))]
        restart = False

        try:
            while True:
                session.turn_count += 1
                if restart:
                    restart = False
                    current = list(original)
                    session.conversation = [Message(role="user", parts=list(original))]
                    session.turn_count = 1
                if 0 <= session.max_turns < session.turn_count:
                    self._notice(TURN_LIMIT_MESSAGE)
                    self._event("session.turn_limit", {"max_turns": session.max_turns})
                    self._set_state(TurnState.DONE)
                    return EXIT_TURN_LIMIT

                cancel.raise_if_cancelled()
                self._set_state(TurnState.SENDING)
                self._event("llm.request", {
                    "step": session.turn_count,
                    "model": self.config.get_model(),
                    "parts_count": len(current),
                })

                text: list[str] = []
                pending: list[ToolCallRequest] = []
                try:
                    for ev in self.chat.send_message_stream(current, cancel, prompt_id):
                        if cancel.cancelled:
                            return self._abort()
                        self._set_state(TurnState.STREAMING)
                        if ev.type == StreamEventType.CONTENT:
                            text.append(ev.value)
                            self._write(ev.value)
                        elif ev.type == StreamEventType.TOOL_CALL_REQUEST:
                            pending.append(ev.value)
                except QuotaExceededError as e:
                    self._event("llm.error", {"step": session.turn_count, "error": str(e)[:2000]})
                    if self._try_fallback(e):
                        restart = True
                        continue
                    raise
                if cancel.cancelled:
                    return self._abort()

                model_parts: list[Part] = [text_part("".join(text))] if text else []
                model_parts += [
                    {"function_call": {"id": r.call_id, "name": r.name, "args": r.args}} for r in pending
                ]
                session.conversation.append(Message(role="model", parts=model_parts))

                if not pending:
                    self._write("\n")
                    self._set_state(TurnState.DONE)
                    return EXIT_OK

                self._set_state(TurnState.AGGREGATING)
                response_parts: list[Part] = []
                self._set_state(TurnState.EXECUTING)
                for request in pending:
                    cancel.raise_if_cancelled()
                    resp = self._execute(request, cancel)
                    if resp.error is not None:
                        if resp.error.kind == ErrorKind.CANCELLED:
                            return self._abort()
                        self._notice(f"Error executing tool {request.name}: {resp.error.message}")
                    response_parts.extend(resp.response_parts)

                current = response_parts
                session.conversation.append(Message(role="user", parts=list(response_parts)))
        except OperationCancelled:
            return self._abort()
        except BrokenPipeError:
            _silence_stdout(self.out)
            self._set_state(TurnState.DONE)
            return EXIT_OK
        except Exception as e:
            logger.debug("session failed", exc_info=True)
            self._event("llm.error", {"step": session.turn_count, "error": str(e)[:2000], "fatal": True})
            self._notice(format_api_error(e))
            self._set_state(TurnState.ABORTED)
            return EXIT_FATAL


def run_non_interactive(
    ctx: "AppContext",
    input_text: str,
    prompt_id: str,
    cancel: CancelToken | None = None,
    *,
    out: TextIO | None = None,
) -> int:
    """Entry point used by the CLI: one prompt in, streamed answer out, exit code back."""
    if not input_text or not input_text.strip():
        ctx.err_console.print(NO_INPUT_MESSAGE, markup=False)
        return EXIT_FATAL
    orchestrator = TurnOrchestrator(
        ctx.config,
        ctx.chat,
        ctx.registry,
        cwd=str(ctx.cwd),
        gate=ctx.gate,
        events=ctx.events,
        out=out,
        err_console=ctx.err_console,
        trace=ctx.trace,
    )
    return orchestrator.run(input_text, prompt_id, cancel)
