from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    INVALID_PARAMS = "InvalidParams"
    EXECUTION_FAILED = "ExecutionFailed"
    UNHANDLED_EXCEPTION = "UnhandledException"
    CONNECTION_ERROR = "ConnectionError"
    QUOTA_EXCEEDED = "QuotaExceeded"
    CANCELLED = "CancellationRequested"


class PyToolCallError(RuntimeError):
    kind: ErrorKind = ErrorKind.UNHANDLED_EXCEPTION


class OperationCancelled(PyToolCallError):
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Operation cancelled."):
        super().__init__(message)


class ServerConnectionError(PyToolCallError):
    """A failure local to one configured tool server."""

    kind = ErrorKind.CONNECTION_ERROR

    def __init__(self, server_name: str, message: str):
        super().__init__(f"MCP server '{server_name}': {message}")
        self.server_name = server_name
        self.detail = message


class McpRequestError(PyToolCallError):
    """JSON-RPC error object returned by a server."""

    kind = ErrorKind.EXECUTION_FAILED

    def __init__(self, message: str, code: int | None = None, data: object = None):
        super().__init__(message)
        self.code = code
        self.data = data


class ToolDiscoveryError(PyToolCallError):
    pass


class ProviderError(PyToolCallError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class QuotaExceededError(ProviderError):
    kind = ErrorKind.QUOTA_EXCEEDED

    def __init__(self, message: str, model: str | None = None, status_code: int | None = 429):
        super().__init__(message, status_code=status_code)
        self.model = model


def format_api_error(err: BaseException) -> str:
    """Render a model/API failure for stderr."""
    if isinstance(err, QuotaExceededError):
        hint = "Possible quota limitations in place or slow response times detected."
        if err.model:
            hint += f" Model: {err.model}."
        return f"[API Error: {err}]\n{hint}"
    if isinstance(err, ProviderError) and err.status_code:
        return f"[API Error: {err} (Status: {err.status_code})]"
    return f"[API Error: {err}]"
