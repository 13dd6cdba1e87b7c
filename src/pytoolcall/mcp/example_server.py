"""A tiny stdio MCP server used by the tests and for trying `mcpServers` out.

Run with `python -m pytoolcall.mcp.example_server [--fail-init] [--page-size N]`.
"""
from __future__ import annotations

import argparse
import base64
import json
import sys
import time

from .models import PROTOCOL_VERSION

# 1x1 transparent PNG
_PIXEL_PNG = base64.b64encode(
    bytes.fromhex(
        "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
        "1f15c4890000000d49444154789c6360000002000154a24f5d0000000049454e44ae426082"
    )
).decode("ascii")

TOOLS = [
    {
        "name": "echo",
        "description": "Echo back the provided text.",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    },
    {
        "name": "now",
        "description": "Return current epoch time.",
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "pixel",
        "description": "Return a 1x1 PNG image.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "fail",
        "description": "Always report a tool error.",
        "inputSchema": {"type": "object", "properties": {"reason": {"type": "string"}}},
    },
    {
        "name": "sleep",
        "description": "Sleep for the given number of seconds, then reply.",
        "inputSchema": {
            "type": "object",
            "properties": {"seconds": {"type": "number"}},
            "required": ["seconds"],
        },
    },
]


def _write(msg: dict) -> None:
    sys.stdout.write(json.dumps(msg, ensure_ascii=False) + "\n")
    sys.stdout.flush()


def _reply(rid, result=None, error=None) -> None:
    msg = {"jsonrpc": "2.0", "id": rid}
    if error is not None:
        msg["error"] = {"code": -32601, "message": str(error)}
    else:
        msg["result"] = result
    _write(msg)


def _text(s: str) -> dict:
    return {"content": [{"type": "text", "text": s}]}


def _call(name, args: dict) -> dict:
    if name == "echo":
        return _text(str(args.get("text", "")))
    if name == "now":
        return _text(str(time.time()))
    if name == "pixel":
        return {"content": [{"type": "image", "mimeType": "image/png", "data": _PIXEL_PNG}]}
    if name == "fail":
        return {"content": [{"type": "text", "text": str(args.get("reason", "failed"))}], "isError": True}
    if name == "sleep":
        time.sleep(float(args.get("seconds", 0)))
        return _text("awake")
    raise KeyError(f"Unknown tool: {name}")


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--fail-init", action="store_true", help="answer initialize with an error")
    ap.add_argument("--page-size", type=int, default=0, help="paginate tools/list")
    opts = ap.parse_args(argv)

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            req = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(req, dict) or "id" not in req:
            # notifications need no reply
            continue
        rid = req.get("id")
        method = req.get("method")
        params = req.get("params") or {}

        try:
            if method == "initialize":
                if opts.fail_init:
                    _reply(rid, error="initialization refused")
                    continue
                _reply(rid, {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": "pytoolcall-example", "version": "0.1.0"},
                })
            elif method == "tools/list":
                if opts.page_size > 0:
                    start = int(params.get("cursor") or 0)
                    end = start + opts.page_size
                    result = {"tools": TOOLS[start:end]}
                    if end < len(TOOLS):
                        result["nextCursor"] = str(end)
                    _reply(rid, result)
                else:
                    _reply(rid, {"tools": TOOLS})
            elif method == "tools/call":
                _reply(rid, _call(params.get("name"), params.get("arguments") or {}))
            else:
                _reply(rid, error=f"Unknown method: {method}")
        except Exception as e:
            _reply(rid, error=e)


if __name__ == "__main__":
    main()
