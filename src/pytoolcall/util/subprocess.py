from __future__ import annotations
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import IO, Sequence, Optional

from ..errors import OperationCancelled
from .cancel import CancelToken

_POLL_SECONDS = 0.1
_CHUNK_BYTES = 64 * 1024
# readers may never see EOF if a killed command left grandchildren holding the pipes
_KILLED_JOIN_SECONDS = 2.0

@dataclass
class CmdResult:
    returncode: int
    stdout: str
    stderr: str
    signal: int | None = None

class OutputLimitExceeded(RuntimeError):
    def __init__(self, limit: int):
        super().__init__(f"output exceeded size limit of {limit} bytes")
        self.limit = limit

def run_cmd(
    cmd: Sequence[str],
    cwd: str | None = None,
    timeout: Optional[float] = 120,
    *,
    input: str | None = None,
    cancel: CancelToken | None = None,
    max_output_bytes: int | None = None,
) -> CmdResult:
    """Run a command to completion, killing it on timeout, cancellation or runaway output.

    stdout and stderr are read in chunks as they arrive; once either passes
    `max_output_bytes` the process is killed. Raises OperationCancelled,
    subprocess.TimeoutExpired, OutputLimitExceeded, or OSError when the
    executable cannot be spawned.
    """
    proc = subprocess.Popen(
        list(cmd),
        cwd=cwd,
        stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        shell=False,
    )
    over_limit = threading.Event()
    out_buf, err_buf = bytearray(), bytearray()

    def drain(stream: IO[bytes], buf: bytearray) -> None:
        with stream:
            while True:
                chunk = stream.read1(_CHUNK_BYTES)  # type: ignore[attr-defined]
                if not chunk:
                    return
                buf.extend(chunk)
                if max_output_bytes is not None and len(buf) > max_output_bytes:
                    over_limit.set()
                    proc.kill()
                    return

    def feed(data: bytes) -> None:
        assert proc.stdin is not None
        try:
            proc.stdin.write(data)
            proc.stdin.close()
        except OSError:
            # the command exited without reading all of its input
            pass

    threads = [
        threading.Thread(target=drain, args=(proc.stdout, out_buf), daemon=True),
        threading.Thread(target=drain, args=(proc.stderr, err_buf), daemon=True),
    ]
    if input is not None:
        threads.append(threading.Thread(target=feed, args=(input.encode("utf-8"),), daemon=True))
    for t in threads:
        t.start()

    def stop() -> None:
        proc.kill()
        proc.wait()
        for t in threads:
            t.join(_KILLED_JOIN_SECONDS)

    deadline = (time.monotonic() + timeout) if timeout else None
    while True:
        try:
            proc.wait(timeout=_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if over_limit.is_set():
                continue
            if cancel is not None and cancel.cancelled:
                stop()
                raise OperationCancelled(f"Command cancelled: {cmd[0]}")
            if deadline is not None and time.monotonic() > deadline:
                stop()
                raise subprocess.TimeoutExpired(list(cmd), timeout)

    if over_limit.is_set():
        for t in threads:
            t.join(_KILLED_JOIN_SECONDS)
        assert max_output_bytes is not None
        raise OutputLimitExceeded(max_output_bytes)
    for t in threads:
        t.join()

    rc = proc.returncode
    sig = -rc if rc is not None and rc < 0 else None
    return CmdResult(
        rc,
        out_buf.decode("utf-8", errors="replace"),
        err_buf.decode("utf-8", errors="replace"),
        signal=sig,
    )

def describe_outcome(
    stdout: str,
    stderr: str,
    *,
    error: str | None = None,
    returncode: int | None = None,
    signal: int | None = None,
) -> str:
    """Labelled multi-line report of a finished (or unstartable) command."""
    return "\n".join([
        f"Stdout: {stdout or '(empty)'}",
        f"Stderr: {stderr or '(empty)'}",
        f"Error: {error or '(none)'}",
        f"Exit Code: {returncode if returncode is not None else '(none)'}",
        f"Signal: {signal if signal is not None else '(none)'}",
    ])
