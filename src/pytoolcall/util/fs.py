from __future__ import annotations
from pathlib import Path

class FsError(RuntimeError):
    pass

def resolve_path(cwd: Path, path_str: str) -> Path:
    """Resolve `path_str` against cwd, refusing paths outside it."""
    p = Path(path_str).expanduser()
    p = (cwd / p).resolve() if not p.is_absolute() else p.resolve()
    try:
        p.relative_to(cwd.resolve())
    except ValueError:
        raise FsError(f"Path escapes working directory: {path_str}") from None
    return p

def read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")
