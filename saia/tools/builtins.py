"""Built-in tools — the adapters every runtime starts with.

Filesystem tools are confined to the workspace directory and run in a worker
thread. ``http.fetch`` has network side effects and only runs when the tool
policy opts into network access.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any

import httpx

from saia.exceptions import ToolExecutionError
from saia.tools.registry import ToolRegistry
from saia.tools.schema import ToolContext, ToolOutput, ToolParameter, ToolSpec
from saia.types import utcnow_iso

IGNORE_DIRS = frozenset({".git", "node_modules", "dist", "__pycache__", ".venv", ".cache"})
MAX_READ_BYTES = 64 * 1024
MAX_WRITE_CHARS = 1_000_000
MAX_LOG_CHARS = 10_000
MAX_SEARCH_RESULTS = 200
MAX_FETCH_CHARS = 5000


def resolve_in_workspace(root: Path, rel: str, allow_hidden: bool = False) -> Path:
    """Resolve ``rel`` under ``root``; reject absolute, traversing or hidden paths."""
    rel = (rel or "").strip()
    if not rel:
        raise ToolExecutionError("path required")
    candidate = Path(rel)
    if candidate.is_absolute() or ".." in candidate.parts:
        raise ToolExecutionError(f"unsafe path: {rel}")
    if not allow_hidden and any(part.startswith(".") for part in candidate.parts if part != "."):
        raise ToolExecutionError(f"hidden paths not allowed: {rel}")
    base = root.resolve()
    full = (base / candidate).resolve()
    if not full.is_relative_to(base):
        raise ToolExecutionError(f"path escapes workspace: {rel}")
    return full


def _int(value: Any, default: int, lo: int, hi: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = default
    return max(lo, min(hi, n))


# ── Tool Implementations ─────────────────────────────────────────────────────


def _list_dir(root: Path, tool_input: dict[str, Any]) -> ToolOutput:
    directory = resolve_in_workspace(root, str(tool_input.get("dir") or "."))
    raw_exts = str(tool_input.get("exts", ".md,.txt,.json,.csv"))
    exts = [e.strip().lower() for e in raw_exts.split(",") if e.strip()]
    limit = _int(tool_input.get("max"), 500, 1, 2000)
    base = root.resolve()
    files: list[dict[str, Any]] = []
    if not directory.is_dir():
        return ToolOutput(ok=True, data={"files": files})
    for path in sorted(directory.rglob("*")):
        if len(files) >= limit:
            break
        rel = path.relative_to(base)
        if any(part.startswith(".") or part in IGNORE_DIRS for part in rel.parts):
            continue
        if path.is_file() and (not exts or path.suffix.lower() in exts):
            files.append({"file": rel.as_posix(), "size": path.stat().st_size})
    return ToolOutput(ok=True, data={"files": files})


def _read_range(root: Path, tool_input: dict[str, Any]) -> ToolOutput:
    full = resolve_in_workspace(root, str(tool_input.get("file", "")))
    start = _int(tool_input.get("start"), 0, 0, 2**31)
    size = _int(tool_input.get("bytes"), 4096, 1, MAX_READ_BYTES)
    if not full.is_file():
        return ToolOutput(ok=False, error=f"not a file: {tool_input.get('file')}")
    with full.open("rb") as fh:
        fh.seek(start)
        chunk = fh.read(size)
    return ToolOutput(
        ok=True,
        data={"content": chunk.decode("utf-8", errors="replace"), "start": start, "bytes": len(chunk)},
    )


def _write_file(root: Path, tool_input: dict[str, Any]) -> ToolOutput:
    full = resolve_in_workspace(root, str(tool_input.get("file", "")))
    content = tool_input.get("content")
    if not isinstance(content, str) or not content:
        return ToolOutput(ok=False, error="content required")
    if len(content) > MAX_WRITE_CHARS:
        return ToolOutput(ok=False, error="content too large")
    append = bool(tool_input.get("append", False))
    full.parent.mkdir(parents=True, exist_ok=True)
    with full.open("a" if append else "w", encoding="utf-8") as fh:
        fh.write(content)
    return ToolOutput(
        ok=True,
        data={
            "file": full.relative_to(root.resolve()).as_posix(),
            "size": full.stat().st_size,
            "operation": "append" if append else "write",
        },
    )


def _search_regex(root: Path, tool_input: dict[str, Any]) -> ToolOutput:
    pattern = str(tool_input.get("pattern", ""))
    if not pattern:
        return ToolOutput(ok=False, error="pattern required")
    try:
        rx = re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        return ToolOutput(ok=False, error=f"invalid pattern: {e}")
    glob = str(tool_input.get("glob", ""))
    base = root.resolve()
    results: list[dict[str, Any]] = []
    total = 0
    for path in sorted(base.rglob("*")):
        rel = path.relative_to(base)
        if any(part in IGNORE_DIRS for part in rel.parts) or path.is_symlink() or not path.is_file():
            continue
        if glob and glob not in rel.as_posix():
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        for lineno, line in enumerate(text.splitlines(), start=1):
            if rx.search(line):
                total += 1
                if len(results) < MAX_SEARCH_RESULTS:
                    results.append({"file": rel.as_posix(), "line": lineno, "text": line})
    return ToolOutput(ok=True, data={"count": total, "results": results})


def _log_append(root: Path, tool_input: dict[str, Any]) -> ToolOutput:
    rel = str(tool_input.get("file", "")).strip()
    if rel.startswith("logs/"):
        rel = rel[len("logs/"):]
    logs_root = root / "logs"
    full = resolve_in_workspace(logs_root, rel)
    content = str(tool_input.get("content", ""))
    if not content:
        return ToolOutput(ok=False, error="content required")
    if len(content) > MAX_LOG_CHARS:
        return ToolOutput(ok=False, error="content too large")
    line = content if tool_input.get("timestamp") is False else f"{utcnow_iso()} {content}"
    full.parent.mkdir(parents=True, exist_ok=True)
    with full.open("a", encoding="utf-8") as fh:
        fh.write(line + "\n")
    return ToolOutput(
        ok=True,
        data={"file": full.relative_to(root.resolve()).as_posix(), "size": full.stat().st_size},
    )


def _threaded(fn):
    async def handler(tool_input: dict[str, Any], ctx: ToolContext) -> ToolOutput:
        return await asyncio.to_thread(fn, Path(ctx.workspace_dir), tool_input)

    return handler


def _http_fetch(transport: httpx.AsyncBaseTransport | None, timeout_s: float):
    async def handler(tool_input: dict[str, Any], ctx: ToolContext) -> ToolOutput:
        url = str(tool_input.get("url", ""))
        if not url.startswith(("http://", "https://")):
            return ToolOutput(ok=False, error="url must be http(s)")
        method = str(tool_input.get("method") or "GET").upper()
        body = tool_input.get("body")
        async with httpx.AsyncClient(timeout=timeout_s, follow_redirects=True, transport=transport) as client:
            resp = await client.request(method, url, content=body if body else None)
        return ToolOutput(
            ok=resp.status_code < 400,
            data={"status": resp.status_code, "text": resp.text[:MAX_FETCH_CHARS]},
            error=None if resp.status_code < 400 else f"HTTP {resp.status_code}",
        )

    return handler


BUILTIN_SPECS: list[ToolSpec] = [
    ToolSpec(
        id="file.list.dir",
        title="List Directory",
        description="List files under a workspace directory, filtered by extension.",
        tags=["file", "list", "read"],
        domains=["files", "workspace"],
        side_effects="read",
        parameters=[
            ToolParameter(name="dir", description="Directory relative to the workspace", required=False),
            ToolParameter(name="exts", description="Comma-separated extensions", required=False),
            ToolParameter(name="max", type="integer", description="Maximum entries", required=False),
        ],
    ),
    ToolSpec(
        id="file.read.range",
        title="Read File Range",
        description="Read a byte range of a workspace file.",
        tags=["file", "read", "range"],
        domains=["files", "workspace"],
        side_effects="read",
        parameters=[
            ToolParameter(name="file", description="File relative to the workspace"),
            ToolParameter(name="start", type="integer", description="Byte offset", required=False),
            ToolParameter(name="bytes", type="integer", description="Bytes to read (max 64 KiB)", required=False),
        ],
    ),
    ToolSpec(
        id="file.write",
        title="Write File",
        description="Write or append text to a workspace file.",
        tags=["file", "write", "io"],
        domains=["files", "workspace"],
        side_effects="write",
        risk="med",
        parameters=[
            ToolParameter(name="file", description="File relative to the workspace"),
            ToolParameter(name="content", description="Text to write"),
            ToolParameter(name="append", type="boolean", description="Append instead of overwrite", required=False),
        ],
    ),
    ToolSpec(
        id="search.regex",
        title="Regex Search",
        description="Search workspace files line by line with a regular expression.",
        tags=["search", "regex", "code"],
        domains=["code", "search"],
        side_effects="read",
        parameters=[
            ToolParameter(name="pattern", description="Regular expression (case-insensitive)"),
            ToolParameter(name="glob", description="Substring the file path must contain", required=False),
        ],
    ),
    ToolSpec(
        id="log.append",
        title="Append Log",
        description="Append a line to a file under the workspace logs directory.",
        tags=["log", "write", "file"],
        domains=["logging", "ops"],
        side_effects="write",
        risk="med",
        parameters=[
            ToolParameter(name="file", description="Log file under logs/"),
            ToolParameter(name="content", description="Line to append"),
            ToolParameter(name="timestamp", type="boolean", description="Prefix a timestamp", required=False),
        ],
    ),
    ToolSpec(
        id="http.fetch",
        title="HTTP Fetch",
        description="Make an HTTP request and return status and body text.",
        tags=["http", "fetch", "web"],
        domains=["web", "network"],
        side_effects="network",
        risk="high",
        parameters=[
            ToolParameter(name="url", description="http(s) URL"),
            ToolParameter(name="method", description="HTTP method, default GET", required=False),
            ToolParameter(name="body", description="Request body", required=False),
        ],
    ),
]


def register_builtin_tools(
    registry: ToolRegistry,
    http_transport: httpx.AsyncBaseTransport | None = None,
    http_timeout_s: float = 30.0,
) -> None:
    """Register all built-in tools with the registry."""
    handlers = {
        "file.list.dir": _threaded(_list_dir),
        "file.read.range": _threaded(_read_range),
        "file.write": _threaded(_write_file),
        "search.regex": _threaded(_search_regex),
        "log.append": _threaded(_log_append),
        "http.fetch": _http_fetch(http_transport, http_timeout_s),
    }
    for spec in BUILTIN_SPECS:
        registry.register(spec, handlers[spec.id])
