"""Tool definitions and implementations for the agent."""

import fnmatch
import json
import os
import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

DEFAULT_MAX_TOOL_OUTPUT_CHARS = 8000
DEFAULT_READ_LIMIT = 200
DEFAULT_LIST_LIMIT = 200
DEFAULT_GREP_LIMIT = 100

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


class ToolError(Exception):
    """A tool could not do its job. Dispatch turns it into an error payload."""


@dataclass
class ToolContext:
    cwd: Path
    max_output_chars: int = DEFAULT_MAX_TOOL_OUTPUT_CHARS
    web_search: bool = False


# Some providers insist that `required` lists every key in `properties`, so
# optional parameters are nullable and still listed as required.

SHELL_COMMAND_TOOL = {
    "type": "function",
    "function": {
        "name": "shell_command",
        "description": "Runs a shell command and returns its output.",
        "parameters": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute.",
                },
                "workdir": {
                    "type": ["string", "null"],
                    "description": "Working directory for the command.",
                },
                "timeout_ms": {
                    "type": ["number", "null"],
                    "description": "Timeout in milliseconds.",
                },
                "max_output_chars": {
                    "type": ["number", "null"],
                    "description": "Maximum output characters to return.",
                },
            },
            "required": ["command", "workdir", "timeout_ms", "max_output_chars"],
            "additionalProperties": False,
        },
    },
}

READ_FILE_TOOL = {
    "type": "function",
    "function": {
        "name": "read_file",
        "description": "Reads a paginated range of lines from a file.",
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Path to the file to read.",
                },
                "offset": {
                    "type": ["integer", "null"],
                    "minimum": 1,
                    "default": 1,
                    "description": "1-indexed start line (>= 1).",
                },
                "limit": {
                    "type": ["integer", "null"],
                    "minimum": 1,
                    "default": DEFAULT_READ_LIMIT,
                    "description": "Maximum number of lines to return (>= 1).",
                },
            },
            "required": ["file_path", "offset", "limit"],
            "additionalProperties": False,
        },
    },
}

LIST_DIR_TOOL = {
    "type": "function",
    "function": {
        "name": "list_dir",
        "description": "Lists directory entries with pagination and depth control.",
        "parameters": {
            "type": "object",
            "properties": {
                "dir_path": {
                    "type": "string",
                    "description": "Path to the directory to list.",
                },
                "offset": {
                    "type": ["integer", "null"],
                    "minimum": 1,
                    "default": 1,
                    "description": "1-indexed start entry (>= 1).",
                },
                "limit": {
                    "type": ["integer", "null"],
                    "minimum": 1,
                    "default": DEFAULT_LIST_LIMIT,
                    "description": "Maximum number of entries to return (>= 1).",
                },
                "depth": {
                    "type": ["integer", "null"],
                    "minimum": 1,
                    "default": 1,
                    "description": "Maximum directory depth to traverse (>= 1).",
                },
            },
            "required": ["dir_path", "offset", "limit", "depth"],
            "additionalProperties": False,
        },
    },
}

GREP_FILES_TOOL = {
    "type": "function",
    "function": {
        "name": "grep_files",
        "description": "Searches files for a pattern and returns matching lines.",
        "parameters": {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Python regex pattern to search for (escape metacharacters for literal matches).",
                },
                "path": {
                    "type": ["string", "null"],
                    "description": "Root path to search.",
                },
                "include": {
                    "type": ["string", "null"],
                    "description": "Optional glob filter for files (matched against path relative to root).",
                },
                "limit": {
                    "type": ["integer", "null"],
                    "minimum": 1,
                    "default": DEFAULT_GREP_LIMIT,
                    "description": "Maximum number of matches to return (>= 1).",
                },
            },
            "required": ["pattern", "path", "include", "limit"],
            "additionalProperties": False,
        },
    },
}

APPLY_PATCH_TOOL = {
    "type": "function",
    "function": {
        "name": "apply_patch",
        "description": "Applies a unified diff patch.",
        "parameters": {
            "type": "object",
            "properties": {
                "patch": {"type": "string", "description": "Unified diff to apply."}
            },
            "required": ["patch"],
            "additionalProperties": False,
        },
    },
}

WEB_SEARCH_TOOL = {
    "type": "function",
    "function": {
        "name": "web_search",
        "description": "Searches the web and returns result titles, URLs and snippets.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query."},
                "max_results": {
                    "type": ["integer", "null"],
                    "minimum": 1,
                    "default": 5,
                    "description": "Maximum number of results (>= 1).",
                },
            },
            "required": ["query", "max_results"],
            "additionalProperties": False,
        },
    },
}

WEB_OPEN_TOOL = {
    "type": "function",
    "function": {
        "name": "web_open",
        "description": "Opens a web page and returns a paginated range of its text lines.",
        "parameters": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "http(s) URL to open."},
                "offset": {
                    "type": ["integer", "null"],
                    "minimum": 1,
                    "default": 1,
                    "description": "1-indexed start line (>= 1).",
                },
                "limit": {
                    "type": ["integer", "null"],
                    "minimum": 1,
                    "default": DEFAULT_READ_LIMIT,
                    "description": "Maximum number of lines to return (>= 1).",
                },
            },
            "required": ["url", "offset", "limit"],
            "additionalProperties": False,
        },
    },
}

WEB_FIND_TOOL = {
    "type": "function",
    "function": {
        "name": "web_find",
        "description": "Searches the text of a web page for a regex pattern.",
        "parameters": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "http(s) URL to search."},
                "pattern": {
                    "type": "string",
                    "description": "Python regex pattern (case-insensitive).",
                },
                "max_results": {
                    "type": ["integer", "null"],
                    "minimum": 1,
                    "default": 20,
                    "description": "Maximum number of matches (>= 1).",
                },
                "context_lines": {
                    "type": ["integer", "null"],
                    "minimum": 0,
                    "default": 0,
                    "description": "Lines of context around each match (>= 0).",
                },
            },
            "required": ["url", "pattern", "max_results", "context_lines"],
            "additionalProperties": False,
        },
    },
}

SUBMIT_TOOL = {
    "type": "function",
    "function": {
        "name": "submit",
        "description": "Signals completion and returns the final answer.",
        "parameters": {
            "type": "object",
            "properties": {"answer": {"type": "string", "description": "Final answer."}},
            "required": ["answer"],
            "additionalProperties": False,
        },
    },
}

TOOLS = [
    SHELL_COMMAND_TOOL,
    READ_FILE_TOOL,
    LIST_DIR_TOOL,
    GREP_FILES_TOOL,
    APPLY_PATCH_TOOL,
]

WEB_TOOLS = [WEB_SEARCH_TOOL, WEB_OPEN_TOOL, WEB_FIND_TOOL]


def build_tools(submit_enabled: bool, web_search: bool = False) -> list[dict]:
    """Return the tool schemas sent with every request."""
    tools = list(TOOLS)
    if web_search:
        tools.extend(WEB_TOOLS)
    if submit_enabled:
        tools.append(SUBMIT_TOOL)
    return tools


def tool_error(message: str) -> str:
    return json.dumps({"error": message})


def truncate(value: str, limit: int) -> tuple[str, bool]:
    """Cut ``value`` to ``limit`` characters. Returns (text, was_truncated)."""
    if len(value) <= limit:
        return value, False
    return value[:limit] + "\n...[truncated]...", True


def resolve_path(cwd: Path, path: str | Path) -> Path:
    path = Path(path)
    return path if path.is_absolute() else Path(cwd) / path


def _opt_int(args: dict, key: str, default: int | None) -> int | None:
    value = args.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ToolError(f"{key} must be a number, got {type(value).__name__}")
    return int(value)


def _req_str(args: dict, key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str):
        raise ToolError(f"missing or invalid required argument {key!r}")
    return value


# -- shell_command -----------------------------------------------------------


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    The process runs in its own session, so the whole group goes on Unix.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def run_shell_command(args: dict, ctx: ToolContext) -> str:
    command = _req_str(args, "command")
    workdir = resolve_path(ctx.cwd, args.get("workdir") or ctx.cwd)
    timeout_ms = _opt_int(args, "timeout_ms", None)
    limit = _opt_int(args, "max_output_chars", ctx.max_output_chars)

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=workdir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    try:
        proc = subprocess.Popen(["bash", "-lc", command], **popen_kwargs)
    except OSError as e:
        raise ToolError(f"failed to spawn shell command in {workdir}: {e}") from e

    timed_out = False
    timeout = timeout_ms / 1000 if timeout_ms is not None else None
    try:
        out, err = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)
        out, err = proc.communicate()

    stdout, stdout_truncated = truncate(out.decode("utf-8", errors="replace"), limit)
    stderr, stderr_truncated = truncate(err.decode("utf-8", errors="replace"), limit)
    return json.dumps(
        {
            "exit_code": proc.returncode if proc.returncode is not None else -1,
            "stdout": stdout,
            "stderr": stderr,
            "timed_out": timed_out,
            "truncated": stdout_truncated or stderr_truncated,
        }
    )


# -- read_file / list_dir / grep_files ---------------------------------------


def read_file(args: dict, ctx: ToolContext) -> str:
    offset = _opt_int(args, "offset", 1)
    limit = min(_opt_int(args, "limit", DEFAULT_READ_LIMIT), DEFAULT_READ_LIMIT)
    if offset < 1 or limit < 1:
        return tool_error(
            "invalid pagination: read_file.offset and read_file.limit must be >= 1 "
            "(offset is 1-indexed)"
        )

    path = resolve_path(ctx.cwd, _req_str(args, "file_path"))
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise ToolError(f"failed to read file {path}: {e}") from e
    lines = content.splitlines()
    total = len(lines)
    if offset > total:
        return tool_error(f"offset ({offset}) is beyond total lines ({total})")
    end = min(offset + limit - 1, total)
    numbered = [f"{i}: {lines[i - 1]}" for i in range(offset, end + 1)]
    return json.dumps(
        {
            "file_path": str(path),
            "total_lines": total,
            "start_line": offset,
            "end_line": end,
            "lines": numbered,
        }
    )


def list_dir(args: dict, ctx: ToolContext) -> str:
    offset = _opt_int(args, "offset", 1)
    limit = min(_opt_int(args, "limit", DEFAULT_LIST_LIMIT), DEFAULT_LIST_LIMIT)
    depth = _opt_int(args, "depth", 1)
    if offset < 1 or limit < 1 or depth < 1:
        return tool_error(
            "invalid pagination: list_dir.offset, list_dir.limit, and list_dir.depth "
            "must be >= 1 (offset is 1-indexed)"
        )

    root = resolve_path(ctx.cwd, _req_str(args, "dir_path"))
    if not root.is_dir():
        raise ToolError(f"not a directory: {root}")

    entries = []
    base_depth = len(root.parts)
    for dirpath, dirnames, filenames in os.walk(root):
        level = len(Path(dirpath).parts) - base_depth + 1
        for name in dirnames:
            entries.append({"path": str(Path(dirpath) / name), "type": "dir"})
        for name in filenames:
            entries.append({"path": str(Path(dirpath) / name), "type": "file"})
        if level >= depth:
            dirnames[:] = []
    entries.sort(key=lambda e: e["path"])

    total = len(entries)
    if offset > total and total > 0:
        return tool_error(f"offset ({offset}) is beyond total entries ({total})")
    end = min(offset + limit - 1, total)
    page = entries[offset - 1 : end] if total else []
    return json.dumps(
        {
            "dir_path": str(root),
            "total_entries": total,
            "start_index": offset if total else 0,
            "end_index": end if total else 0,
            "entries": page,
        }
    )


def _glob_match(rel: str, pattern: str) -> bool:
    """Match a root-relative posix path against an include glob.

    Bare patterns like "*.py" match the file name at any depth, and a
    leading "**/" also matches files directly under the root.
    """
    if fnmatch.fnmatch(rel, pattern):
        return True
    if "/" not in pattern:
        return fnmatch.fnmatch(rel.rsplit("/", 1)[-1], pattern)
    if pattern.startswith("**/"):
        return fnmatch.fnmatch(rel, pattern[3:])
    return False


def _iter_files(root: Path):
    if root.is_file():
        yield root
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            yield Path(dirpath) / name


def grep_files(args: dict, ctx: ToolContext) -> str:
    limit = min(_opt_int(args, "limit", DEFAULT_GREP_LIMIT), DEFAULT_GREP_LIMIT)
    if limit < 1:
        return tool_error("invalid limit: grep_files.limit must be >= 1")

    pattern_text = _req_str(args, "pattern")
    try:
        pattern = re.compile(pattern_text)
    except re.error as e:
        return tool_error(
            f"invalid regex pattern: {pattern_text}: {e} (tip: escape metacharacters "
            f'for literal matches, e.g. "main\\\\(" to match "main(")'
        )

    include = args.get("include")
    root = resolve_path(ctx.cwd, args.get("path") or ctx.cwd)

    matches = []
    truncated = False
    for path in _iter_files(root):
        if include:
            try:
                rel = path.relative_to(root).as_posix()
            except ValueError:
                rel = path.name
            if not _glob_match(rel or path.name, include):
                continue
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        for lineno, line in enumerate(content.splitlines(), 1):
            if pattern.search(line):
                matches.append({"path": str(path), "line": lineno, "text": line})
                if len(matches) >= limit:
                    truncated = True
                    break
        if truncated:
            break

    return json.dumps(
        {
            "pattern": pattern_text,
            "root": str(root),
            "matches": matches,
            "truncated": truncated,
        }
    )


# -- apply_patch -------------------------------------------------------------


def detect_patch_strip_level(patch: str) -> int:
    """1 for git-style a/ b/ prefixed paths, else 0."""
    for line in patch.splitlines():
        if line.startswith("diff --git a/"):
            return 1
        if line.startswith(("--- a/", "+++ a/", "--- b/", "+++ b/")):
            return 1
    return 0


def _strip_patch_prefix(path: str) -> str:
    path = path.strip()
    if path == "/dev/null":
        return ""
    # "--- a/file.txt\t2024-01-01 ..." carries a timestamp after a tab
    path = path.split("\t", 1)[0]
    for prefix in ("a/", "b/"):
        if path.startswith(prefix):
            return path[len(prefix) :]
    return path


def parse_patch_changes(patch: str) -> list[dict]:
    """List the files a unified diff touches as {path, kind} entries."""
    changes = []
    seen = set()
    old_path = None
    for line in patch.splitlines():
        if line.startswith("--- "):
            old_path = line[4:].strip()
            continue
        if line.startswith("+++ ") and old_path is not None:
            new_path = line[4:].strip()
            if old_path.split("\t", 1)[0] == "/dev/null":
                kind, raw = "add", new_path
            elif new_path.split("\t", 1)[0] == "/dev/null":
                kind, raw = "delete", old_path
            else:
                kind, raw = "update", new_path
            old_path = None
            path = _strip_patch_prefix(raw)
            if path and path not in seen:
                seen.add(path)
                changes.append({"path": path, "kind": kind})
    return changes


def apply_patch(args: dict, ctx: ToolContext) -> str:
    patch = _req_str(args, "patch")
    strip_level = detect_patch_strip_level(patch)
    try:
        proc = subprocess.run(
            ["patch", f"-p{strip_level}"],
            input=patch.encode("utf-8"),
            capture_output=True,
            cwd=ctx.cwd,
        )
    except OSError as e:
        raise ToolError(f"failed to spawn patch command: {e}") from e

    stdout, stdout_truncated = truncate(
        proc.stdout.decode("utf-8", errors="replace"), ctx.max_output_chars
    )
    stderr, stderr_truncated = truncate(
        proc.stderr.decode("utf-8", errors="replace"), ctx.max_output_chars
    )
    return json.dumps(
        {
            "strip_level": strip_level,
            "exit_code": proc.returncode,
            "stdout": stdout,
            "stderr": stderr,
            "truncated": stdout_truncated or stderr_truncated,
        }
    )


# -- Dispatch ----------------------------------------------------------------


def execute_tool(name: str, arguments: str, ctx: ToolContext) -> str:
    """Run one tool and return its JSON payload.

    Raises ToolError (or whatever the tool raises) on failure. Unknown tools
    and bad pagination come back as ``{"error": ...}`` payloads instead.
    """
    try:
        args = json.loads(arguments) if arguments.strip() else {}
    except json.JSONDecodeError as e:
        raise ToolError(f"invalid JSON in tool arguments: {e}") from e
    if not isinstance(args, dict):
        raise ToolError("tool arguments must be a JSON object")

    if name == "shell_command":
        return run_shell_command(args, ctx)
    elif name == "read_file":
        return read_file(args, ctx)
    elif name == "list_dir":
        return list_dir(args, ctx)
    elif name == "grep_files":
        return grep_files(args, ctx)
    elif name == "apply_patch":
        return apply_patch(args, ctx)
    elif ctx.web_search and name in ("web_search", "web_open", "web_find"):
        from . import fetch

        return getattr(fetch, name)(args, ctx)
    return tool_error(f"Unknown tool: {name}")
