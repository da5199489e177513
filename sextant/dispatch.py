"""Single tool-call execution and its event-log classification."""

import json
import time

from . import fmt
from .protocol import ToolCall
from .report import EventLog
from .tools import ToolError, parse_patch_changes, tool_error

MULTIPLE_TOOL_CALLS_ERROR = "Multiple tool calls in one step are not supported."
MAX_ARG_LOG = 500
MAX_PREVIEW = 500


def parse_submit_answer(arguments: str) -> str:
    """Extract the ``answer`` string from submit arguments."""
    try:
        args = json.loads(arguments)
    except (json.JSONDecodeError, TypeError) as e:
        raise ToolError(f"invalid JSON in submit arguments: {e}") from e
    if not isinstance(args, dict) or not isinstance(args.get("answer"), str):
        raise ToolError("submit requires a string 'answer' argument")
    return args["answer"]


def command_string(name: str, arguments: str) -> str:
    """Human-readable command recorded on command_execution items."""
    if name == "shell_command":
        try:
            args = json.loads(arguments)
        except (json.JSONDecodeError, TypeError):
            args = None
        if isinstance(args, dict) and isinstance(args.get("command"), str):
            return f"bash -lc {args['command']}"
        return f"bash -lc {arguments}"
    if not arguments.strip():
        return f"tool:{name}"
    return f"tool:{name} {arguments}"


def parse_command_output(output: str) -> tuple[int, str] | None:
    """Return (exit_code, aggregated_output) for a command-style payload.

    Aggregated output is stdout, then stderr on its own line when stderr is
    not blank. Returns None for anything that is not a command result.
    """
    try:
        data = json.loads(output)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    exit_code = data.get("exit_code")
    if isinstance(exit_code, bool) or not isinstance(exit_code, int):
        return None
    aggregated = data.get("stdout") or ""
    stderr = data.get("stderr") or ""
    if stderr.strip():
        if aggregated:
            aggregated += "\n"
        aggregated += stderr
    return exit_code, aggregated


def output_is_error_json(output: str) -> bool:
    try:
        data = json.loads(output)
    except (json.JSONDecodeError, TypeError):
        return False
    return isinstance(data, dict) and "error" in data


def _patch_text(arguments: str) -> str:
    try:
        args = json.loads(arguments)
    except (json.JSONDecodeError, TypeError):
        return ""
    if isinstance(args, dict) and isinstance(args.get("patch"), str):
        return args["patch"]
    return ""


def _command_item(item_id, command, output, exit_code, status) -> dict:
    return {
        "id": item_id,
        "type": "command_execution",
        "command": command,
        "aggregated_output": output,
        "exit_code": exit_code,
        "status": status,
    }


def handle_tool_call(
    tool_call: ToolCall, executor, log: EventLog, verbose: bool = False
) -> tuple[dict, bool]:
    """Execute one tool call and return (tool_msg, succeeded).

    ``executor(name, arguments)`` returns the JSON payload or raises; any
    exception becomes an ``{"error": ...}`` payload so the run continues.
    """
    name = tool_call.name
    arguments = tool_call.arguments

    file_changes = None
    item_id = command = None
    if name == "apply_patch":
        file_changes = parse_patch_changes(_patch_text(arguments))
    else:
        item_id = log.next_item_id()
        command = command_string(name, arguments)
        log.item_started(_command_item(item_id, command, "", None, "in_progress"))

    if verbose:
        pretty = arguments
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(name, pretty)

    t0 = time.monotonic()
    try:
        content = executor(name, arguments)
        succeeded = True
    except Exception as e:
        content = tool_error(str(e))
        succeeded = False
    elapsed = time.monotonic() - t0

    if verbose:
        if not succeeded or output_is_error_json(content):
            fmt.tool_error(name, content[:MAX_PREVIEW])
        else:
            fmt.tool_result(name, elapsed, content[:MAX_PREVIEW])

    parsed = parse_command_output(content)
    if file_changes is not None:
        if parsed is not None:
            ok = parsed[0] == 0
        else:
            ok = succeeded and not output_is_error_json(content)
        log.item_completed(
            {
                "id": log.next_item_id(),
                "type": "file_change",
                "changes": file_changes,
                "status": "completed" if ok else "failed",
            }
        )
    elif name == "shell_command":
        if parsed is not None:
            exit_code, output = parsed
            ok = exit_code == 0
        else:
            exit_code, output, ok = None, content, succeeded
        log.item_completed(
            _command_item(
                item_id, command, output, exit_code, "completed" if ok else "failed"
            )
        )
    else:
        ok = succeeded and not output_is_error_json(content)
        log.item_completed(
            _command_item(
                item_id, command, content, 0 if ok else 1, "completed" if ok else "failed"
            )
        )

    tool_msg = {"role": "tool", "tool_call_id": tool_call.id, "content": content}
    return tool_msg, succeeded


def reject_extra_call(tool_call: ToolCall, log: EventLog) -> dict:
    """Answer a second-or-later call in one response without running it."""
    log.warning(MULTIPLE_TOOL_CALLS_ERROR)
    return {
        "role": "tool",
        "tool_call_id": tool_call.id,
        "content": tool_error(MULTIPLE_TOOL_CALLS_ERROR),
    }
