"""Tests for tool-call dispatch and its event classification."""

import json

import pytest

from sextant.dispatch import (
    MULTIPLE_TOOL_CALLS_ERROR,
    command_string,
    handle_tool_call,
    output_is_error_json,
    parse_command_output,
    parse_submit_answer,
    reject_extra_call,
)
from sextant.protocol import ToolCall
from sextant.report import EventLog
from sextant.tools import ToolError


def _call(name, args, call_id="call_1"):
    arguments = args if isinstance(args, str) else json.dumps(args)
    return ToolCall(id=call_id, name=name, arguments=arguments)


def _items(log, event_type):
    return [e["item"] for e in log.buffer if e["type"] == event_type]


@pytest.fixture
def log():
    return EventLog(buffer=True)


class TestHelpers:
    def test_parse_submit_answer(self):
        assert parse_submit_answer('{"answer": "42"}') == "42"

    @pytest.mark.parametrize("arguments", ["not json", "{}", '{"answer": 3}', "[]"])
    def test_parse_submit_answer_invalid(self, arguments):
        with pytest.raises(ToolError):
            parse_submit_answer(arguments)

    def test_command_string_shell(self):
        assert command_string("shell_command", '{"command": "ls -la"}') == "bash -lc ls -la"

    def test_command_string_shell_unparsable(self):
        assert command_string("shell_command", "garbage") == "bash -lc garbage"

    def test_command_string_other(self):
        assert command_string("read_file", '{"file_path": "a"}') == 'tool:read_file {"file_path": "a"}'
        assert command_string("list_dir", "  ") == "tool:list_dir"

    def test_parse_command_output(self):
        payload = json.dumps({"exit_code": 1, "stdout": "out", "stderr": "err"})
        assert parse_command_output(payload) == (1, "out\nerr")

    def test_parse_command_output_blank_stderr(self):
        payload = json.dumps({"exit_code": 0, "stdout": "out", "stderr": "  \n"})
        assert parse_command_output(payload) == (0, "out")

    def test_parse_command_output_not_command(self):
        assert parse_command_output('{"error": "x"}') is None
        assert parse_command_output("plain") is None

    def test_output_is_error_json(self):
        assert output_is_error_json('{"error": "x"}')
        assert not output_is_error_json('{"ok": true}')
        assert not output_is_error_json("[1]")


class TestHandleToolCall:
    def test_shell_command_events(self, log):
        payload = json.dumps({"exit_code": 0, "stdout": "hi\n", "stderr": ""})
        msg, ok = handle_tool_call(
            _call("shell_command", {"command": "echo hi"}), lambda n, a: payload, log
        )
        assert ok
        assert msg == {"role": "tool", "tool_call_id": "call_1", "content": payload}
        started = _items(log, "item.started")[0]
        completed = _items(log, "item.completed")[0]
        assert started["status"] == "in_progress"
        assert started["command"] == "bash -lc echo hi"
        assert completed["id"] == started["id"]
        assert completed["exit_code"] == 0
        assert completed["aggregated_output"] == "hi\n"
        assert completed["status"] == "completed"

    def test_shell_command_nonzero_exit_fails(self, log):
        payload = json.dumps({"exit_code": 2, "stdout": "", "stderr": "bad"})
        handle_tool_call(_call("shell_command", {"command": "x"}), lambda n, a: payload, log)
        completed = _items(log, "item.completed")[0]
        assert completed["status"] == "failed"
        assert completed["exit_code"] == 2

    def test_executor_exception_becomes_error_payload(self, log):
        def boom(name, arguments):
            raise ToolError("disk on fire")

        msg, ok = handle_tool_call(_call("shell_command", {"command": "x"}), boom, log)
        assert not ok
        assert json.loads(msg["content"]) == {"error": "disk on fire"}
        completed = _items(log, "item.completed")[0]
        assert completed["status"] == "failed"
        assert completed["exit_code"] is None

    def test_generic_tool_success(self, log):
        handle_tool_call(_call("read_file", {"file_path": "a"}), lambda n, a: '{"lines": []}', log)
        completed = _items(log, "item.completed")[0]
        assert completed["type"] == "command_execution"
        assert completed["command"].startswith("tool:read_file ")
        assert completed["exit_code"] == 0
        assert completed["status"] == "completed"

    def test_generic_tool_error_payload(self, log):
        msg, ok = handle_tool_call(
            _call("read_file", {"file_path": "a", "offset": 0}),
            lambda n, a: '{"error": "invalid pagination"}',
            log,
        )
        assert ok
        completed = _items(log, "item.completed")[0]
        assert completed["exit_code"] == 1
        assert completed["status"] == "failed"

    def test_apply_patch_file_change(self, log):
        patch = "--- a/f.txt\n+++ b/f.txt\n@@ -1 +1 @@\n-a\n+b\n"
        payload = json.dumps({"strip_level": 1, "exit_code": 0, "stdout": "", "stderr": ""})
        handle_tool_call(_call("apply_patch", {"patch": patch}), lambda n, a: payload, log)
        assert _items(log, "item.started") == []
        item = _items(log, "item.completed")[0]
        assert item["type"] == "file_change"
        assert item["changes"] == [{"path": "f.txt", "kind": "update"}]
        assert item["status"] == "completed"

    def test_apply_patch_failure(self, log):
        payload = json.dumps({"strip_level": 0, "exit_code": 1, "stdout": "", "stderr": "rej"})
        handle_tool_call(_call("apply_patch", {"patch": ""}), lambda n, a: payload, log)
        assert _items(log, "item.completed")[0]["status"] == "failed"

    def test_executor_receives_raw_arguments(self, log):
        seen = []

        def executor(name, arguments):
            seen.append((name, arguments))
            return "{}"

        handle_tool_call(_call("list_dir", '{"dir_path": "."}'), executor, log)
        assert seen == [("list_dir", '{"dir_path": "."}')]


class TestRejectExtraCall:
    def test_rejects_without_running(self, log):
        msg = reject_extra_call(_call("read_file", {}, call_id="call_2"), log)
        assert msg["tool_call_id"] == "call_2"
        assert json.loads(msg["content"]) == {"error": MULTIPLE_TOOL_CALLS_ERROR}
        warning = _items(log, "item.completed")[0]
        assert warning == {"id": "item_0", "type": "error", "message": MULTIPLE_TOOL_CALLS_ERROR}
