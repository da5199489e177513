"""Tests for the JSONL event log and error types."""

import json
import re
from io import StringIO

import pytest

from sextant.report import (
    AgentError,
    ConfigError,
    EventLog,
    TransportError,
    read_events,
)

_TS = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")


class TestErrors:
    def test_hierarchy(self):
        assert issubclass(ConfigError, AgentError)
        assert issubclass(TransportError, AgentError)

    def test_transport_error_fields(self):
        err = TransportError("boom", status=503, url="http://x")
        assert str(err) == "boom"
        assert err.status == 503
        assert err.url == "http://x"


class TestEventLogFile:
    def test_writes_jsonl_with_timestamps(self, tmp_path):
        path = tmp_path / "logs" / "run.jsonl"
        with EventLog(path) as log:
            log.log_event({"type": "thread.started", "thread_id": "t1"})
        events = read_events(path)
        assert len(events) == 1
        assert events[0]["type"] == "thread.started"
        assert _TS.match(events[0]["timestamp"])
        assert isinstance(events[0]["timestamp_ms"], int)

    def test_existing_timestamps_kept(self, tmp_path):
        path = tmp_path / "run.jsonl"
        with EventLog(path) as log:
            log.log_event({"type": "x", "timestamp": "fixed", "timestamp_ms": 1})
        event = read_events(path)[0]
        assert event["timestamp"] == "fixed"
        assert event["timestamp_ms"] == 1

    def test_existing_file_is_config_error(self, tmp_path):
        path = tmp_path / "run.jsonl"
        path.write_text("")
        with pytest.raises(ConfigError, match="failed to create log file"):
            EventLog(path)

    def test_flushed_per_event(self, tmp_path):
        path = tmp_path / "run.jsonl"
        log = EventLog(path)
        log.log_event({"type": "a"})
        assert len(path.read_text().splitlines()) == 1
        log.close()


class TestEventLogSinks:
    def test_stream(self):
        out = StringIO()
        log = EventLog(stream=True, stream_out=out)
        log.log_event({"type": "a"})
        log.log_event({"type": "b"})
        lines = out.getvalue().splitlines()
        assert [json.loads(line)["type"] for line in lines] == ["a", "b"]

    def test_buffer_emitted_once(self):
        log = EventLog(buffer=True)
        log.log_event({"type": "a"})
        out = StringIO()
        assert log.emit_buffer(out) == 1
        assert log.emit_buffer(out) == 0
        assert len(out.getvalue().splitlines()) == 1

    def test_buffer_disabled(self):
        log = EventLog()
        log.log_event({"type": "a"})
        assert log.emit_buffer(StringIO()) == 0

    def test_all_sinks_get_same_event(self, tmp_path):
        path = tmp_path / "run.jsonl"
        out = StringIO()
        with EventLog(path, stream=True, buffer=True, stream_out=out) as log:
            log.log_event({"type": "a"})
        from_file = read_events(path)[0]
        from_stream = json.loads(out.getvalue())
        assert from_file == from_stream == log.buffer[0]


class TestCanonicalEvents:
    def test_item_ids_increment(self):
        log = EventLog(buffer=True)
        log.agent_message("hello")
        log.warning("careful")
        items = [e["item"] for e in log.buffer]
        assert items[0] == {"id": "item_0", "type": "agent_message", "text": "hello"}
        assert items[1] == {"id": "item_1", "type": "error", "message": "careful"}

    def test_turn_events(self):
        log = EventLog(buffer=True)
        log.turn_started("task", "system")
        log.turn_started("task", "system", "notes")
        log.turn_failed("bad")
        log.error("bad")
        assert "agents_instructions" not in log.buffer[0]
        assert log.buffer[1]["agents_instructions"] == "notes"
        assert log.buffer[2]["error"] == {"message": "bad"}
        assert log.buffer[3] == {**log.buffer[3], "type": "error", "message": "bad"}
