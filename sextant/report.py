"""Error types and the JSONL event log that makes every run auditable."""

import json
import sys
from datetime import datetime, timezone
from pathlib import Path


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class TransportError(AgentError):
    """Raised when a chat-completion call fails for good.

    ``status`` is the final HTTP status, or None when the request never
    produced a response (connect failure, timeout, broken body).
    """

    def __init__(self, message: str, *, status: int | None = None, url: str = ""):
        super().__init__(message)
        self.status = status
        self.url = url


def _now() -> tuple[str, int]:
    now = datetime.now(timezone.utc)
    ts_ms = int(now.timestamp() * 1000)
    stamp = now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return stamp, ts_ms


class EventLog:
    """Append-only event stream written to any combination of sinks.

    Sinks:
      - ``log_path``: line-delimited JSON file, created exclusively and
        flushed after every event.
      - ``stream``: live JSONL on stdout as events occur.
      - ``buffer``: events kept in memory and written to stdout once, by
        ``emit_buffer()``, when the run is over.

    Each event gets ``timestamp`` (RFC 3339 UTC) and ``timestamp_ms`` unless
    the caller already set them.
    """

    def __init__(
        self,
        log_path: str | Path | None = None,
        *,
        stream: bool = False,
        buffer: bool = False,
        stream_out=None,
    ):
        self.log_path = Path(log_path) if log_path is not None else None
        self._file = None
        if self.log_path is not None:
            try:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigError(
                    f"failed to create log directory {self.log_path.parent}: {e}"
                ) from e
            try:
                self._file = self.log_path.open("x", encoding="utf-8")
            except OSError as e:
                raise ConfigError(
                    f"failed to create log file {self.log_path}: {e}"
                ) from e
        self._stream = stream
        self._stream_out = stream_out
        self.buffer: list[dict] | None = [] if buffer else None
        self._buffer_emitted = False
        self._next_item = 0

    def log_event(self, event: dict) -> dict:
        enriched = dict(event)
        stamp, ts_ms = _now()
        enriched.setdefault("timestamp_ms", ts_ms)
        enriched.setdefault("timestamp", stamp)
        line = json.dumps(enriched, ensure_ascii=False)

        if self.buffer is not None:
            self.buffer.append(enriched)

        if self._file is not None:
            self._file.write(line + "\n")
            self._file.flush()

        if self._stream:
            out = self._stream_out or sys.stdout
            out.write(line + "\n")
            out.flush()

        return enriched

    # -- Canonical events ----------------------------------------------------

    def next_item_id(self) -> str:
        item_id = f"item_{self._next_item}"
        self._next_item += 1
        return item_id

    def thread_started(self, thread_id: str) -> None:
        self.log_event({"type": "thread.started", "thread_id": thread_id})

    def turn_started(
        self, prompt: str, system_prompt: str, agents_instructions: str | None = None
    ) -> None:
        event = {"type": "turn.started", "prompt": prompt, "system_prompt": system_prompt}
        if agents_instructions is not None:
            event["agents_instructions"] = agents_instructions
        self.log_event(event)

    def turn_completed(self, usage: dict) -> None:
        self.log_event({"type": "turn.completed", "usage": usage})

    def turn_failed(self, message: str) -> None:
        self.log_event({"type": "turn.failed", "error": {"message": message}})

    def error(self, message: str) -> None:
        self.log_event({"type": "error", "message": message})

    def item_started(self, item: dict) -> None:
        self.log_event({"type": "item.started", "item": item})

    def item_completed(self, item: dict) -> None:
        self.log_event({"type": "item.completed", "item": item})

    def agent_message(self, text: str) -> None:
        self.item_completed(
            {"id": self.next_item_id(), "type": "agent_message", "text": text}
        )

    def warning(self, message: str) -> None:
        self.item_completed(
            {"id": self.next_item_id(), "type": "error", "message": message}
        )

    def emit_buffer(self, out=None) -> int:
        """Write buffered events to stdout (or ``out``). Only the first call writes.

        Returns the number of events written.
        """
        if self.buffer is None or self._buffer_emitted:
            return 0
        self._buffer_emitted = True
        out = out or sys.stdout
        for event in self.buffer:
            out.write(json.dumps(event, ensure_ascii=False) + "\n")
        out.flush()
        return len(self.buffer)

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def read_events(path: str | Path) -> list[dict]:
    """Load a JSONL event log back into a list of events (for replay and audit)."""
    events = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                events.append(json.loads(line))
    return events
