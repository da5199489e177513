"""Conversation state and context-window recovery by pruning."""

import copy
import functools
import json

PRUNE_FRACTION = 3  # drop roughly the oldest third of the post-task tail


def _role(msg) -> str | None:
    return msg.get("role") if isinstance(msg, dict) else getattr(msg, "role", None)


def tool_call_ids(msg: dict) -> set[str]:
    """Return the ids of all tool calls issued by an assistant message."""
    ids = set()
    for tc in msg.get("tool_calls") or []:
        tc_id = tc.get("id") if isinstance(tc, dict) else getattr(tc, "id", None)
        if tc_id is not None:
            ids.add(tc_id)
    return ids


def prune_messages(messages: list[dict]) -> list[dict]:
    """Drop the oldest chunk of the conversation after the task message.

    System messages and the first user message (the task) are always kept.
    The cut lands on a user-message boundary when one exists at or after the
    default cut point, and tool results whose call was cut away are dropped.
    With no user message at all, the input is returned unchanged.
    """
    system = [m for m in messages if _role(m) == "system"]
    non_system = [m for m in messages if _role(m) != "system"]

    task_idx = next(
        (i for i, m in enumerate(non_system) if _role(m) == "user"), None
    )
    if task_idx is None:
        return system + non_system

    task_msg = non_system[task_idx]
    rest = non_system[task_idx + 1 :]

    cut_idx = len(rest) // PRUNE_FRACTION
    for i in range(cut_idx, len(rest)):
        if _role(rest[i]) == "user":
            cut_idx = i
            break

    preserved = [task_msg] + rest[cut_idx:]

    valid = []
    active_ids: set[str] = set()
    for msg in preserved:
        role = _role(msg)
        if role == "assistant":
            active_ids = tool_call_ids(msg)
            valid.append(msg)
        elif role == "tool":
            if msg.get("tool_call_id") in active_ids:
                valid.append(msg)
        elif role == "user":
            active_ids = set()
            valid.append(msg)
        else:
            valid.append(msg)

    return system + valid


class ConversationState:
    """Ordered message log for one task.

    Only the turn engine appends; ``prune()`` replaces the whole sequence.
    Request bodies are built from ``snapshot()`` so the transport never sees
    the live list.
    """

    def __init__(self, messages: list[dict] | None = None):
        self.messages: list[dict] = list(messages or [])

    def __len__(self) -> int:
        return len(self.messages)

    def append(self, message: dict) -> None:
        self.messages.append(message)

    def seed(self, system_prompt: str, task: str) -> None:
        self.messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": task},
        ]

    def snapshot(self) -> list[dict]:
        return copy.deepcopy(self.messages)

    def prune(self) -> bool:
        """Prune in place. Returns True if the conversation got shorter."""
        before = len(self.messages)
        self.messages = prune_messages(self.messages)
        return len(self.messages) < before


@functools.lru_cache(maxsize=1)
def _encoder():
    import tiktoken

    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Rough token count for console diagnostics; never used for control flow."""
    enc = _encoder()
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(enc.encode(content))
    if tools:
        total += len(enc.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total
