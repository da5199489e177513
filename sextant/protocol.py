"""Chat-completion wire types: tool calls, assistant messages, token usage."""

import json
from dataclasses import dataclass, field

from .report import AgentError


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        fn = data.get("function") or {}
        arguments = fn.get("arguments")
        if arguments is None:
            arguments = ""
        elif not isinstance(arguments, str):
            # Some providers send already-decoded objects.
            arguments = json.dumps(arguments)
        name = fn.get("name")
        return cls(
            id=str(data.get("id") or ""),
            name=name if isinstance(name, str) else "",
            arguments=arguments,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ChatMessage:
    role: str
    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Conversation form of the message; tool_calls only when present."""
        msg: dict = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return msg


def _count(obj, key: str) -> int:
    value = obj.get(key) if isinstance(obj, dict) else None
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


@dataclass
class TokenUsage:
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0
    reasoning_output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_usage(cls, usage: dict) -> "TokenUsage":
        prompt = _count(usage, "prompt_tokens")
        completion = _count(usage, "completion_tokens")
        total = _count(usage, "total_tokens")
        prompt_details = usage.get("prompt_tokens_details")
        completion_details = usage.get("completion_tokens_details")
        return cls(
            input_tokens=prompt,
            cached_input_tokens=_count(prompt_details, "cached_tokens"),
            output_tokens=completion,
            reasoning_output_tokens=_count(completion_details, "reasoning_tokens"),
            total_tokens=total if total > 0 else prompt + completion,
        )

    def add(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.cached_input_tokens += other.cached_input_tokens
        self.output_tokens += other.output_tokens
        self.reasoning_output_tokens += other.reasoning_output_tokens
        self.total_tokens += other.total_tokens

    def to_event(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "cached_input_tokens": self.cached_input_tokens,
            "output_tokens": self.output_tokens,
            "reasoning_output_tokens": self.reasoning_output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class CompletionResult:
    message: ChatMessage
    usage: TokenUsage | None = None


def parse_completion(data: dict) -> CompletionResult:
    """Build a CompletionResult from a decoded response body.

    Only the first choice is used. Raises AgentError when there is none or
    when the message does not have the chat-completion shape.
    """
    if not isinstance(data, dict):
        raise AgentError("unexpected response body: expected a JSON object")
    choices = data.get("choices")
    if not choices:
        raise AgentError("no choices in response")
    if not isinstance(choices, list):
        raise AgentError("malformed response: 'choices' must be a list")
    first = choices[0]
    if not isinstance(first, dict):
        raise AgentError("malformed response: choice must be an object")
    raw = first.get("message")
    if raw is None:
        raw = {}
    elif not isinstance(raw, dict):
        raise AgentError("malformed response: 'message' must be an object")
    content = raw.get("content")
    if content is not None and not isinstance(content, str):
        raise AgentError("malformed response: message 'content' must be a string or null")
    raw_calls = raw.get("tool_calls")
    if raw_calls is None:
        raw_calls = []
    elif not isinstance(raw_calls, list):
        raise AgentError("malformed response: 'tool_calls' must be a list")
    for tc in raw_calls:
        if not isinstance(tc, dict) or not isinstance(tc.get("function"), dict):
            raise AgentError("malformed response: each tool call needs a 'function' object")
    message = ChatMessage(
        role=raw.get("role") or "assistant",
        content=content,
        tool_calls=[ToolCall.from_dict(tc) for tc in raw_calls],
    )
    usage = data.get("usage")
    return CompletionResult(
        message=message,
        usage=TokenUsage.from_usage(usage) if isinstance(usage, dict) else None,
    )
