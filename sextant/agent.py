"""Turn engine and CLI entry point for sextant."""

import argparse
import sys
import time
import uuid
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import _UNSET, apply_config_to_args, args_to_agent_config, load_config
from .conversation import ConversationState, estimate_tokens
from .dispatch import handle_tool_call, parse_submit_answer, reject_extra_call
from .prompt import DEFAULT_CONTINUE_MESSAGE, build_system_prompt, load_task
from .protocol import ChatMessage, TokenUsage
from .report import AgentError, EventLog
from .tools import ToolError, resolve_path, tool_error

CONTEXT_EXCEEDED_MESSAGE = "Terminated: context length exceeded."


def is_context_error(message: str) -> bool:
    """Whether a failure message reports a context-window overflow."""
    msg = message.lower()
    return "context" in msg and "length" in msg


def _format_seconds(value: float) -> str:
    return f"{value:g}"


class Agent:
    """Drives one task through model turns and tool calls.

    Each step sends the whole conversation, executes at most one tool call
    from the reply, and repeats until an answer, a submit, or a budget
    ends the run. ``outcome`` records how the run ended.
    """

    def __init__(
        self,
        client,
        log: EventLog,
        *,
        model: str,
        cwd: Path,
        tools: list[dict],
        executor,
        submit_enabled: bool = False,
        web_search: bool = False,
        max_steps: int | None = None,
        time_limit: float | None = None,
        temperature: float | None = None,
        verbose: bool = False,
        clock=time.monotonic,
        thread_id: str | None = None,
    ):
        self.client = client
        self.log = log
        self.model = model
        self.cwd = Path(cwd)
        self.tools = tools
        self.executor = executor
        self.submit_enabled = submit_enabled
        self.web_search = web_search
        self.max_steps = max_steps
        self.time_limit = time_limit
        self.temperature = temperature
        self.verbose = verbose
        self._clock = clock
        self.thread_id = thread_id or str(uuid.uuid4())

        self.conversation = ConversationState()
        self.usage = TokenUsage()
        self.steps = 0
        self.outcome: str | None = None

    def build_request(self) -> dict:
        body = {
            "model": self.model,
            "messages": self.conversation.snapshot(),
            "tools": self.tools,
            "tool_choice": "auto",
            "parallel_tool_calls": False,
        }
        if self.temperature is not None:
            body["temperature"] = self.temperature
        return body

    def _terminate(self, outcome: str, message: str) -> str:
        self.log.warning(message)
        self.log.turn_completed(self.usage.to_event())
        self.outcome = outcome
        if self.verbose:
            fmt.warning(message)
        return message

    def _fail(self, exc: Exception) -> None:
        message = str(exc)
        self.log.error(message)
        self.log.turn_failed(message)
        self.outcome = "failed"

    def _recover_context(self):
        """Prune and resend until a request fits.

        Returns the completion, or None once pruning stops shrinking the
        conversation.
        """
        last_len = len(self.conversation)
        while True:
            self.conversation.prune()
            new_len = len(self.conversation)
            if new_len >= last_len:
                return None
            if self.verbose:
                fmt.pruned(last_len, new_len)
            last_len = new_len
            try:
                return self.client.send(self.build_request())
            except Exception as e:
                if is_context_error(str(e)):
                    continue
                self._fail(e)
                raise

    def _submit(self, tool_call, extra_calls) -> str | None:
        """Handle a submit call. Returns the answer, or None after a bad call."""
        try:
            answer = parse_submit_answer(tool_call.arguments)
        except ToolError as e:
            self.log.warning(f"submit rejected: {e}")
            self.conversation.append(
                {"role": "tool", "tool_call_id": tool_call.id, "content": tool_error(str(e))}
            )
            for extra in extra_calls:
                self.conversation.append(reject_extra_call(extra, self.log))
            return None
        if answer.strip():
            self.log.agent_message(answer)
        self.log.turn_completed(self.usage.to_event())
        self.outcome = "submitted"
        return answer

    def run(self, task: str) -> str:
        """Run ``task`` to completion and return the final text.

        Budget terminations return their termination message. Fatal
        failures are logged as ``error`` and ``turn.failed`` and re-raised.
        """
        start = self._clock()
        system_prompt, agents_text = build_system_prompt(
            self.cwd,
            self.max_steps,
            self.time_limit,
            self.submit_enabled,
            self.web_search,
            self.verbose,
        )
        self.log.thread_started(self.thread_id)
        self.log.turn_started(task, system_prompt, agents_text)
        self.conversation.seed(system_prompt, task)

        while True:
            if self.max_steps is not None and self.steps >= self.max_steps:
                return self._terminate(
                    "max_steps", f"Terminated: max_steps ({self.max_steps}) reached."
                )
            if self.time_limit is not None and self._clock() - start >= self.time_limit:
                return self._terminate(
                    "time_limit",
                    f"Terminated: time_limit ({_format_seconds(self.time_limit)}s) reached.",
                )

            self.steps += 1
            if self.verbose:
                fmt.step_header(
                    self.steps,
                    self.max_steps,
                    estimate_tokens(self.conversation.messages, self.tools),
                )

            t0 = time.monotonic()
            try:
                completion = self.client.send(self.build_request())
            except Exception as e:
                if not is_context_error(str(e)):
                    self._fail(e)
                    raise
                completion = self._recover_context()
                if completion is None:
                    return self._terminate("context_exhausted", CONTEXT_EXCEEDED_MESSAGE)
            elapsed = time.monotonic() - t0

            message = completion.message
            tool_calls = message.tool_calls
            if self.verbose:
                fmt.llm_timing(elapsed, len(tool_calls))

            self.conversation.append(
                ChatMessage("assistant", message.content, tool_calls).to_dict()
            )
            text = message.content or ""
            if text.strip():
                self.log.agent_message(text)
                if self.verbose:
                    fmt.assistant_text(text)
            if completion.usage is not None:
                self.usage.add(completion.usage)

            if tool_calls:
                first, extra = tool_calls[0], tool_calls[1:]
                if first.name == "submit" and self.submit_enabled:
                    answer = self._submit(first, extra)
                    if answer is not None:
                        return answer
                    continue

                tool_msg, _ = handle_tool_call(first, self.executor, self.log, self.verbose)
                self.conversation.append(tool_msg)
                for call in extra:
                    self.conversation.append(reject_extra_call(call, self.log))
                continue

            if self.submit_enabled:
                self.conversation.append({"role": "user", "content": DEFAULT_CONTINUE_MESSAGE})
                continue

            self.log.turn_completed(self.usage.to_event())
            self.outcome = "answered"
            return text


# -- CLI ---------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="sextant",
        usage="%(prog)s [options] <prompt>\n       %(prog)s [options] --prompt-file FILE",
        description="A single-task coding agent for OpenAI-compatible chat completion APIs.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "prompt", nargs="?", default=None, help="The task for the model."
    )
    parser.add_argument(
        "--prompt-file",
        metavar="FILE",
        default=None,
        help="Read the task from FILE. Enables the submit tool unless --no-submit.",
    )
    parser.add_argument(
        "--cwd",
        metavar="DIR",
        default=None,
        help="Working directory for tools (default: current directory).",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model identifier (default: openai/gpt-4.1-mini, or $SEXTANT_DEFAULT_MODEL).",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key (default: $OPENROUTER_API_KEY).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="API base URL (default: https://openrouter.ai/api/v1).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--max-steps",
        type=int,
        default=_UNSET,
        help="Maximum number of model turns (default: unlimited).",
    )
    parser.add_argument(
        "--time-limit-sec",
        type=float,
        default=_UNSET,
        help="Wall-clock limit in seconds, checked between steps (default: unlimited).",
    )
    parser.add_argument(
        "--log-dir",
        metavar="DIR",
        default=_UNSET,
        help="Directory for the JSONL event log (default: working directory).",
    )
    parser.add_argument(
        "--log-path",
        metavar="FILE",
        default=None,
        help="Exact path of the JSONL event log. Must not exist.",
    )

    output_group = parser.add_mutually_exclusive_group()
    output_group.add_argument(
        "--json",
        action="store_true",
        help="Print all events as JSONL on stdout when the run ends.",
    )
    output_group.add_argument(
        "--stream-json",
        action="store_true",
        help="Print events as JSONL on stdout as they happen.",
    )

    parser.add_argument(
        "--max-tool-output-chars",
        type=int,
        default=_UNSET,
        help="Truncate tool stdout/stderr to this many characters (default: 8000).",
    )

    submit_group = parser.add_mutually_exclusive_group()
    submit_group.add_argument(
        "--exec",
        action="store_true",
        help="Enable the submit tool even for an inline prompt.",
    )
    submit_group.add_argument(
        "--no-submit",
        action="store_true",
        help="Disable the submit tool even with --prompt-file.",
    )

    parser.add_argument(
        "--retry-429",
        action="store_true",
        default=_UNSET,
        help="Retry HTTP 429 responses even without a Retry-After header.",
    )
    parser.add_argument(
        "--enable-search",
        "--search",
        dest="web_search",
        action="store_true",
        default=_UNSET,
        help="Enable web tools: web_search (Tavily), web_open, web_find.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress diagnostics on stderr.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def submit_enabled_for(args) -> bool:
    if args.exec:
        return True
    if args.no_submit:
        return False
    return args.prompt_file is not None


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("sextant")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.prompt is not None and args.prompt_file is not None:
        parser.error("a prompt and --prompt-file are mutually exclusive")
    if args.prompt is None and args.prompt_file is None:
        parser.error("a prompt or --prompt-file is required")

    try:
        result = _run_main(args, parser)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)

    if not (args.json or args.stream_json):
        print(result.answer)
    if result.exhausted:
        sys.exit(2)


def _run_main(args, parser):
    from .session import default_log_path, run

    cwd = Path(args.cwd).resolve() if args.cwd else Path.cwd()
    apply_config_to_args(args, load_config(cwd))
    fmt.init(color=args.color, no_color=args.no_color)

    if args.max_steps is not None and args.max_steps < 0:
        parser.error("--max-steps must be >= 0")
    if args.time_limit_sec is not None and args.time_limit_sec < 0:
        parser.error("--time-limit-sec must be >= 0")
    if args.max_tool_output_chars < 1:
        parser.error("--max-tool-output-chars must be >= 1")

    config = args_to_agent_config(args, cwd=cwd, submit_enabled=submit_enabled_for(args))
    task = load_task(args.prompt, args.prompt_file)

    if args.log_path:
        log_path = resolve_path(cwd, args.log_path)
    else:
        log_dir = resolve_path(cwd, args.log_dir) if args.log_dir else None
        log_path = default_log_path(log_dir, cwd, config.session_id)
    with EventLog(log_path, stream=args.stream_json, buffer=args.json) as log:
        if config.verbose:
            fmt.info(f"Event log: {log.log_path}")
        return run(task, config, log=log)
