"""Public library API for sextant: run one task to completion."""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from . import fmt
from .config import AgentConfig
from .fetch import tavily_api_key
from .protocol import TokenUsage
from .report import ConfigError, EventLog
from .tools import ToolContext, build_tools, execute_tool
from .transport import ChatClient


@dataclass
class Result:
    """Result of a run."""

    answer: str
    outcome: str
    steps: int
    usage: TokenUsage

    @property
    def exhausted(self) -> bool:
        return self.outcome in ("max_steps", "time_limit", "context_exhausted")


def default_log_path(
    log_dir: str | Path | None, cwd: str | Path, session_id: str | None = None
) -> Path:
    """<log_dir or cwd>/sextant-<utc timestamp>-<session id>.jsonl"""
    stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
    stamp = stamp.replace("+00:00", "Z").replace(":", "-")
    base = Path(log_dir) if log_dir is not None else Path(cwd)
    return base / f"sextant-{stamp}-{session_id or uuid.uuid4()}.jsonl"


def check_web_search(config: AgentConfig) -> None:
    if config.web_search and not tavily_api_key():
        raise ConfigError(
            "--search is enabled but no Tavily API key was found. "
            "Set TAVILY_API_KEY (or SEXTANT_TAVILY_API_KEY)."
        )


def run(task: str, config: AgentConfig, *, log: EventLog | None = None, client=None) -> Result:
    """Run ``task`` with ``config`` and return the Result.

    Events go to ``log`` (a fresh file log in ``config.cwd`` when omitted).
    A buffered log is flushed to stdout whether the run succeeds or fails.
    Raises AgentError on a fatal failure.
    """
    from .agent import Agent

    check_web_search(config)
    cwd = Path(config.cwd)
    if not cwd.is_dir():
        raise ConfigError(f"working directory does not exist: {cwd}")

    own_log = log is None
    if own_log:
        log = EventLog(default_log_path(None, cwd, config.session_id))

    if client is None:
        client = ChatClient(
            config.base_url,
            config.api_key,
            retry_429=config.retry_429,
            verbose=config.verbose,
        )
    ctx = ToolContext(
        cwd=cwd,
        max_output_chars=config.max_tool_output_chars,
        web_search=config.web_search,
    )
    agent = Agent(
        client,
        log,
        model=config.model,
        cwd=cwd,
        tools=build_tools(config.submit_enabled, config.web_search),
        executor=lambda name, arguments: execute_tool(name, arguments, ctx),
        submit_enabled=config.submit_enabled,
        web_search=config.web_search,
        max_steps=config.max_steps,
        time_limit=config.time_limit,
        temperature=config.temperature,
        verbose=config.verbose,
        thread_id=config.session_id,
    )

    try:
        answer = agent.run(task)
    finally:
        log.emit_buffer()
        if own_log:
            log.close()

    if config.verbose:
        fmt.completion(agent.steps, agent.outcome)
    return Result(answer=answer, outcome=agent.outcome, steps=agent.steps, usage=agent.usage)


def run_task(task: str, config: AgentConfig, *, log: EventLog | None = None) -> str:
    """Run ``task`` and return the final answer or termination message."""
    return run(task, config, log=log).answer
