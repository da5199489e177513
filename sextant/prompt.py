"""Task loading and system prompt construction."""

from pathlib import Path

from . import fmt
from .report import ConfigError

DEFAULT_CONTINUE_MESSAGE = (
    "Please proceed to the next step using your best judgement. If you believe "
    "you are finished, double check your work to continue to refine and improve "
    "your submission."
)

_BASE_RULES = """\
You are a CLI agent. Use tools to inspect and modify the workspace to complete the task.
Rules:
- Use at most one tool call per step.
- Prefer tools over guessing. Tool outputs are authoritative."""

_CORE_TOOLS = """\
Tools:
- shell_command(command, workdir?, timeout_ms?, max_output_chars?)
- read_file(file_path, offset?, limit?)
- list_dir(dir_path, offset?, limit?, depth?)
- grep_files(pattern, path?, include?, limit?)
- apply_patch(patch)
"""

_WEB_TOOLS = """\
- web_search(query, max_results?)
- web_open(url, offset?, limit?)
- web_find(url, pattern, max_results?, context_lines?)
"""

_USAGE_NOTES = """
Tool usage notes:
- Pagination is 1-indexed: read_file.offset and list_dir.offset start at 1 (not 0). limit/depth must be >= 1.
- grep_files.pattern is a Python regex. Escape metacharacters if you want a literal match (e.g. use "main\\(" to search for "main(").
- If you need to edit files, prefer apply_patch.
"""

_WEB_NOTES = """\
- web_open returns the page as markdown lines; use web_find to locate text on long pages.
"""


def load_task(prompt: str | None, prompt_file: str | Path | None) -> str:
    """Return the task text from ``prompt_file`` if given, else ``prompt``."""
    if prompt_file is not None:
        try:
            return Path(prompt_file).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"failed to read prompt file {prompt_file}: {e}") from e
    if prompt is not None:
        return prompt
    raise ConfigError("prompt or prompt_file is required")


def load_agents_instructions(cwd: str | Path, verbose: bool = False) -> str | None:
    """Concatenate every AGENTS.md from ``cwd`` up to the filesystem root.

    The nearest file comes first. Returns None when there is none.
    """
    notes = []
    current = Path(cwd).resolve()
    for directory in [current, *current.parents]:
        candidate = directory / "AGENTS.md"
        if not candidate.is_file():
            continue
        try:
            notes.append(candidate.read_text(encoding="utf-8", errors="replace"))
        except OSError as e:
            raise ConfigError(f"failed to read {candidate}: {e}") from e
        if verbose:
            fmt.info(f"Loaded AGENTS.md from {directory}")
    return "\n\n".join(notes) if notes else None


def build_system_prompt(
    cwd: str | Path,
    max_steps: int | None,
    time_limit: float | None,
    submit_enabled: bool,
    web_search: bool = False,
    verbose: bool = False,
) -> tuple[str, str | None]:
    """Return (system_prompt, agents_text)."""
    parts = [_BASE_RULES]
    if submit_enabled:
        parts.append("\n- If you are done, call submit with a concise final answer.")
    else:
        parts.append("\n- If you are done, respond with a concise final answer.")

    max_steps_str = str(max_steps) if max_steps is not None else "unset"
    time_limit_str = str(int(time_limit)) if time_limit is not None else "unset"
    parts.append(
        f"\nEnvironment:\n- cwd: {cwd}\n- max_steps: {max_steps_str}"
        f"\n- time_limit_sec: {time_limit_str}\n- network_access: enabled\n- sandbox: none"
    )

    parts.append("\n\n" + _CORE_TOOLS)
    if web_search:
        parts.append(_WEB_TOOLS)
    if submit_enabled:
        parts.append("- submit(answer)\n")
    parts.append(_USAGE_NOTES)
    if web_search:
        parts.append(_WEB_NOTES)

    agents_text = load_agents_instructions(cwd, verbose)
    if agents_text is not None:
        parts.append("\n\n" + agents_text)

    return "".join(parts), agents_text
