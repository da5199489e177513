"""Web tools: Tavily search, page open, and in-page regex search."""

import html.parser
import json
import os
import re
import urllib.error
import urllib.parse
import urllib.request

from .tools import DEFAULT_READ_LIMIT, ToolContext, ToolError, _opt_int, _req_str
from .tools import tool_error, truncate

TAVILY_BASE_URL = "https://api.tavily.com"
MAX_RESPONSE_SIZE = 5 * 1024 * 1024  # 5 MB raw download cap
FETCH_TIMEOUT = 30  # seconds
DEFAULT_SEARCH_RESULTS = 5
MAX_SEARCH_RESULTS = 20
DEFAULT_FIND_RESULTS = 20
MAX_FIND_RESULTS = 100
MAX_CONTEXT_LINES = 10

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/markdown,text/html,text/plain,application/json,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

_TEXT_MIMES = (
    "application/json",
    "application/xml",
    "application/xhtml+xml",
    "application/javascript",
    "application/rss+xml",
    "application/atom+xml",
)

_BLOCK_TAGS = frozenset(
    {
        "p", "div", "br", "h1", "h2", "h3", "h4", "h5", "h6", "li", "tr",
        "blockquote", "pre", "hr", "section", "article", "header", "footer",
        "nav", "main", "table",
    }
)

_SKIP_TAGS = frozenset({"script", "style", "noscript", "svg"})


def tavily_api_key() -> str | None:
    return os.environ.get("SEXTANT_TAVILY_API_KEY") or os.environ.get("TAVILY_API_KEY")


def tavily_base_url() -> str:
    return os.environ.get("SEXTANT_TAVILY_BASE_URL") or TAVILY_BASE_URL


class _TextExtractor(html.parser.HTMLParser):
    """Readable text from HTML, used when markdown conversion fails."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs):
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
        elif tag in _BLOCK_TAGS and self._skip_depth == 0:
            self._parts.append("\n")

    def handle_endtag(self, tag: str):
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in _BLOCK_TAGS and self._skip_depth == 0:
            self._parts.append("\n")

    def handle_data(self, data: str):
        if self._skip_depth == 0:
            self._parts.append(data)

    def get_text(self) -> str:
        text = "".join(self._parts)
        text = re.sub(r"[^\S\n]+", " ", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()


def html_to_text(body: str) -> str:
    parser = _TextExtractor()
    parser.feed(body)
    return parser.get_text()


def _decode_response(data: bytes, content_type: str | None) -> str:
    """Decode with the Content-Type charset, then UTF-8, then latin-1."""
    charset = None
    if content_type:
        for part in content_type.split(";"):
            part = part.strip()
            if part.lower().startswith("charset="):
                charset = part.split("=", 1)[1].strip().strip("\"'")
                break
    for encoding in [charset, "utf-8"]:
        if encoding is None:
            continue
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return data.decode("latin-1")


def _check_url(url: str) -> None:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ToolError(
            f"url scheme {parsed.scheme!r} is not allowed, must be http or https"
        )
    if not parsed.hostname:
        raise ToolError(f"could not parse hostname from url: {url}")


def fetch_page(url: str, timeout: float = FETCH_TIMEOUT) -> str:
    """Download a page and return it as markdown (HTML) or plain text."""
    _check_url(url)
    req = urllib.request.Request(url, headers=HEADERS)
    try:
        resp = urllib.request.urlopen(req, timeout=timeout)
    except urllib.error.HTTPError as e:
        raise ToolError(f"HTTP {e.code} {e.reason} when fetching {url}") from e
    except (urllib.error.URLError, OSError) as e:
        raise ToolError(f"could not fetch {url}: {e}") from e

    with resp:
        content_type = resp.headers.get("Content-Type", "")
        mime = content_type.split(";")[0].strip().lower()
        if mime and not mime.startswith("text/") and mime not in _TEXT_MIMES:
            raise ToolError(f"binary content (content-type: {mime}), cannot display as text")
        try:
            data = resp.read(MAX_RESPONSE_SIZE + 1)
        except OSError as e:
            raise ToolError(f"failed to read response from {url}: {e}") from e

    if len(data) > MAX_RESPONSE_SIZE:
        raise ToolError(f"response too large (limit is {MAX_RESPONSE_SIZE} bytes)")
    if b"\x00" in data[:8192]:
        raise ToolError("binary content detected (null bytes found), cannot display as text")

    body = _decode_response(data, content_type)
    if mime not in ("text/html", "application/xhtml+xml"):
        return body
    try:
        from html_to_markdown import convert

        converted = convert(body)
    except Exception:
        return html_to_text(body)
    if isinstance(converted, str):
        return converted
    # html-to-markdown 3.x wraps the markdown in a ConversionResult
    content = getattr(converted, "content", None)
    return content if isinstance(content, str) else html_to_text(body)


# -- Tools -------------------------------------------------------------------


def web_search(args: dict, ctx: ToolContext) -> str:
    query = _req_str(args, "query")
    max_results = _opt_int(args, "max_results", DEFAULT_SEARCH_RESULTS)
    if max_results < 1:
        return tool_error("invalid max_results: web_search.max_results must be >= 1")
    max_results = min(max_results, MAX_SEARCH_RESULTS)

    api_key = tavily_api_key()
    if not api_key:
        raise ToolError("no Tavily API key found; set TAVILY_API_KEY")

    url = tavily_base_url().rstrip("/") + "/search"
    payload = json.dumps({"query": query, "max_results": max_results}).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=payload,
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=FETCH_TIMEOUT) as resp:
            raw = resp.read()
    except urllib.error.HTTPError as e:
        body, _ = truncate(e.read().decode("utf-8", errors="replace"), 500)
        raise ToolError(f"Tavily search failed (HTTP {e.code}): {body}") from e
    except (urllib.error.URLError, OSError) as e:
        raise ToolError(f"Tavily search request failed: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ToolError(f"Tavily returned invalid JSON: {e}") from e

    results = []
    for item in (data.get("results") or [])[:max_results]:
        content, _ = truncate(item.get("content") or "", 1000)
        results.append(
            {
                "title": item.get("title") or "",
                "url": item.get("url") or "",
                "content": content,
                "score": item.get("score"),
            }
        )
    return json.dumps({"query": query, "results": results})


def web_open(args: dict, ctx: ToolContext) -> str:
    url = _req_str(args, "url")
    offset = _opt_int(args, "offset", 1)
    limit = min(_opt_int(args, "limit", DEFAULT_READ_LIMIT), DEFAULT_READ_LIMIT)
    if offset < 1 or limit < 1:
        return tool_error(
            "invalid pagination: web_open.offset and web_open.limit must be >= 1 "
            "(offset is 1-indexed)"
        )

    lines = fetch_page(url).splitlines()
    total = len(lines)
    if offset > total and total > 0:
        return tool_error(f"offset ({offset}) is beyond total lines ({total})")
    end = min(offset + limit - 1, total)
    numbered = [f"{i}: {lines[i - 1]}" for i in range(offset, end + 1)]
    text, truncated = truncate("\n".join(numbered), ctx.max_output_chars)
    return json.dumps(
        {
            "url": url,
            "total_lines": total,
            "start_line": offset if total else 0,
            "end_line": end,
            "content": text,
            "truncated": truncated,
        }
    )


def web_find(args: dict, ctx: ToolContext) -> str:
    url = _req_str(args, "url")
    pattern_text = _req_str(args, "pattern")
    max_results = _opt_int(args, "max_results", DEFAULT_FIND_RESULTS)
    context_lines = _opt_int(args, "context_lines", 0)
    if max_results < 1 or context_lines < 0:
        return tool_error(
            "invalid arguments: web_find.max_results must be >= 1 and "
            "web_find.context_lines must be >= 0"
        )
    max_results = min(max_results, MAX_FIND_RESULTS)
    context_lines = min(context_lines, MAX_CONTEXT_LINES)

    try:
        pattern = re.compile(pattern_text, re.IGNORECASE)
    except re.error as e:
        return tool_error(f"invalid regex pattern: {pattern_text}: {e}")

    lines = fetch_page(url).splitlines()
    matches = []
    truncated = False
    for idx, line in enumerate(lines):
        if not pattern.search(line):
            continue
        if len(matches) >= max_results:
            truncated = True
            break
        lo = max(0, idx - context_lines)
        hi = min(len(lines), idx + context_lines + 1)
        matches.append(
            {
                "line": idx + 1,
                "text": line,
                "context": [f"{i + 1}: {lines[i]}" for i in range(lo, hi)],
            }
        )
    return json.dumps(
        {
            "url": url,
            "pattern": pattern_text,
            "total_lines": len(lines),
            "matches": matches,
            "truncated": truncated,
        }
    )
