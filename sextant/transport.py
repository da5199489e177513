"""HTTP transport for chat completions: retries, backoff, error classification."""

import http.client
import json
import socket
import ssl
import time
import urllib.error
import urllib.request

from . import fmt
from .protocol import CompletionResult, parse_completion
from .report import AgentError, TransportError
from .tools import truncate

COMPLETIONS_PATH = "/chat/completions"
MAX_RETRIES = 2  # extra attempts after the first one
RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})
BACKOFF_BASE_MS = 250
BACKOFF_CAP_MS = 3000
MAX_ERROR_BODY_CHARS = 2000
CONNECT_TIMEOUT = 20  # seconds
READ_TIMEOUT = 10 * 60  # seconds; long generations are slow

_STATUS_HINTS = {
    401: "Hint: check your API key (set `OPENROUTER_API_KEY` or use `--api-key`) and that it has access to the model.",
    403: "Hint: check your API key (set `OPENROUTER_API_KEY` or use `--api-key`) and that it has access to the model.",
    404: "Hint: check `--base-url` and the model name (`--model`).",
    408: "Hint: the request timed out; try again or use a faster model.",
    504: "Hint: the request timed out; try again or use a faster model.",
    429: "Hint: you may be rate limited; retry later or lower concurrency.",
    500: "Hint: upstream/server error; retry later.",
    502: "Hint: upstream/server error; retry later.",
    503: "Hint: upstream/server error; retry later.",
}

_RETRYABLE_IO = (
    TimeoutError,
    ConnectionError,  # reset, aborted, refused, broken pipe
    socket.gaierror,
    EOFError,
    http.client.IncompleteRead,
    ssl.SSLEOFError,
)


class _TimeoutHTTPConnection(http.client.HTTPConnection):
    """Connects with the short connect timeout, then reads with READ_TIMEOUT."""

    read_timeout = READ_TIMEOUT

    def connect(self):
        super().connect()
        self.sock.settimeout(self.read_timeout)


class _TimeoutHTTPSConnection(http.client.HTTPSConnection):
    read_timeout = READ_TIMEOUT

    def connect(self):
        super().connect()
        self.sock.settimeout(self.read_timeout)


class _TimeoutHTTPHandler(urllib.request.HTTPHandler):
    def http_open(self, req):
        return self.do_open(_TimeoutHTTPConnection, req)


class _TimeoutHTTPSHandler(urllib.request.HTTPSHandler):
    def https_open(self, req):
        return self.do_open(_TimeoutHTTPSConnection, req, context=self._context)


def build_opener() -> urllib.request.OpenerDirector:
    return urllib.request.build_opener(_TimeoutHTTPHandler, _TimeoutHTTPSHandler)


def completions_url(base_url: str) -> str:
    return base_url.rstrip("/") + COMPLETIONS_PATH


def is_retryable_error(exc: BaseException) -> bool:
    """Whether a transport-level failure is worth another attempt.

    Connect failures, timeouts, and truncated bodies are transient. The
    exception chain is walked so a reset wrapped in another error still counts.
    """
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        if isinstance(cur, urllib.error.HTTPError):
            return False
        if isinstance(cur, urllib.error.URLError):
            # urlopen wraps socket-level connect failures in URLError
            return isinstance(cur.reason, _RETRYABLE_IO)
        if isinstance(cur, _RETRYABLE_IO):
            return True
        cur = cur.__cause__ or cur.__context__
    return False


def parse_retry_after(value: str | None) -> int | None:
    """Parse a delta-seconds Retry-After header. HTTP-dates are ignored."""
    if value is None:
        return None
    value = value.strip()
    if not value.isdigit():
        return None
    return int(value)


def backoff_delay_ms(
    attempt: int, retry_after: int | None = None, now_ms: int | None = None
) -> int:
    """Delay before retry number ``attempt`` (0-based), in milliseconds.

    attempt=0 -> ~250ms, 1 -> ~500ms, 2 -> ~1000ms, capped at 3s, plus
    0-49ms of jitter. A server-provided Retry-After replaces the
    exponential part.
    """
    base_ms = BACKOFF_BASE_MS * (1 << min(attempt, 10))
    capped_ms = min(base_ms, BACKOFF_CAP_MS)
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    jitter_ms = now_ms % 50
    delay_ms = retry_after * 1000 if retry_after is not None else capped_ms
    return delay_ms + jitter_ms


def _api_message(body: str) -> str | None:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    err = data.get("error")
    if isinstance(err, dict) and isinstance(err.get("message"), str):
        return err["message"]
    if isinstance(err, str):
        return err
    return None


def format_http_error(url: str, status: int, headers, body: str) -> str:
    """Build a readable error for a non-2xx completion response."""
    request_id = ""
    if headers is not None:
        request_id = (
            headers.get("x-request-id") or headers.get("x-openrouter-request-id") or ""
        )

    msg = f"API error (HTTP {status}) when calling {url}"
    if request_id:
        msg += f" (request_id: {request_id})"
    api_message = _api_message(body)
    if api_message and api_message.strip():
        msg += f"\nMessage: {api_message.strip()}"
    snippet, _ = truncate(body, MAX_ERROR_BODY_CHARS)
    if snippet.strip():
        msg += f"\nBody:\n{snippet.strip()}"
    hint = _STATUS_HINTS.get(status)
    if hint:
        msg += f"\n{hint}"
    return msg


class ChatClient:
    """Sends chat-completion requests with bounded retries.

    One instance per run. Calls are blocking and never overlap.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        retry_429: bool = False,
        opener=None,
        connect_timeout: float = CONNECT_TIMEOUT,
        verbose: bool = False,
    ):
        self.url = completions_url(base_url)
        self.api_key = api_key
        self.retry_429 = retry_429
        self.connect_timeout = connect_timeout
        self.verbose = verbose
        self._opener = opener if opener is not None else build_opener()
        self.attempts = 0  # total HTTP attempts over the client's lifetime

    def _request(self, payload: bytes) -> urllib.request.Request:
        return urllib.request.Request(
            self.url,
            data=payload,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            method="POST",
        )

    def _sleep_backoff(self, attempt: int, retry_after: int | None, reason: str):
        delay_ms = backoff_delay_ms(attempt, retry_after)
        if self.verbose:
            fmt.retry(attempt + 1, MAX_RETRIES, delay_ms / 1000, reason)
        time.sleep(delay_ms / 1000)

    def send(self, body: dict) -> CompletionResult:
        """POST one request body and return the parsed first choice.

        Raises TransportError once retries are exhausted or the failure is
        not retryable, and AgentError for an unusable 2xx body.
        """
        url = self.url
        payload = json.dumps(body).encode("utf-8")
        total = MAX_RETRIES + 1

        for attempt in range(total):
            self.attempts += 1
            try:
                resp = self._opener.open(self._request(payload), timeout=self.connect_timeout)
            except urllib.error.HTTPError as e:
                status = e.code
                try:
                    raw = e.read()
                except (OSError, http.client.HTTPException):
                    raw = b""
                finally:
                    e.close()
                text = raw.decode("utf-8", errors="replace")
                retry_after = parse_retry_after(
                    e.headers.get("Retry-After") if e.headers is not None else None
                )
                # Hard rate limits: no blind 429 retries unless the server says when.
                if status == 429:
                    retry_allowed = self.retry_429 or retry_after is not None
                else:
                    retry_allowed = True
                if attempt < MAX_RETRIES and retry_allowed and status in RETRY_STATUSES:
                    self._sleep_backoff(attempt, retry_after, f"HTTP {status}")
                    continue
                raise TransportError(
                    format_http_error(url, status, e.headers, text),
                    status=status,
                    url=url,
                ) from None
            except (urllib.error.URLError, OSError, http.client.HTTPException) as e:
                if attempt < MAX_RETRIES and is_retryable_error(e):
                    self._sleep_backoff(attempt, None, str(e))
                    continue
                raise TransportError(
                    f"chat completion request failed: POST {url} "
                    f"(attempt {attempt + 1}/{total}): {e}",
                    url=url,
                ) from e

            with resp:
                status = getattr(resp, "status", 200)
                try:
                    raw = resp.read()
                except (OSError, http.client.HTTPException) as e:
                    if attempt < MAX_RETRIES and is_retryable_error(e):
                        self._sleep_backoff(attempt, None, str(e))
                        continue
                    raise TransportError(
                        f"failed to read chat completion response body (HTTP {status}) "
                        f"(attempt {attempt + 1}/{total}): {e}",
                        status=status,
                        url=url,
                    ) from e

            text = raw.decode("utf-8", errors="replace")
            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                snippet, _ = truncate(text, MAX_ERROR_BODY_CHARS)
                raise AgentError(
                    f"chat completion endpoint returned an unexpected response body "
                    f"(HTTP {status}):\n{snippet}"
                ) from e
            return parse_completion(data)

        raise TransportError(
            f"chat completion request failed after {total} attempts", url=url
        )
