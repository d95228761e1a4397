"""htreq executor - HTTP transport."""

import logging
import time

import requests

from htreq.errors import ExecutionTimeoutError, NetworkError

logger = logging.getLogger(__name__)


class Response:
    """Result of an HTTP request."""

    def __init__(self, status_code: int = 0, headers: dict[str, str] | None = None, body: str = ""):
        self.status_code: int = status_code
        self.headers: dict[str, str] = headers or {}
        self.body: str = body
        self.elapsed_ms: float = 0


def execute_request(
    method: str,
    url: str,
    headers: dict[str, str] | None = None,
    body: str | None = None,
    timeout: float = 30,
    insecure: bool = False,
    proxy: str | None = None,
) -> Response:
    """Execute an HTTP request and return the raw response.

    - Body is sent as UTF-8 bytes, exactly as given
    - Response body is kept as text, undecoded
    - Raises ExecutionTimeoutError on timeout
    - Raises NetworkError wrapping any other transport failure
    """
    kwargs = {
        "method": method.upper(),
        "url": url,
        "headers": headers,
        "data": body.encode("utf-8") if body else None,
        "timeout": timeout,
        "allow_redirects": True,
        "verify": not insecure,
    }
    if proxy:
        kwargs["proxies"] = {"http": proxy, "https": proxy}

    logger.debug("%s %s", kwargs["method"], url)
    try:
        start = time.monotonic()
        resp = requests.request(**kwargs)
        elapsed_ms = (time.monotonic() - start) * 1000
    except requests.exceptions.Timeout as e:
        raise ExecutionTimeoutError(f"Request timed out after {timeout}s: {method} {url}") from e
    except requests.exceptions.ConnectionError as e:
        raise NetworkError(f"Connection error: {e}", cause=e) from e
    except requests.exceptions.RequestException as e:
        raise NetworkError(f"Request failed: {e}", cause=e) from e

    result = Response(resp.status_code, dict(resp.headers), resp.text)
    result.elapsed_ms = elapsed_ms
    logger.debug("%s %s -> %s (%dms)", kwargs["method"], url, resp.status_code, elapsed_ms)
    return result
