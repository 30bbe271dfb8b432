"""HTTP client shared by the identity-provider integrations."""

from __future__ import annotations

import logging
import platform
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS_COUNT = 1
DEFAULT_RETRY_DELAY = 1.0
CONNECT_TIMEOUT = 30.0

USER_AGENT = f"samlidp/1.0 ({platform.system().lower()} {platform.machine().lower()})"

_UNSIGNED = re.compile(r"[0-9]+")
_UINT64_LIMIT = 2**64

ResponseValidator = Callable[[requests.Response], None]


@dataclass
class HTTPClientOptions:
    """Retry settings for an HTTPClient. A delay is in seconds."""

    is_with_retries: bool = False
    attempts_count: int = DEFAULT_ATTEMPTS_COUNT
    retry_delay: float = DEFAULT_RETRY_DELAY


class HTTPStatusError(Exception):
    """Raised when a response fails a status check; carries the response."""

    def __init__(self, message: str, response: requests.Response) -> None:
        super().__init__(message)
        self.response = response


def _parse_unsigned(text: str) -> Optional[int]:
    if not _UNSIGNED.fullmatch(text or ""):
        return None
    value = int(text)
    return value if value < _UINT64_LIMIT else None


def build_http_client_opts(attempts_count: str, retry_delay: str) -> HTTPClientOptions:
    """Build options from the textual account settings.

    Retries are switched on only when the attempts count is a valid unsigned
    integer; an invalid delay falls back to the default.
    """
    attempts = _parse_unsigned(attempts_count)
    delay = _parse_unsigned(retry_delay)
    return HTTPClientOptions(
        is_with_retries=attempts is not None,
        attempts_count=DEFAULT_ATTEMPTS_COUNT if attempts is None else attempts,
        retry_delay=DEFAULT_RETRY_DELAY if delay is None else float(delay),
    )


def _status_line(response: requests.Response) -> str:
    return f"{response.status_code} {response.reason or ''}".rstrip()


def _request_url(response: requests.Response) -> str:
    request = response.request
    return request.url if request is not None and request.url else response.url


def success_or_redirect_response_validator(response: requests.Response) -> None:
    """Accept status codes 200 to 399, raise HTTPStatusError otherwise."""
    if 200 <= response.status_code < 400:
        return
    raise HTTPStatusError(
        f"request for url: {_request_url(response)} failed status: {_status_line(response)}",
        response,
    )


def success_or_redirect_or_unauthorized_response_validator(response: requests.Response) -> None:
    """Like success_or_redirect_response_validator, but also accept 401."""
    if response.status_code == 401:
        return
    success_or_redirect_response_validator(response)


class HTTPClient:
    """A requests session with a cookie jar, optional retries and status checks."""

    def __init__(
        self,
        options: Optional[HTTPClientOptions] = None,
        *,
        skip_verify: bool = False,
        check_response_status: Optional[ResponseValidator] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.options = options if options is not None else HTTPClientOptions()
        self.check_response_status = check_response_status
        self.follow_redirects = True
        self.session = session if session is not None else requests.Session()
        self.session.verify = not skip_verify

    def do(self, method: str, url: str, **kwargs) -> requests.Response:
        """Send a request and return the response.

        Connection failures are retried when retries are enabled. When a status
        check is configured and fails, its HTTPStatusError is raised.
        """
        headers = dict(kwargs.pop("headers", None) or {})
        headers["User-Agent"] = USER_AGENT
        kwargs["headers"] = headers
        kwargs.setdefault("allow_redirects", self.follow_redirects)
        kwargs.setdefault("timeout", (CONNECT_TIMEOUT, None))

        if self.options.is_with_retries:
            response = self._send_with_retry(method, url, kwargs)
        else:
            response = self._send(method, url, kwargs)

        if self.check_response_status is not None:
            self.check_response_status(response)

        logger.debug("HTTP Res status=%s", _status_line(response))
        return response

    def get(self, url: str, **kwargs) -> requests.Response:
        """Send a GET request."""
        return self.do("GET", url, **kwargs)

    def disable_follow_redirect(self) -> None:
        """Return redirect responses as they are instead of following them."""
        self.follow_redirects = False

    def enable_follow_redirect(self) -> None:
        """Follow redirects (the default)."""
        self.follow_redirects = True

    def _send(self, method: str, url: str, kwargs: dict) -> requests.Response:
        logger.debug("HTTP Req method=%s URL=%s", method, url)
        return self.session.request(method, url, **kwargs)

    def _send_with_retry(self, method: str, url: str, kwargs: dict) -> requests.Response:
        limit = self.options.attempts_count
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._send(method, url, kwargs)
            except requests.RequestException as exc:
                if limit and attempt >= limit:
                    raise
                logger.debug("Retry attempt=%d caused by: %s", attempt, exc)
                time.sleep(self.options.retry_delay * 2 ** (attempt - 1))