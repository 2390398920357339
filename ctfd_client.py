#!/usr/bin/env python3
"""Read-only client for the CTFd REST API with paginated collection fetching."""

from __future__ import annotations

import http.client
import json
import socket
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol, TypeVar
from urllib import error, request
from urllib.parse import urlencode

DEFAULT_TIMEOUT = 30
DEFAULT_RETRIES = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0
MAX_PAGES = 100
USER_AGENT = "CTFd-Scoreboard-Notifier/1.0"


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------

class TransportError(Exception):
    """A request to the scoring service failed.

    ``kind`` lets callers branch without isinstance checks; every subclass
    sets its own.
    """

    kind = "http_error"

    def __init__(self, message: str, status: int | None = None, endpoint: str | None = None):
        super().__init__(message)
        self.status = status
        self.endpoint = endpoint

    @property
    def retryable(self) -> bool:
        return self.status is not None and 500 <= self.status < 600


class AuthenticationFailure(TransportError):
    kind = "authentication_failure"


class EndpointMissing(TransportError):
    kind = "endpoint_missing"


class RateLimited(TransportError):
    kind = "rate_limited"

    def __init__(
        self,
        message: str,
        status: int | None = 429,
        endpoint: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, status=status, endpoint=endpoint)
        self.retry_after = retry_after


class ProtocolMismatch(TransportError):
    kind = "protocol_mismatch"


class NetworkFailure(TransportError):
    kind = "network_failure"

    @property
    def retryable(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

@dataclass
class HttpResponse:
    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class Transport(Protocol):
    def get(self, url: str, headers: dict[str, str], timeout: float) -> HttpResponse: ...


def _is_timeout_error(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return True
    if isinstance(exc, error.URLError):
        return isinstance(getattr(exc, "reason", None), (TimeoutError, socket.timeout))
    return False


def describe_network_error(exc: BaseException) -> str:
    if _is_timeout_error(exc):
        return "timed out"
    return str(getattr(exc, "reason", None) or exc) or type(exc).__name__


class UrllibTransport:
    """Blocking GET transport on ``urllib``; HTTP error statuses come back as responses."""

    def get(self, url: str, headers: dict[str, str], timeout: float) -> HttpResponse:
        req = request.Request(url, headers=headers, method="GET")
        try:
            with request.urlopen(req, timeout=timeout) as response:
                return HttpResponse(
                    status=response.status,
                    body=response.read(),
                    headers=dict(response.headers.items()),
                )
        except error.HTTPError as exc:
            try:
                body = exc.read()
            except OSError:
                body = b""
            return HttpResponse(status=exc.code, body=body, headers=dict(exc.headers.items()) if exc.headers else {})
        except (error.URLError, TimeoutError, socket.timeout, ConnectionError, http.client.HTTPException) as exc:
            raise NetworkFailure(f"Network error contacting {url}: {describe_network_error(exc)}") from exc


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------

T = TypeVar("T")


def run_with_retries(
    operation_name: str,
    operation: Callable[[], T],
    retries: int,
    retry_backoff_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    max_attempts = retries + 1
    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except TransportError as exc:
            if not exc.retryable or attempt == max_attempts:
                raise
            backoff = retry_backoff_seconds * (2 ** (attempt - 1))
            print(
                f"Retrying {operation_name} (attempt {attempt}/{max_attempts}) after {backoff:.1f}s: {exc}",
                file=sys.stderr,
            )
            sleep(backoff)


# ---------------------------------------------------------------------------
# Request / response handling
# ---------------------------------------------------------------------------

def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def decode_response(response: HttpResponse, endpoint: str):
    """Map an HTTP response to decoded JSON or the matching ``TransportError``."""
    status = response.status
    if status in (401, 403):
        message = (
            "Invalid API key. Check the CTFd API token."
            if status == 401
            else "Access forbidden. Check the API token's permissions."
        )
        raise AuthenticationFailure(message, status=status, endpoint=endpoint)
    if status == 404:
        raise EndpointMissing(f"API endpoint not found: {endpoint}", status=status, endpoint=endpoint)
    if status == 429:
        raise RateLimited(
            "Rate limit exceeded.",
            endpoint=endpoint,
            retry_after=_parse_retry_after(response.header("Retry-After")),
        )
    if status < 200 or status >= 300:
        raise TransportError(f"HTTP {status} from {endpoint}", status=status, endpoint=endpoint)

    content_type = response.header("Content-Type") or ""
    if "json" not in content_type.lower():
        raise ProtocolMismatch(
            f"Expected JSON response from {endpoint}, got {content_type or 'no content type'}.",
            status=status,
            endpoint=endpoint,
        )
    try:
        return json.loads(response.body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolMismatch(
            f"Malformed JSON body from {endpoint}: {exc}", status=status, endpoint=endpoint
        ) from exc


@dataclass(frozen=True)
class MonitorConfig:
    instance_url: str
    api_key: str = field(repr=False)

    @property
    def api_base(self) -> str:
        return self.instance_url.rstrip("/") + "/api/v1"


PageCallback = Callable[[list, int, "int | None"], None]


class PagedFetcher:
    """Fetch whole collections from the API, one page at a time.

    Responses are either a bare JSON array (a single, final page) or an
    envelope ``{"data": [...], "meta": {"pagination": {"pages": N}}}``.
    """

    def __init__(
        self,
        config: MonitorConfig,
        transport: Transport | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        max_pages: int = MAX_PAGES,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.transport = transport or UrllibTransport()
        self.timeout = timeout
        self.retries = retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_pages = max_pages
        self._sleep = sleep

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Token {self.config.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Cache-Control": "no-cache",
            "User-Agent": USER_AGENT,
        }

    def request_json(self, endpoint: str, params: dict | None = None):
        url = self.config.api_base + endpoint
        if params:
            url = f"{url}?{urlencode(params)}"
        return run_with_retries(
            f"GET {endpoint}",
            lambda: decode_response(self.transport.get(url, self._headers(), self.timeout), endpoint),
            retries=self.retries,
            retry_backoff_seconds=self.retry_backoff_seconds,
            sleep=self._sleep,
        )

    def fetch_all(self, endpoint: str, on_page: PageCallback | None = None) -> list:
        """Return every item of *endpoint*, following pagination.

        *on_page* is called after each page with ``(page_items,
        running_total, total_pages)``. Past ``max_pages`` the fetch stops
        with a warning and the items gathered so far are returned.
        """
        items: list = []
        page = 1
        while True:
            payload = self.request_json(endpoint, {"page": page})

            if isinstance(payload, list):
                items.extend(payload)
                if on_page:
                    on_page(payload, len(items), 1)
                break

            if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
                raise ProtocolMismatch(
                    f"Unrecognised response shape from {endpoint} (page {page}).", endpoint=endpoint
                )

            page_items = payload["data"]
            items.extend(page_items)
            total_pages = _total_pages(payload, endpoint)
            if on_page:
                on_page(page_items, len(items), total_pages if total_pages is not None else 1)

            if total_pages is None or page >= total_pages:
                break
            if page >= self.max_pages:
                print(
                    f"Warning: reached maximum page limit ({self.max_pages}) for {endpoint}; "
                    f"server reports {total_pages} pages. Returning partial results.",
                    file=sys.stderr,
                )
                break
            page += 1

        return items


def _total_pages(payload: dict, endpoint: str) -> int | None:
    meta = payload.get("meta")
    if not isinstance(meta, dict):
        return None
    pagination = meta.get("pagination")
    if not isinstance(pagination, dict) or pagination.get("pages") is None:
        return None
    pages = pagination["pages"]
    if isinstance(pages, bool) or not isinstance(pages, int) or pages < 0:
        raise ProtocolMismatch(f"Invalid page count {pages!r} from {endpoint}.", endpoint=endpoint)
    return pages


# ---------------------------------------------------------------------------
# CTFd endpoints
# ---------------------------------------------------------------------------

class CTFdClient:
    def __init__(self, fetcher: PagedFetcher):
        self.fetcher = fetcher

    @classmethod
    def from_config(cls, config: MonitorConfig, **fetcher_options) -> "CTFdClient":
        return cls(PagedFetcher(config, **fetcher_options))

    def get_scoreboard(self) -> list:
        """The scoreboard is a single request; it may or may not be enveloped."""
        payload = self.fetcher.request_json("/scoreboard")
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict) and isinstance(payload.get("data"), list):
            return payload["data"]
        raise ProtocolMismatch("Unrecognised scoreboard response shape.", endpoint="/scoreboard")

    def get_challenges(self, on_page: PageCallback | None = None) -> list:
        return self.fetcher.fetch_all("/challenges", on_page)

    def get_solves(self, on_page: PageCallback | None = None) -> list:
        return self.fetcher.fetch_all("/solves", on_page)

    def get_submissions(self, on_page: PageCallback | None = None) -> list:
        return self.fetcher.fetch_all("/submissions", on_page)

    def test_connection(self) -> int:
        """Fetch the scoreboard once and return its entry count; errors propagate."""
        return len(self.get_scoreboard())
