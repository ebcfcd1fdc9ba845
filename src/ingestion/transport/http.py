"""Requests-based HTTP client shared by the network-facing handlers.

Features:
- session reuse + connection pooling
- retry with backoff on transport errors and retryable status codes
- authentication applied once per client (bearer, basic, API key)
- non-2xx responses are returned, not raised; callers decide what a status means
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import requests
from requests.adapters import HTTPAdapter

from src.ingestion.errors import IngestionError
from src.ingestion.runtime.resilience import RetryPolicy
from src.ingestion.types import AuthenticationConfig, AuthType

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "SourceIngestion/1.0"


class TransportError(IngestionError):
    """The request never produced an HTTP response."""

    def __init__(self, message: str, *, url: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.url = url


@dataclass
class HttpResponse:
    url: str
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    text: str = ""
    content: bytes = b""
    final_url: str | None = None
    elapsed_ms: float = 0.0

    def __post_init__(self) -> None:
        self.headers = {str(k).lower(): str(v) for k, v in self.headers.items()}

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    def json(self) -> Any:
        return json.loads(self.text)


@dataclass
class HttpClientOptions:
    """Configuration options for the HTTP client."""

    timeout_s: float = 30.0
    verify_ssl: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    headers: dict[str, str] = field(default_factory=dict)

    # retry
    max_retries: int = 2
    backoff_mode: str = "exp"
    base_delay_s: float = 0.5
    retry_on_status: tuple[int, ...] = (429, 500, 502, 503, 504)

    # pool
    pool_connections: int = 10
    pool_maxsize: int = 20

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> HttpClientOptions:
        values = {
            "timeout_s": settings.HTTP_TIMEOUT_SECONDS,
            "user_agent": settings.HTTP_USER_AGENT,
            "max_retries": settings.HTTP_MAX_RETRIES,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def authentication_headers(auth: AuthenticationConfig | None) -> dict[str, str]:
    """Header form of bearer and API-key credentials. Basic auth is set on the session."""
    if auth is None:
        return {}
    if auth.type == AuthType.BEARER:
        return {"Authorization": f"Bearer {auth.token}"}
    if auth.type == AuthType.API_KEY:
        return {auth.header_name: str(auth.key)}
    return {}


class HttpClient:
    """HTTP client using the requests library."""

    def __init__(
        self,
        *,
        options: HttpClientOptions | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.options = options or HttpClientOptions()
        self._session = session or requests.Session()
        self._sleep = sleep

        if session is None:
            adapter = HTTPAdapter(
                pool_connections=self.options.pool_connections,
                pool_maxsize=self.options.pool_maxsize,
            )
            self._session.mount("http://", adapter)
            self._session.mount("https://", adapter)

        self._session.headers["User-Agent"] = self.options.user_agent
        self._session.headers.update(self.options.headers)

        self._retry_policy = RetryPolicy(
            max_retries=self.options.max_retries,
            backoff_mode=self.options.backoff_mode,
            base_delay_s=self.options.base_delay_s,
            retry_on_status=self.options.retry_on_status,
        )

    def configure_authentication(self, auth: AuthenticationConfig | None) -> None:
        """Apply credentials to every subsequent request."""
        if auth is None:
            return
        if auth.type == AuthType.BASIC:
            self._session.auth = (str(auth.username), str(auth.password))
        else:
            self._session.headers.update(authentication_headers(auth))

    def close(self) -> None:
        try:
            self._session.close()
        except Exception as e:
            logger.warning(f"Error closing HTTP session: {e}")

    def head(self, url: str, *, headers: Mapping[str, str] | None = None) -> HttpResponse:
        return self.request("HEAD", url, headers=headers)

    def get(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> HttpResponse:
        return self.request("GET", url, headers=headers, params=params)

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> HttpResponse:
        """
        Perform a request with retry.

        Raises:
            TransportError: When every attempt failed without a response.
        """
        last_error: Exception | None = None

        for attempt in range(0, self._retry_policy.max_retries + 1):
            t0 = time.time()
            try:
                resp = self._session.request(
                    method,
                    url,
                    headers=dict(headers or {}),
                    params=params,
                    timeout=self.options.timeout_s,
                    verify=self.options.verify_ssl,
                    allow_redirects=True,
                )
            except requests.RequestException as e:
                last_error = e
                logger.debug(f"{method} {url} attempt {attempt + 1} failed: {e}")
                if attempt < self._retry_policy.max_retries:
                    self._backoff(attempt + 1)
                    continue
                break

            result = HttpResponse(
                url=url,
                status_code=int(resp.status_code),
                headers={str(k): str(v) for k, v in resp.headers.items()},
                text=resp.text if method != "HEAD" else "",
                content=resp.content if method != "HEAD" else b"",
                final_url=str(resp.url),
                elapsed_ms=(time.time() - t0) * 1000,
            )

            if (
                self._retry_policy.should_retry_status(result.status_code)
                and attempt < self._retry_policy.max_retries
            ):
                logger.debug(f"{method} {url} returned {result.status_code}, retrying")
                self._backoff(attempt + 1)
                continue

            return result

        raise TransportError(f"{method} {url} failed: {last_error}", url=url) from last_error

    def _backoff(self, attempt: int) -> None:
        delay = self._retry_policy.compute_backoff_s(attempt)
        if delay > 0:
            self._sleep(delay)

    def __enter__(self) -> HttpClient:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
