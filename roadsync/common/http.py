"""HTTP client with retries and timeouts for the Realtime Database REST API."""

from __future__ import annotations

import json
from dataclasses import dataclass
from types import TracebackType
from typing import Any, Iterator

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from roadsync.common.errors import StorageFailure

USER_AGENT = "roadsync/1.0"
RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class TimeoutConfig:
    connect: float = 10.0
    read: float = 60.0


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 5
    multiplier: float = 0.5
    max_wait: float = 15.0


class HttpRequestError(StorageFailure):
    error_code = "HTTP_ERROR"


class RetryableHttpError(HttpRequestError):
    pass


class HttpClient:
    def __init__(
        self,
        *,
        auth: str | None = None,
        timeout: TimeoutConfig | None = None,
        retry: RetryConfig | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.auth = auth
        self.timeout = timeout or TimeoutConfig()
        self.retry = retry or RetryConfig()
        self.session = session or requests.Session()

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _params(self, params: dict[str, Any] | None) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.auth:
            out["auth"] = self.auth
        if params:
            out.update(params)
        return out

    def _headers(self, headers: dict[str, str] | None) -> dict[str, str]:
        out = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        if headers:
            out.update(headers)
        return out

    def _raise_for_status_or_retry(self, response: requests.Response) -> None:
        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            raise RetryableHttpError(f"Retryable HTTP status: {status}")
        if status >= 400:
            raise HttpRequestError(f"HTTP status: {status}")

    def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        payload: Any = None,
    ) -> Any:
        try:
            response = self.session.request(
                method=method,
                url=url,
                params=self._params(params),
                data=None if payload is None else json.dumps(payload),
                headers=self._headers(None),
                timeout=(self.timeout.connect, self.timeout.read),
            )
        except requests.ConnectionError as exc:
            raise RetryableHttpError(f"Connection failed for {url}: {exc}") from exc
        self._raise_for_status_or_retry(response)

        try:
            return response.json()
        except ValueError as exc:
            raise HttpRequestError(f"Invalid JSON payload from {url}") from exc

    def request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        payload: Any = None,
    ) -> Any:
        @retry(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.retry.multiplier,
                max=self.retry.max_wait,
                jitter=1.0,
            ),
            retry=retry_if_exception_type(RetryableHttpError),
            reraise=True,
        )
        def _wrapped() -> Any:
            return self._request_json(method, url, params=params, payload=payload)

        return _wrapped()

    def get_json(self, url: str, *, params: dict[str, Any] | None = None) -> Any:
        return self.request_json("GET", url, params=params)

    def patch_json(self, url: str, payload: dict[str, Any]) -> Any:
        return self.request_json("PATCH", url, payload=payload)

    def put_json(self, url: str, payload: Any) -> Any:
        return self.request_json("PUT", url, payload=payload)

    def stream_events(self, url: str) -> Iterator[tuple[str, str]]:
        """Yield ``(event, data)`` pairs from a server-sent-event stream."""
        response = self.session.get(
            url,
            params=self._params(None),
            headers=self._headers({"Accept": "text/event-stream"}),
            stream=True,
            timeout=(self.timeout.connect, None),
        )
        self._raise_for_status_or_retry(response)
        try:
            yield from parse_sse_lines(response.iter_lines(decode_unicode=True))
        finally:
            response.close()


def parse_sse_lines(lines) -> Iterator[tuple[str, str]]:
    event = None
    data: list[str] = []
    for line in lines:
        if line is None:
            continue
        if isinstance(line, bytes):
            line = line.decode("utf-8")
        if line == "":
            if event is not None:
                yield event, "\n".join(data)
            event, data = None, []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if event is not None:
        yield event, "\n".join(data)
