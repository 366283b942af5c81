from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Protocol, cast
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pulse.app.config import DEFAULT_USER_AGENT

LOGGER = logging.getLogger("pulse.http")


class FetchError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class HttpGetter(Protocol):
    def get(self, url: str, *, headers: Mapping[str, str] | None = None) -> bytes:
        ...


class HttpFetcher:
    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._user_agent = user_agent

    def get(self, url: str, *, headers: Mapping[str, str] | None = None) -> bytes:
        """GET ``url`` and return the body; anything but a non-empty 2xx raises."""
        request_headers = {"User-Agent": self._user_agent}
        if headers:
            request_headers.update(headers)
        request = Request(url=url, headers=request_headers, method="GET")

        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                status = int(getattr(response, "status", 200))
                body = response.read()
        except HTTPError as exc:
            raise FetchError(
                f"HTTP {exc.code} from {url}",
                status_code=exc.code,
                retryable=(exc.code >= 500 or exc.code in {408, 429}),
            ) from exc
        except URLError as exc:
            raise FetchError(f"request to {url} failed: {exc.reason}") from exc
        except (TimeoutError, OSError) as exc:
            raise FetchError(f"request to {url} failed: {exc}") from exc

        if status < 200 or status >= 300:
            raise FetchError(f"HTTP {status} from {url}", status_code=status)
        if not body:
            raise FetchError(f"empty response body from {url}", status_code=status)
        return body

    def post_json(
        self,
        url: str,
        payload: Mapping[str, object],
        *,
        headers: Mapping[str, str] | None = None,
    ) -> int:
        request_headers = {
            "User-Agent": self._user_agent,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if headers:
            request_headers.update(headers)
        request = Request(
            url=url,
            data=json.dumps(dict(payload), ensure_ascii=True).encode("utf-8"),
            headers=request_headers,
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                return int(getattr(response, "status", 200))
        except HTTPError as exc:
            raise FetchError(
                f"HTTP {exc.code} from {url}",
                status_code=exc.code,
                retryable=(exc.code >= 500 or exc.code in {408, 429}),
            ) from exc
        except URLError as exc:
            raise FetchError(f"request to {url} failed: {exc.reason}") from exc
        except (TimeoutError, OSError) as exc:
            raise FetchError(f"request to {url} failed: {exc}") from exc


def decode_json_object(raw_body: bytes | str) -> dict[str, object]:
    text = raw_body.decode("utf-8", errors="replace") if isinstance(raw_body, bytes) else raw_body
    if not text.strip():
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        LOGGER.debug("response body is not valid JSON")
        return {}
    if isinstance(parsed, dict):
        parsed_dict = cast(dict[object, object], parsed)
        output: dict[str, object] = {}
        for key, value in parsed_dict.items():
            if isinstance(key, str):
                output[key] = value
        return output
    return {}
