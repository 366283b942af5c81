from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from pulse.app.services.http_client import HttpFetcher

LOGGER = logging.getLogger("pulse.push")


@dataclass(frozen=True)
class PushMessage:
    title: str
    body: str
    url: str

    def to_payload(self, tokens: Sequence[str]) -> dict[str, object]:
        return {
            "tokens": list(tokens),
            "notification": {"title": self.title, "body": self.body},
            "data": {"url": self.url},
        }


class PushGateway(Protocol):
    def send_multicast(self, tokens: Sequence[str], message: PushMessage) -> int:
        ...


class LogPushGateway:
    def send_multicast(self, tokens: Sequence[str], message: PushMessage) -> int:
        LOGGER.info(
            "push (log only) recipients=%s title=%s url=%s",
            len(tokens),
            message.title,
            message.url,
        )
        return len(tokens)


class HttpPushGateway:
    """Posts one multicast request per message to a push relay endpoint."""

    def __init__(self, *, http: HttpFetcher, endpoint_url: str) -> None:
        self._http = http
        self._endpoint_url = endpoint_url

    def send_multicast(self, tokens: Sequence[str], message: PushMessage) -> int:
        if not tokens:
            return 0
        status = self._http.post_json(self._endpoint_url, message.to_payload(tokens))
        LOGGER.debug("push relay accepted recipients=%s status=%s", len(tokens), status)
        return len(tokens)


def build_push_gateway(*, http: HttpFetcher, endpoint_url: str | None) -> PushGateway:
    if endpoint_url is None:
        return LogPushGateway()
    return HttpPushGateway(http=http, endpoint_url=endpoint_url)
