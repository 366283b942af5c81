from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from hashlib import sha256
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from pulse.app.models.domain import Article
from pulse.app.repositories.fanout_repository import FanoutRepository, StoredArticle
from pulse.app.services.feed_parser import GENERATED_ID_PREFIX, FeedParser
from pulse.app.services.http_client import FetchError, HttpGetter
from pulse.app.services.push_gateway import PushGateway, PushMessage
from pulse.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("pulse.fanout")


@dataclass(frozen=True)
class SourceFanoutStats:
    feed_url: str
    failed: bool = False
    new_articles: int = 0
    user_records: int = 0
    push_sends: int = 0
    push_failures: int = 0


@dataclass(frozen=True)
class FanoutStats:
    sources: int
    failed_sources: int
    new_articles: int
    user_records: int
    push_sends: int
    push_failures: int

    @classmethod
    def combine(cls, per_source: list[SourceFanoutStats]) -> FanoutStats:
        return cls(
            sources=len(per_source),
            failed_sources=sum(1 for stats in per_source if stats.failed),
            new_articles=sum(stats.new_articles for stats in per_source),
            user_records=sum(stats.user_records for stats in per_source),
            push_sends=sum(stats.push_sends for stats in per_source),
            push_failures=sum(stats.push_failures for stats in per_source),
        )

    def to_payload(self) -> dict[str, int]:
        return {
            "sources": self.sources,
            "failed_sources": self.failed_sources,
            "new_articles": self.new_articles,
            "user_records": self.user_records,
            "push_sends": self.push_sends,
            "push_failures": self.push_failures,
        }


def article_id_for(stable_id: str) -> str:
    return sha256(stable_id.encode()).hexdigest()


class FanoutService:
    """Server-variant pass over every feed URL any user subscribes to.

    Articles are keyed by a hash of their GUID (or link), so an article seen
    through several subscriptions or passes is fanned out once. There is no
    watermark here; the article store is the dedup state.
    """

    def __init__(
        self,
        *,
        repository: FanoutRepository,
        http: HttpGetter,
        feed_parser: FeedParser,
        push_gateway: PushGateway,
        message_max_chars: int = 100,
        max_workers: int = 4,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._repository = repository
        self._http = http
        self._feed_parser = feed_parser
        self._push_gateway = push_gateway
        self._message_max_chars = max(1, message_max_chars)
        self._max_workers = max(1, max_workers)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def run_pass(self) -> FanoutStats:
        run_id = uuid4().hex
        tokens = bind_contextvars(fanout_run_id=run_id)
        try:
            feed_urls = self._repository.list_subscribed_feed_urls()
            with self._telemetry.span("fanout.pass", run_id=run_id, sources=len(feed_urls)) as finish:
                stats = FanoutStats.combine(self._process_all(feed_urls))
                finish.update(stats.to_payload())
            LOGGER.info(
                "fanout pass finished sources=%s failed=%s new_articles=%s user_records=%s",
                stats.sources,
                stats.failed_sources,
                stats.new_articles,
                stats.user_records,
            )
            return stats
        finally:
            reset_contextvars(**tokens)

    def _process_all(self, feed_urls: list[str]) -> list[SourceFanoutStats]:
        if not feed_urls:
            return []
        per_source: list[SourceFanoutStats] = []
        workers = min(self._max_workers, len(feed_urls))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._process_feed, url): url for url in feed_urls}
            for future in as_completed(futures):
                feed_url = futures[future]
                try:
                    per_source.append(future.result())
                except Exception:
                    LOGGER.warning("fanout failed feed_url=%s", feed_url, exc_info=True)
                    per_source.append(SourceFanoutStats(feed_url=feed_url, failed=True))
        return per_source

    def _process_feed(self, feed_url: str) -> SourceFanoutStats:
        try:
            raw = self._http.get(feed_url)
        except FetchError as exc:
            LOGGER.warning("fanout fetch failed feed_url=%s error=%s", feed_url, exc)
            return SourceFanoutStats(feed_url=feed_url, failed=True)

        result = self._feed_parser.parse(raw, locator=feed_url)
        if not result.ok:
            LOGGER.warning("fanout feed unparseable feed_url=%s error=%s", feed_url, result.error)
            return SourceFanoutStats(feed_url=feed_url, failed=True)

        new_articles = 0
        user_records = 0
        push_sends = 0
        push_failures = 0
        for article in result.articles:
            stored = self._store_if_new(feed_url, article)
            if stored is None:
                continue
            new_articles += 1
            records, sends, failures = self._fan_out(feed_url, stored)
            user_records += records
            push_sends += sends
            push_failures += failures

        return SourceFanoutStats(
            feed_url=feed_url,
            new_articles=new_articles,
            user_records=user_records,
            push_sends=push_sends,
            push_failures=push_failures,
        )

    def _store_if_new(self, feed_url: str, article: Article) -> StoredArticle | None:
        if not article.title or not article.link:
            return None
        if article.external_id.startswith(GENERATED_ID_PREFIX):
            return None

        article_id = article_id_for(article.external_id)
        if self._repository.article_exists(article_id):
            return None
        stored = StoredArticle(
            article_id=article_id,
            feed_url=feed_url,
            title=article.title,
            url=article.link,
            source_name=article.source_display_name,
            content_snippet=article.body,
            publish_timestamp=article.published_at,
            is_breaking=article.is_breaking,
        )
        # Another worker may have stored the same article since the check.
        if not self._repository.save_article(stored):
            return None
        return stored

    def _fan_out(self, feed_url: str, article: StoredArticle) -> tuple[int, int, int]:
        message = article.content_snippet[: self._message_max_chars]
        push_targets: list[str] = []
        records = 0
        for user_id in self._repository.list_subscriber_ids(feed_url):
            try:
                self._repository.append_user_notification(
                    user_id=user_id,
                    article_id=article.article_id,
                    title=article.title,
                    message=message,
                    source_name=article.source_name,
                )
                records += 1
                push_targets.extend(self._repository.list_push_tokens(user_id))
            except Exception:
                LOGGER.warning(
                    "fanout user record failed user_id=%s article_id=%s",
                    user_id,
                    article.article_id,
                    exc_info=True,
                )

        if not push_targets:
            return records, 0, 0
        push = PushMessage(
            title=f"New from {article.source_name}",
            body=article.title,
            url=article.url,
        )
        try:
            self._push_gateway.send_multicast(push_targets, push)
        except Exception:
            LOGGER.warning("push send failed article_id=%s", article.article_id, exc_info=True)
            return records, 0, 1
        return records, 1, 0
