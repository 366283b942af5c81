from __future__ import annotations

from collections.abc import Mapping, Sequence

from pulse.app.repositories.database import Database
from pulse.app.repositories.fanout_repository import FanoutRepository
from pulse.app.services.fanout_service import FanoutService, article_id_for
from pulse.app.services.feed_parser import FeedParser
from pulse.app.services.http_client import FetchError
from pulse.app.services.push_gateway import PushMessage

REUTERS_URL = "https://feeds.reuters.test/world"
DOWN_URL = "https://down.test/rss"
LONG_BODY = "x" * 150
REUTERS_FEED = f"""<rss><channel><title>Reuters</title>
<item><title>Rates held</title><link>https://r/1</link><guid>r-1</guid>
<description>{LONG_BODY}</description>
<pubDate>Mon, 06 Jan 2025 10:00:00 GMT</pubDate></item>
<item><title>No link here</title><guid>r-2</guid></item>
</channel></rss>""".encode()


class _FakeHttp:
    def __init__(self, bodies: Mapping[str, bytes]) -> None:
        self._bodies = dict(bodies)

    def get(self, url: str, *, headers: Mapping[str, str] | None = None) -> bytes:
        _ = headers
        if url in self._bodies:
            return self._bodies[url]
        raise FetchError(f"connection refused {url}")


class _RecordingGateway:
    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[tuple[list[str], PushMessage]] = []
        self._fail = fail

    def send_multicast(self, tokens: Sequence[str], message: PushMessage) -> int:
        if self._fail:
            raise RuntimeError("push relay unavailable")
        self.sent.append((list(tokens), message))
        return len(tokens)


class _BrokenUserRepository(FanoutRepository):
    def __init__(self, db: Database, *, broken_user: str) -> None:
        super().__init__(db)
        self._broken_user = broken_user

    def append_user_notification(
        self,
        *,
        user_id: str,
        article_id: str,
        title: str,
        message: str,
        source_name: str,
    ) -> str:
        if user_id == self._broken_user:
            raise RuntimeError(f"storage error for {user_id}")
        return super().append_user_notification(
            user_id=user_id,
            article_id=article_id,
            title=title,
            message=message,
            source_name=source_name,
        )

def _seed(repository: FanoutRepository) -> None:
    repository.add_subscription(user_id="alice", source_url=REUTERS_URL)
    repository.add_subscription(user_id="bob", source_url=REUTERS_URL)
    repository.add_push_token(user_id="alice", token="alice-phone")
    repository.add_push_token(user_id="bob", token="bob-phone")
    repository.add_push_token(user_id="bob", token="bob-tablet")


def _service(database: Database, gateway: _RecordingGateway) -> FanoutService:
    return FanoutService(
        repository=FanoutRepository(database),
        http=_FakeHttp({REUTERS_URL: REUTERS_FEED}),
        feed_parser=FeedParser(),
        push_gateway=gateway,
    )


def test_new_article_reaches_every_subscriber_in_one_multicast(database: Database) -> None:
    repository = FanoutRepository(database)
    _seed(repository)
    gateway = _RecordingGateway()

    stats = _service(database, gateway).run_pass()

    assert stats.sources == 1
    assert stats.new_articles == 1
    assert stats.user_records == 2
    assert stats.push_sends == 1
    assert repository.article_exists(article_id_for("r-1"))
    assert not repository.article_exists(article_id_for("r-2"))

    tokens, message = gateway.sent[0]
    assert sorted(tokens) == ["alice-phone", "bob-phone", "bob-tablet"]
    assert message.title == "New from Reuters"
    assert message.body == "Rates held"
    assert message.url == "https://r/1"

    alice_records = repository.list_user_notifications("alice")
    assert len(alice_records) == 1
    assert alice_records[0].message == "x" * 100


def test_second_pass_fans_out_nothing(database: Database) -> None:
    _seed(FanoutRepository(database))
    gateway = _RecordingGateway()
    service = _service(database, gateway)

    service.run_pass()
    stats = service.run_pass()

    assert stats.new_articles == 0
    assert stats.user_records == 0
    assert len(gateway.sent) == 1


def test_push_failure_keeps_user_records(database: Database) -> None:
    repository = FanoutRepository(database)
    _seed(repository)

    stats = _service(database, _RecordingGateway(fail=True)).run_pass()

    assert stats.push_failures == 1
    assert stats.push_sends == 0
    assert len(repository.list_user_notifications("bob")) == 1


def test_one_users_storage_error_does_not_block_other_subscribers(database: Database) -> None:
    repository = _BrokenUserRepository(database, broken_user="alice")
    _seed(repository)
    gateway = _RecordingGateway()
    service = FanoutService(
        repository=repository,
        http=_FakeHttp({REUTERS_URL: REUTERS_FEED}),
        feed_parser=FeedParser(),
        push_gateway=gateway,
    )

    stats = service.run_pass()

    assert stats.failed_sources == 0
    assert stats.new_articles == 1
    assert stats.user_records == 1
    assert repository.list_user_notifications("alice") == []
    assert len(repository.list_user_notifications("bob")) == 1
    tokens, _ = gateway.sent[0]
    assert sorted(tokens) == ["bob-phone", "bob-tablet"]

def test_unreachable_feed_does_not_block_others(database: Database) -> None:
    repository = FanoutRepository(database)
    _seed(repository)
    repository.add_subscription(user_id="alice", source_url=DOWN_URL)

    stats = _service(database, _RecordingGateway()).run_pass()

    assert stats.sources == 2
    assert stats.failed_sources == 1
    assert stats.new_articles == 1


def test_no_subscriptions_is_an_empty_pass(database: Database) -> None:
    stats = _service(database, _RecordingGateway()).run_pass()

    assert stats.to_payload() == {
        "sources": 0,
        "failed_sources": 0,
        "new_articles": 0,
        "user_records": 0,
        "push_sends": 0,
        "push_failures": 0,
    }
