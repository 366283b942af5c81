from __future__ import annotations

from functools import lru_cache

from pulse.app.config import AppSettings, load_settings
from pulse.app.repositories.database import Database
from pulse.app.repositories.fanout_repository import FanoutRepository
from pulse.app.repositories.notification_repository import NotificationRepository
from pulse.app.repositories.poll_job_repository import PollJobRepository
from pulse.app.repositories.source_repository import SourceRepository
from pulse.app.repositories.watermark_repository import WatermarkRepository
from pulse.app.services.dedup_engine import DedupService
from pulse.app.services.fanout_service import FanoutService
from pulse.app.services.feed_parser import FeedParser
from pulse.app.services.fetch_dispatcher import FetchDispatcher
from pulse.app.services.http_client import HttpFetcher
from pulse.app.services.notification_sink import LogNotificationDelivery, NotificationHistory
from pulse.app.services.poll_chain import BackoffPolicy, PollChain
from pulse.app.services.poll_pass import PollPassService
from pulse.app.services.push_gateway import build_push_gateway
from pulse.app.services.scheduler_service import SchedulerService
from pulse.app.services.timeline_client import TimelineClient
from pulse.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_http_fetcher() -> HttpFetcher:
    settings = get_settings()
    return HttpFetcher(
        timeout_seconds=settings.http_timeout_seconds,
        user_agent=settings.http_user_agent,
    )


@lru_cache(maxsize=1)
def get_feed_parser() -> FeedParser:
    settings = get_settings()
    return FeedParser(
        breaking_keywords=settings.breaking_keywords,
        body_max_chars=settings.feed_body_max_chars,
    )


@lru_cache(maxsize=1)
def get_source_repository() -> SourceRepository:
    return SourceRepository(get_database())


@lru_cache(maxsize=1)
def get_watermark_store() -> WatermarkRepository:
    return WatermarkRepository(get_database())


@lru_cache(maxsize=1)
def get_notification_history() -> NotificationHistory:
    settings = get_settings()
    return NotificationHistory(
        NotificationRepository(get_database()),
        cap=settings.notification_history_cap,
        delivery=LogNotificationDelivery(),
        recent_window_seconds=settings.delivery_recent_window_seconds,
    )


@lru_cache(maxsize=1)
def get_poll_pass_service() -> PollPassService:
    settings = get_settings()
    watermarks = get_watermark_store()
    http = get_http_fetcher()
    dispatcher = FetchDispatcher(
        http=http,
        feed_parser=get_feed_parser(),
        timeline_client=TimelineClient(
            http=http,
            bearer_token=settings.timeline_bearer_token,
            base_url=settings.timeline_api_base_url,
            page_size=settings.timeline_page_size,
        ),
        watermarks=watermarks,
        telemetry=get_telemetry(),
    )
    return PollPassService(
        sources=get_source_repository(),
        dispatcher=dispatcher,
        dedup=DedupService(watermarks, first_fetch_limit=settings.first_fetch_limit),
        history=get_notification_history(),
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_poll_chain() -> PollChain:
    settings = get_settings()
    return PollChain(
        jobs=PollJobRepository(
            get_database(),
            default_interval_minutes=settings.poll_base_interval_minutes,
        ),
        runner=get_poll_pass_service(),
        policy=BackoffPolicy.from_schedule(
            max_attempts=settings.poll_max_attempts,
            backoff_minutes=settings.poll_backoff_minutes,
        ),
        default_interval_minutes=settings.poll_base_interval_minutes,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_scheduler_service() -> SchedulerService:
    settings = get_settings()
    return SchedulerService(
        get_poll_chain(),
        settings.scheduler_tick_seconds,
        telemetry=get_telemetry(),
        lock_path=settings.data_dir / "scheduler.lock",
    )


@lru_cache(maxsize=1)
def get_fanout_service() -> FanoutService:
    settings = get_settings()
    http = get_http_fetcher()
    return FanoutService(
        repository=FanoutRepository(get_database()),
        http=http,
        feed_parser=get_feed_parser(),
        push_gateway=build_push_gateway(http=http, endpoint_url=settings.push_gateway_url),
        message_max_chars=settings.notification_message_max_chars,
        max_workers=settings.fanout_max_workers,
        telemetry=get_telemetry(),
    )


def reset_cached_dependencies() -> None:
    get_fanout_service.cache_clear()
    get_scheduler_service.cache_clear()
    get_poll_chain.cache_clear()
    get_poll_pass_service.cache_clear()
    get_notification_history.cache_clear()
    get_watermark_store.cache_clear()
    get_source_repository.cache_clear()
    get_feed_parser.cache_clear()
    get_http_fetcher.cache_clear()
    get_telemetry.cache_clear()
    get_database.cache_clear()
    get_settings.cache_clear()
