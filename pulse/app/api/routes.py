from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from structlog.contextvars import bind_contextvars, reset_contextvars

from pulse.app.dependencies import (
    get_fanout_service,
    get_notification_history,
    get_poll_chain,
    get_scheduler_service,
    get_source_repository,
)
from pulse.app.models.api_contracts import (
    ClearNotificationsResponse,
    FanoutRunResponse,
    NotificationGroupResponse,
    NotificationListResponse,
    NotificationMutationResponse,
    NotificationResponse,
    PollPassResponse,
    SchedulerStartRequest,
    SchedulerStatusResponse,
    SourceCreateRequest,
    SourceResponse,
)
from pulse.app.repositories.source_repository import DuplicateSourceError, SourceRepository
from pulse.app.services.fanout_service import FanoutService
from pulse.app.services.notification_sink import NotificationHistory
from pulse.app.services.poll_chain import PollChain
from pulse.app.services.scheduler_service import SchedulerService

router = APIRouter()

HistoryDep = Annotated[NotificationHistory, Depends(get_notification_history)]
SourcesDep = Annotated[SourceRepository, Depends(get_source_repository)]
ChainDep = Annotated[PollChain, Depends(get_poll_chain)]
SchedulerDep = Annotated[SchedulerService, Depends(get_scheduler_service)]


def _notification_or_404(history: NotificationHistory, notification_id: str) -> NotificationResponse:
    notification = history.get(notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail=f"notification not found id={notification_id}")
    return NotificationResponse.from_domain(notification)


def _scheduler_status(chain: PollChain, scheduler: SchedulerService) -> SchedulerStatusResponse:
    status = chain.status()
    return SchedulerStatusResponse(
        state=status.state.value,
        next_run_at=status.next_run_at,
        attempt_count=status.attempt_count,
        base_interval_minutes=status.base_interval_minutes,
        last_outcome=status.last_outcome,
        last_run_at=status.last_run_at,
        runner_active=scheduler.running,
    )


@router.get(
    "/notifications",
    response_model=NotificationListResponse,
    tags=["notifications"],
    operation_id="list_notifications",
)
def list_notifications(
    history: HistoryDep,
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> NotificationListResponse:
    items = history.list_notifications(limit=limit)
    return NotificationListResponse(
        count=len(items),
        unread_count=sum(1 for item in items if not item.is_read),
        items=[NotificationResponse.from_domain(item) for item in items],
    )


@router.get(
    "/notifications/categories",
    response_model=list[NotificationGroupResponse],
    tags=["notifications"],
    operation_id="list_notification_categories",
)
def list_notification_categories(history: HistoryDep) -> list[NotificationGroupResponse]:
    return [
        NotificationGroupResponse(
            key=group.key,
            label=group.label,
            items=[NotificationResponse.from_domain(item) for item in group.notifications],
        )
        for group in history.grouped()
    ]


@router.post(
    "/notifications/{notification_id}/read",
    response_model=NotificationMutationResponse,
    tags=["notifications"],
    operation_id="mark_notification_read",
)
def mark_notification_read(notification_id: str, history: HistoryDep) -> NotificationMutationResponse:
    if not history.mark_read(notification_id):
        raise HTTPException(status_code=404, detail=f"notification not found id={notification_id}")
    return NotificationMutationResponse(
        ok=True,
        notification=_notification_or_404(history, notification_id),
    )


@router.post(
    "/notifications/{notification_id}/save",
    response_model=NotificationMutationResponse,
    tags=["notifications"],
    operation_id="toggle_notification_saved",
)
def toggle_notification_saved(
    notification_id: str,
    history: HistoryDep,
) -> NotificationMutationResponse:
    if not history.toggle_saved(notification_id):
        raise HTTPException(status_code=404, detail=f"notification not found id={notification_id}")
    return NotificationMutationResponse(
        ok=True,
        notification=_notification_or_404(history, notification_id),
    )


@router.delete(
    "/notifications/{notification_id}",
    response_model=NotificationMutationResponse,
    tags=["notifications"],
    operation_id="delete_notification",
)
def delete_notification(notification_id: str, history: HistoryDep) -> NotificationMutationResponse:
    if not history.delete(notification_id):
        raise HTTPException(status_code=404, detail=f"notification not found id={notification_id}")
    return NotificationMutationResponse(ok=True)


@router.delete(
    "/notifications",
    response_model=ClearNotificationsResponse,
    tags=["notifications"],
    operation_id="clear_notifications",
)
def clear_notifications(history: HistoryDep) -> ClearNotificationsResponse:
    return ClearNotificationsResponse(removed=history.clear_all())


@router.get(
    "/sources",
    response_model=list[SourceResponse],
    tags=["sources"],
    operation_id="list_sources",
)
def list_sources(sources: SourcesDep) -> list[SourceResponse]:
    return [SourceResponse.from_domain(source) for source in sources.list_sources()]


@router.post(
    "/sources",
    response_model=SourceResponse,
    status_code=201,
    tags=["sources"],
    operation_id="add_source",
)
def add_source(request: SourceCreateRequest, sources: SourcesDep) -> SourceResponse:
    try:
        source = sources.add_source(
            display_name=request.display_name,
            kind=request.kind,
            locator=request.locator,
        )
    except DuplicateSourceError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return SourceResponse.from_domain(source)


@router.delete(
    "/sources/{source_id}",
    response_model=SourceResponse,
    tags=["sources"],
    operation_id="remove_source",
)
def remove_source(source_id: str, sources: SourcesDep) -> SourceResponse:
    removed = sources.remove_source(source_id)
    if removed is None:
        raise HTTPException(status_code=404, detail=f"source not found id={source_id}")
    return SourceResponse.from_domain(removed)


@router.get(
    "/scheduler/status",
    response_model=SchedulerStatusResponse,
    tags=["scheduler"],
    operation_id="scheduler_status",
)
def scheduler_status(chain: ChainDep, scheduler: SchedulerDep) -> SchedulerStatusResponse:
    return _scheduler_status(chain, scheduler)


@router.post(
    "/scheduler/start",
    response_model=SchedulerStatusResponse,
    tags=["scheduler"],
    operation_id="scheduler_start",
)
def scheduler_start(
    chain: ChainDep,
    scheduler: SchedulerDep,
    request: SchedulerStartRequest | None = None,
) -> SchedulerStatusResponse:
    interval = request.interval_minutes if request is not None else None
    chain.start(interval)
    scheduler.wake()
    return _scheduler_status(chain, scheduler)


@router.post(
    "/scheduler/stop",
    response_model=SchedulerStatusResponse,
    tags=["scheduler"],
    operation_id="scheduler_stop",
)
def scheduler_stop(chain: ChainDep, scheduler: SchedulerDep) -> SchedulerStatusResponse:
    chain.stop()
    return _scheduler_status(chain, scheduler)


@router.post(
    "/scheduler/trigger",
    response_model=PollPassResponse,
    tags=["scheduler"],
    operation_id="scheduler_trigger",
)
def scheduler_trigger(chain: ChainDep) -> PollPassResponse:
    context_tokens = bind_contextvars(poll_trigger="manual")
    try:
        report = chain.trigger_now()
    finally:
        reset_contextvars(**context_tokens)
    return PollPassResponse.model_validate(report.to_payload())


@router.post(
    "/fanout/run",
    response_model=FanoutRunResponse,
    tags=["fanout"],
    operation_id="fanout_run",
)
def fanout_run(
    fanout: Annotated[FanoutService, Depends(get_fanout_service)],
) -> FanoutRunResponse:
    return FanoutRunResponse.model_validate(fanout.run_pass().to_payload())
