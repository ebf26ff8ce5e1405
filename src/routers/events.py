"""Event intake for deployments where the live store or profile store lives elsewhere.

Each route converts the posted snapshot into the in-process event type and
hands it to the same handler the in-process store signals call.  Handlers
never raise, so these routes answer 200 for every well-formed event;
redelivery of a failed event would only compound duplicate sends.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter

from src.dependencies import AppServices
from src.heartbeat.dispatcher import DispatchResult
from src.heartbeat.models import (
    HeartbeatWriteEvent,
    NotificationTrigger,
    TriggerWriteEvent,
    from_epoch_ms,
)
from src.models.heartbeat import (
    DispatchResultRead,
    HeartbeatWrittenEvent,
    ProfileUpdatedEvent,
    ScoreUpdateRead,
    TriggerWrittenEvent,
)

router = APIRouter(prefix="/events", tags=["events"])
logger = logging.getLogger("pulsecast.routers.events")


def _dispatch_read(result: DispatchResult) -> DispatchResultRead:
    return DispatchResultRead(
        owner_id=result.owner_id,
        outcome=result.outcome.value,
        bpm=result.bpm,
        tokens_attempted=result.tokens_attempted,
        success_count=result.success_count,
        failure_count=result.failure_count,
        sent_at=result.sent_at,
    )


@router.post("/heartbeat-written", response_model=DispatchResultRead)
async def heartbeat_written(body: HeartbeatWrittenEvent, services: AppServices) -> Any:
    event = HeartbeatWriteEvent(
        owner_id=body.owner_id,
        before=body.before.to_record(body.owner_id) if body.before else None,
        after=body.after.to_record(body.owner_id) if body.after else None,
    )
    result = await services.dispatcher.handle_heartbeat_write(event)
    return _dispatch_read(result)


@router.post("/trigger-written", response_model=DispatchResultRead)
async def trigger_written(body: TriggerWrittenEvent, services: AppServices) -> Any:
    trigger = None
    if body.triggered_at is not None:
        trigger = NotificationTrigger(
            owner_id=body.owner_id, triggered_at=from_epoch_ms(body.triggered_at)
        )
    result = await services.dispatcher.handle_trigger_write(
        TriggerWriteEvent(owner_id=body.owner_id, trigger=trigger)
    )
    return _dispatch_read(result)


@router.post("/profile-updated", response_model=ScoreUpdateRead)
async def profile_updated(body: ProfileUpdatedEvent, services: AppServices) -> Any:
    """Mirror a change of an owner's max-connections metric into the ranking."""
    updated = await services.ranking.apply_score_update(
        body.owner_id, body.max_connections_before, body.max_connections_after
    )
    return ScoreUpdateRead(owner_id=body.owner_id, updated=updated)
