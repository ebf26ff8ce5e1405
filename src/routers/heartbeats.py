"""Companion ingestion endpoint for relay envelopes."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, HTTPException

from src.dependencies import AppServices
from src.heartbeat.errors import InvalidEnvelopeError
from src.heartbeat.relay import ingest_envelope
from src.models.heartbeat import IngestResponse

router = APIRouter(prefix="/heartbeats", tags=["heartbeats"])
logger = logging.getLogger("pulsecast.routers.heartbeats")


@router.post("/relay", response_model=IngestResponse, status_code=202)
async def relay_heartbeat(
    services: AppServices, envelope: dict[str, Any] = Body(...)
) -> Any:
    """Apply one relay envelope to the live store.

    Valid readings are written, clears drop the current sample and other
    invalid readings are ignored.  Notification dispatch follows from the
    store write.
    """
    try:
        outcome = await ingest_envelope(services.store, envelope)
    except InvalidEnvelopeError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    data = envelope.get("data", envelope)
    return IngestResponse(owner_id=data["ownerId"], outcome=outcome.value)
