"""Push notification transport (FCM HTTP v1).

``send_multicast`` mirrors the semantics of a multicast send: each token is
delivered independently and the result lists a success flag per token.  A
failing token never fails the batch.  Timeouts are enforced by the httpx
client; a timed-out token is reported as a failure like any other.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

import httpx

from src.heartbeat.models import PushBatchResult, PushPayload, TokenResult

logger = logging.getLogger("pulsecast.push")

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"


class PushTransport(ABC):
    @abstractmethod
    async def send_multicast(self, payload: PushPayload) -> PushBatchResult:
        """Deliver ``payload`` to every token; never raises for per-token failures."""


class FcmPushTransport(PushTransport):
    """Firebase Cloud Messaging HTTP v1 transport.

    Args:
        project_id:      Firebase project id.
        access_token:    OAuth2 bearer token with the firebase.messaging scope.
        http_client:     Optional pre-configured httpx client (for testing).
        timeout_seconds: Per-request timeout.
        max_concurrent:  Parallel requests per batch.
    """

    def __init__(
        self,
        project_id: str,
        access_token: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
        max_concurrent: int = 50,
    ) -> None:
        self._url = FCM_SEND_URL.format(project_id=project_id)
        self._access_token = access_token
        self._http_client = http_client
        self._timeout = timeout_seconds
        self._max_concurrent = max_concurrent

    async def send_multicast(self, payload: PushPayload) -> PushBatchResult:
        message = payload.to_message()
        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def send_one(client: httpx.AsyncClient, token: str) -> TokenResult:
            body = {
                "message": {
                    "token": token,
                    "notification": message["notification"],
                    "data": message["data"],
                }
            }
            async with semaphore:
                try:
                    response = await client.post(
                        self._url,
                        json=body,
                        headers={"Authorization": f"Bearer {self._access_token}"},
                    )
                    response.raise_for_status()
                    return TokenResult(token=token, success=True)
                except httpx.HTTPError as exc:
                    return TokenResult(token=token, success=False, error=str(exc))

        if self._http_client:
            results = await asyncio.gather(
                *(send_one(self._http_client, t) for t in payload.tokens)
            )
        else:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout)) as client:
                results = await asyncio.gather(*(send_one(client, t) for t in payload.tokens))

        return PushBatchResult(responses=list(results))


class LoggingPushTransport(PushTransport):
    """Development transport: logs each batch and reports every token delivered."""

    async def send_multicast(self, payload: PushPayload) -> PushBatchResult:
        logger.info(
            "[dry-run push] %s / %s → %d tokens", payload.title, payload.body, len(payload.tokens)
        )
        return PushBatchResult(
            responses=[TokenResult(token=t, success=True) for t in payload.tokens]
        )
