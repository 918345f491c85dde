"""ROOK webhook endpoints for wearable health data.

Rules: always ACK fast, no processing inline.
Verifies the signature, stores the raw payload, enqueues it for the consumer
worker and returns. Blocking store/queue calls run in the threadpool.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from loguru import logger

from app.api.dependencies.webhooks import get_ingress, get_provider_names
from app.webhooks.ingress import WebhookIngress

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _known_provider(provider: str, providers: set[str] = Depends(get_provider_names)) -> str:
    name = provider.lower()
    if name not in providers:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown webhook provider: {provider}")
    return name


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.post("/{provider}/health-data")
async def receive_health_data(
    request: Request,
    provider_name: str = Depends(_known_provider),
    ingress: WebhookIngress = Depends(get_ingress),
) -> JSONResponse:
    """Acknowledge a health-data webhook.

    Returns:
        200 once stored (or acknowledged and dropped), 401 for a bad
        signature, 500 if the raw payload could not be stored
    """
    body = await request.body()
    logger.info(f"[ROOK_WEBHOOK] Received health data webhook ({provider_name}, {len(body)} bytes)")
    result = await run_in_threadpool(ingress.receive_health_data, body, request.headers, _client_ip(request))
    return JSONResponse(status_code=result.status_code, content=result.content)


@router.post("/{provider}/notifications")
async def receive_notification(
    request: Request,
    provider_name: str = Depends(_known_provider),
    ingress: WebhookIngress = Depends(get_ingress),
) -> JSONResponse:
    body = await request.body()
    logger.info(f"[ROOK_NOTIFICATION] Received notification webhook ({provider_name})")
    result = await run_in_threadpool(ingress.receive_notification, body, request.headers, _client_ip(request))
    return JSONResponse(status_code=result.status_code, content=result.content)


@router.get("/{provider}/health")
def webhook_health(provider_name: str = Depends(_known_provider)) -> dict[str, str]:
    return {
        "status": "healthy",
        "provider": provider_name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
