"""
Provider push endpoints.

Handlers answer fast: they validate and enqueue, nothing else.
"""

import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response

from mailsync.api.dependencies import get_webhook_ingestion
from mailsync.services.webhook_ingestion import WebhookIngestion, WebhookResult

router = APIRouter()


async def _json_body(request: Request) -> Any:
    body = await request.body()
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def _to_response(result: WebhookResult) -> Response:
    if result.media_type == "text/plain":
        return Response(content=result.body, media_type="text/plain", status_code=result.status_code)
    return JSONResponse(content=result.body, status_code=result.status_code)


@router.post("/webhooks/gmail")
async def gmail_push(
    request: Request,
    token: Optional[str] = Query(None),
    ingestion: WebhookIngestion = Depends(get_webhook_ingestion),
):
    """Gmail Pub/Sub push subscription endpoint (``?token=`` carries the shared secret)."""
    payload = await _json_body(request)
    return _to_response(await ingestion.handle_gmail(payload, token))


@router.post("/webhooks/outlook")
async def graph_notification(
    request: Request,
    validation_token: Optional[str] = Query(None, alias="validationToken"),
    ingestion: WebhookIngestion = Depends(get_webhook_ingestion),
):
    """Microsoft Graph change and lifecycle notifications."""
    payload = None if validation_token is not None else await _json_body(request)
    return _to_response(await ingestion.handle_graph(payload, validation_token))
