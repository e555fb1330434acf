from __future__ import annotations

import asyncio
import logging
import threading

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from src.auth import get_bridge_service
from src.bridge.service import BridgeCancelledError, BridgeService
from src.observability import log_event


router = APIRouter(prefix="/chatwoot", tags=["chatwoot"])

DISCONNECT_POLL_SECONDS = 0.5
CLIENT_CLOSED_REQUEST = 499


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


async def _cancel_on_disconnect(request: Request, cancel: threading.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def _handle(request: Request, token: str | None, bridge: BridgeService) -> JSONResponse:
    raw_body = await request.body()
    cancel = threading.Event()
    watcher = asyncio.create_task(_cancel_on_disconnect(request, cancel))
    try:
        result = await run_in_threadpool(
            bridge.handle_outgoing_webhook,
            token,
            raw_body,
            cancel=cancel,
            request_id=_request_id(request),
        )
    except BridgeCancelledError:
        log_event("chatwoot_webhook_cancelled", level=logging.WARNING, request_id=_request_id(request))
        return JSONResponse(status_code=CLIENT_CLOSED_REQUEST, content={"error": "request cancelled"})
    finally:
        watcher.cancel()
    return JSONResponse(status_code=result.status_code, content=result.body)


@router.post("/webhook/{token}")
async def ingest_chatwoot_webhook(
    token: str,
    request: Request,
    bridge: BridgeService = Depends(get_bridge_service),
):
    return await _handle(request, token, bridge)


@router.post("/webhook")
async def ingest_chatwoot_webhook_query_token(
    request: Request,
    bridge: BridgeService = Depends(get_bridge_service),
):
    return await _handle(request, request.query_params.get("token"), bridge)
