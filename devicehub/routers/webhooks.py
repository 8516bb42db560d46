import json
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from devicehub.audit import request_client_ip
from devicehub.db import get_db
from devicehub.services.webhook_ingest import handle_webhook_event
from devicehub.services.webhook_payloads import WebhookContext, parse_device_id
from devicehub.settings import get_webhook_path_prefix

router = APIRouter(tags=["webhooks"])
WEBHOOK_PREFIX = get_webhook_path_prefix()


def _decode_body(raw: bytes) -> Any:
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        return {}
    try:
        return json.loads(text)
    except (ValueError, RecursionError):
        return {"raw": text}


async def _ingest(request: Request, db: Session, path_device_id: int | None) -> dict[str, Any]:
    body = _decode_body(await request.body())
    context = WebhookContext(
        path_device_id=path_device_id,
        client_ip=request_client_ip(request),
        query=dict(request.query_params),
    )
    request.state.actor = "device"
    request.state.actor_id = str(path_device_id) if path_device_id is not None else (context.client_ip or "unknown")
    return await run_in_threadpool(handle_webhook_event, db, body=body, context=context)


@router.post(WEBHOOK_PREFIX)
async def receive_device_event(request: Request, db: Session = Depends(get_db)) -> dict[str, Any]:
    return await _ingest(request, db, None)


@router.post(f"{WEBHOOK_PREFIX}/{{device_id}}")
async def receive_device_event_for_device(
    device_id: str,
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return await _ingest(request, db, parse_device_id(device_id))
