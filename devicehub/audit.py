from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from devicehub.models import AuditActorType, AuditLog
from devicehub.security import DataScope

logger = logging.getLogger("devicehub.audit")


def request_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def request_actor_id(request: Request) -> str:
    return str(getattr(request.state, "actor_id", None) or "admin")


@dataclass(frozen=True, slots=True)
class AuditContext:
    """Who performed a device operation, for which organization, and from where."""

    actor_type: AuditActorType
    actor_id: str
    organization_id: int | None = None
    ip: str | None = None
    user_agent: str | None = None
    request_id: str | None = None

    @classmethod
    def from_request(cls, request: Request, scope: DataScope) -> "AuditContext":
        request_id = getattr(request.state, "request_id", None)
        return cls(
            actor_type=AuditActorType.ADMIN,
            actor_id=request_actor_id(request),
            organization_id=scope.organization_id,
            ip=request_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            request_id=str(request_id) if request_id else None,
        )


def log_audit(
    db: Session,
    context: AuditContext,
    *,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: Any = None,
    details: dict[str, Any] | None = None,
) -> None:
    entity_ref = str(entity_id) if entity_id is not None else None
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        organization_id=context.organization_id,
        actor_type=context.actor_type,
        actor_id=context.actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_ref,
        ip=context.ip,
        user_agent=context.user_agent,
        request_id=context.request_id,
        success=success,
        details=details or {},
    )
    db.add(audit)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": context.request_id,
                "action": action,
                "actor_type": context.actor_type.value,
                "actor_id": context.actor_id,
                "organization_id": context.organization_id,
                "success": success,
            },
        )
        return

    logger.info(
        "audit_event",
        extra={
            "request_id": context.request_id,
            "action": action,
            "actor_type": context.actor_type.value,
            "actor_id": context.actor_id,
            "organization_id": context.organization_id,
            "entity_type": entity_type,
            "entity_id": entity_ref,
            "ip": context.ip,
            "success": success,
            "details": details or {},
        },
    )
