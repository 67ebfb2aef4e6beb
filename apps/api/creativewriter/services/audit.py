"""
Audit Logging Service - CreativeWriter
Immutable audit trail for billing and administration actions.
Entries are written in the caller's transaction, so an audit row exists
exactly when the action it describes was committed.
"""

import json
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from creativewriter.db.models import AuditLog

logger = logging.getLogger(__name__)


def audit_log(
    db: AsyncSession,
    action: str,
    user_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
    event_id: Optional[str] = None,
) -> AuditLog:
    """
    Add an audit entry to the session.

    Args:
        db: Session whose transaction the entry joins
        action: Descriptive action name (e.g. "order_created", "payment_verified")
        user_id: Acting user (None for gateway/system events)
        metadata: Context dict (stored as JSON)
        request: FastAPI Request (for IP, user-agent, request ID)
        event_id: Optional external trace ID (for correlation)
    """
    event_id = event_id or str(uuid.uuid4())
    metadata = metadata or {}

    ip = request.client.host if request is not None and request.client else None
    ua = request.headers.get("user-agent") if request is not None else None
    req_id = getattr(request.state, "request_id", None) if request is not None else None

    entry = AuditLog(
        event_id=event_id,
        user_id=user_id,
        action=action,
        event_metadata=json.loads(json.dumps(metadata, default=str)),
        ip_address=ip,
        user_agent=ua,
        request_id=req_id,
    )
    db.add(entry)

    logger.info(
        f"AUDIT [{event_id}]: {action}",
        extra={"user_id": user_id, "audit_metadata": json.dumps(metadata, default=str), "request_id": req_id},
    )
    return entry
