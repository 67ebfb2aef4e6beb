"""
AuditLog model for CreativeWriter
Immutable audit trail for billing and administration actions
(orders, payment verification, webhooks, overrides, cancellations, catalog edits).
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from creativewriter.db.base import Base
from creativewriter.db.models.mixins import UUIDMixin
from creativewriter.db.utils import utcnow


class AuditLog(Base, UUIDMixin):
    """
    Audit Log Entry
    - Immutable record of user/system/admin actions
    - JSON metadata for flexible context
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_user_id_action", "user_id", "action"),
    )

    event_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # Who performed the action (null = system, e.g. gateway webhook)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    action: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        comment="Action identifier (e.g. 'order_created', 'payment_verified', 'plan_overridden')"
    )
    event_metadata: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    # Request context
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    request_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        fields = [f"id={self.id}", f"action={self.action!r}"]
        if self.user_id:
            fields.append(f"user_id={self.user_id}")
        fields.append(f"created_at={self.created_at}")
        return f"<AuditLog({' '.join(fields)})>"
