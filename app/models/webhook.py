"""
Webhook job model.

One row per inbound webhook delivery. The row is mutated only by the
queue processor and removed only by the cleanup sweep.
"""
import uuid
import enum
from datetime import datetime
from typing import Any
from sqlalchemy import String, Text, Integer, DateTime, JSON, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base, TimestampMixin


class WebhookJobStatus(str, enum.Enum):
    """Webhook job status enum."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookType(str, enum.Enum):
    """Webhook sources with a built-in handler."""
    STRIPE = "stripe"
    YOUTUBE = "youtube"
    A2E = "a2e"


class WebhookJob(Base, TimestampMixin):
    """
    Durable record of one inbound webhook and its processing attempts.

    Only PENDING rows are picked up by the processor. COMPLETED is terminal;
    FAILED is terminal until an operator retries the job.
    """
    __tablename__ = "webhook_queue"
    __table_args__ = (
        Index("ix_webhook_queue_status_processed_at", "status", "processed_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    # Plain string rather than WebhookType: handlers can be registered at runtime
    webhook_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    payload: Mapped[Any] = mapped_column(JSON, nullable=False)
    status: Mapped[WebhookJobStatus] = mapped_column(
        SQLEnum(
            WebhookJobStatus,
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=WebhookJobStatus.PENDING,
        index=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set by each claim; a PROCESSING row with an old claim was abandoned
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        """Serialize for API responses and logs."""
        return {
            "id": self.id,
            "webhook_type": self.webhook_type,
            "payload": self.payload,
            "status": self.status.value if isinstance(self.status, WebhookJobStatus) else self.status,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<WebhookJob(id={self.id}, type={self.webhook_type}, status={self.status})>"
