"""Persisted idempotency guard for provider webhook deliveries."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Mapped, mapped_column

from ..extensions import db


class ProcessedWebhookEvent(db.Model):
    """Provider event ids already applied; the primary key rejects replays."""

    __tablename__ = "processed_webhook_events"

    id: Mapped[str] = mapped_column(db.String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(db.String(128), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(db.DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<ProcessedWebhookEvent {self.id} {self.event_type}>"
