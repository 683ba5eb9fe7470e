"""
schemas/messages.py — Inbound message payload accepted by the pipeline

Business Rules:
- message_id is the external id and is required
- received_at must be timezone-aware; naive values are taken as UTC
- attachment_text is supplied by the caller (no PDF/OCR work happens here)

Called by: services/pipeline.py, scripts/
Depends on: pydantic
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator


class InboundMessage(BaseModel):
    message_id: str = Field(min_length=1)
    thread_id: str | None = None
    subject: str = ""
    sender: str = ""
    received_at: datetime
    attachment_names: list[str] = Field(default_factory=list)
    body_text: str = ""
    attachment_text: str = ""

    @field_validator("received_at")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("subject", "sender", "body_text", "attachment_text", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return v or ""

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachment_names)

    @property
    def has_pdf(self) -> bool:
        return any(name.lower().endswith(".pdf") for name in self.attachment_names)
