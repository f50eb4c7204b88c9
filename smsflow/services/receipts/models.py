"""Inbound reply log."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from smsflow.common.db import Base, utcnow


class InboundMessage(Base):
    __tablename__ = "inbound_messages"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    from_phone: Mapped[str] = mapped_column(String, index=True)
    text: Mapped[str] = mapped_column(Text)
    action: Mapped[str] = mapped_column(String)
    matched_contacts: Mapped[int] = mapped_column(Integer, default=0)
    provider_timestamp: Mapped[str | None] = mapped_column(String, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
