"""Delivery database models.

`messages` is the source of truth for every outbound SMS; contacts are owned
elsewhere and only read here, except for opt-out writes on inbound STOP.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from smsflow.common.db import Base, JSONType, utcnow


class Contact(Base):
    """Shop subscriber with SMS consent state."""

    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("shop_id", "phone_e164", name="uq_contacts_shop_phone"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    shop_id: Mapped[str] = mapped_column(String, index=True)
    customer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    phone_e164: Mapped[str] = mapped_column(String, index=True)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    sms_consent_state: Mapped[str] = mapped_column(String, default="unknown")
    sms_consent_source: Mapped[str | None] = mapped_column(String, nullable=True)
    opted_out: Mapped[bool] = mapped_column(Boolean, default=False)
    unsubscribed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def can_receive_sms(self) -> bool:
        return not self.opted_out and self.sms_consent_state == "opted_in"


class Message(Base):
    """One outbound SMS and its delivery lifecycle."""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    shop_id: Mapped[str] = mapped_column(String, index=True)
    contact_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    campaign_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    automation_id: Mapped[str | None] = mapped_column(String, nullable=True)
    to_phone: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    provider: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="queued", index=True)
    provider_message_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    trigger_key: Mapped[str | None] = mapped_column(String, nullable=True)
    discount_code_id: Mapped[str | None] = mapped_column(String, nullable=True)
    lease_token: Mapped[str | None] = mapped_column(String, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
