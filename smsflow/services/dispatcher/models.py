"""Trigger-side models read by the event dispatcher."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from smsflow.common.db import Base, utcnow


class BackInStockInterest(Base):
    """A contact waiting for an inventory item to be restocked."""

    __tablename__ = "back_in_stock_interests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    shop_id: Mapped[str] = mapped_column(String, index=True)
    contact_id: Mapped[str] = mapped_column(String)
    inventory_item_id: Mapped[str] = mapped_column(String, index=True)
    product_title: Mapped[str | None] = mapped_column(String, nullable=True)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
