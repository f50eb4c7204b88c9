"""Discount code pool models.

Pool counters are only changed through `AllocatorService`; every write there
is a guarded UPDATE so `reserved + used <= total` holds under concurrency.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from smsflow.common.db import Base, utcnow


class DiscountCodePool(Base):
    """Inventory of single-use codes belonging to one discount."""

    __tablename__ = "discount_code_pools"
    __table_args__ = (
        CheckConstraint("reserved_codes + used_codes <= total_codes", name="ck_pool_counters"),
        CheckConstraint("reserved_codes >= 0 AND used_codes >= 0", name="ck_pool_non_negative"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    shop_id: Mapped[str] = mapped_column(String, index=True)
    discount_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String, default="")
    total_codes: Mapped[int] = mapped_column(Integer, default=0)
    reserved_codes: Mapped[int] = mapped_column(Integer, default=0)
    used_codes: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def available_codes(self) -> int:
        return self.total_codes - self.reserved_codes - self.used_codes


class DiscountCodeReservation(Base):
    """Time-bounded claim on a block of codes for one campaign."""

    __tablename__ = "discount_code_reservations"
    __table_args__ = (
        Index(
            "uq_reservations_active_campaign",
            "campaign_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    pool_id: Mapped[str] = mapped_column(ForeignKey("discount_code_pools.id"), index=True)
    campaign_id: Mapped[str] = mapped_column(String, index=True)
    quantity: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DiscountCode(Base):
    """One single-use code string."""

    __tablename__ = "discount_codes"
    __table_args__ = (UniqueConstraint("pool_id", "code", name="uq_discount_codes_pool_code"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    pool_id: Mapped[str] = mapped_column(ForeignKey("discount_code_pools.id"), index=True)
    code: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="available", index=True)
    reservation_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    reserved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_to: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
