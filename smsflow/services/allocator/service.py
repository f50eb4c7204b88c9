"""Discount code allocator.

Reserve/release/assign mutate pool counters and code rows in one transaction.
Every counter write is a guarded UPDATE whose WHERE clause re-checks the
invariant, and a rowcount mismatch aborts the transaction, so two concurrent
reservations can never both pass an availability check for the same codes.
A campaign holds at most one active reservation; a second one raises
`StorageConflict` and leaves the pool untouched.
"""

from datetime import datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from smsflow.common.db import as_utc, utcnow
from smsflow.common.errors import (
    InvalidStatusTransition,
    NotFound,
    PoolExhausted,
    ReservationExpired,
    StorageConflict,
)
from smsflow.common.logging import logger
from smsflow.common.metrics import PipelineMetrics
from smsflow.services.allocator.models import DiscountCode, DiscountCodePool, DiscountCodeReservation


class PoolStatus(BaseModel):
    pool_id: str
    total: int
    reserved: int
    used: int
    available: int


class AllocatorService:
    """Owns every mutation of discount code pools."""

    def __init__(
        self,
        session_factory,
        metrics: PipelineMetrics | None = None,
        reservation_ttl_seconds: int = 7 * 24 * 3600,
    ) -> None:
        self.session_factory = session_factory
        self.metrics = metrics or PipelineMetrics()
        self.reservation_ttl = timedelta(seconds=reservation_ttl_seconds)

    def create_pool(self, shop_id: str, discount_id: str, codes: list[str], name: str = "") -> DiscountCodePool:
        """Import a block of codes as a new pool."""

        with self.session_factory() as db:
            pool = DiscountCodePool(
                shop_id=shop_id,
                discount_id=discount_id,
                name=name,
                total_codes=len(codes),
                reserved_codes=0,
                used_codes=0,
            )
            db.add(pool)
            db.flush()
            db.add_all(DiscountCode(pool_id=pool.id, code=code, status="available") for code in codes)
            db.commit()
            return pool

    def pool_status(self, pool_id: str) -> PoolStatus:
        with self.session_factory() as db:
            pool = db.get(DiscountCodePool, pool_id)
            if pool is None:
                raise NotFound(f"pool {pool_id} not found")
            return PoolStatus(
                pool_id=pool.id,
                total=pool.total_codes,
                reserved=pool.reserved_codes,
                used=pool.used_codes,
                available=pool.available_codes,
            )

    def _available(self, db, pool_id: str) -> int:
        return db.execute(
            select(
                DiscountCodePool.total_codes - DiscountCodePool.reserved_codes - DiscountCodePool.used_codes
            ).where(DiscountCodePool.id == pool_id)
        ).scalar_one()

    def reserve(
        self,
        pool_id: str,
        campaign_id: str,
        quantity: int,
        now: datetime | None = None,
    ) -> DiscountCodeReservation:
        """Reserve `quantity` codes oldest-first or raise `PoolExhausted`."""

        if quantity <= 0:
            raise ValueError("quantity must be positive")
        now = now or utcnow()
        with self.session_factory() as db:
            if db.get(DiscountCodePool, pool_id) is None:
                raise NotFound(f"pool {pool_id} not found")

            reclaimed = self._expire_reservations(db, now, pool_id=pool_id)
            if reclaimed:
                db.commit()

            result = db.execute(
                update(DiscountCodePool)
                .where(
                    DiscountCodePool.id == pool_id,
                    DiscountCodePool.total_codes - DiscountCodePool.reserved_codes - DiscountCodePool.used_codes
                    >= quantity,
                )
                .values(reserved_codes=DiscountCodePool.reserved_codes + quantity, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                available = self._available(db, pool_id)
                self.metrics.pool_exhausted_total.inc()
                logger.warning(
                    "pool exhausted pool_id=%s campaign_id=%s available=%s needed=%s",
                    pool_id,
                    campaign_id,
                    available,
                    quantity,
                )
                raise PoolExhausted(pool_id, available, quantity)

            reservation = DiscountCodeReservation(
                pool_id=pool_id,
                campaign_id=campaign_id,
                quantity=quantity,
                status="active",
                expires_at=now + self.reservation_ttl,
                created_at=now,
            )
            db.add(reservation)
            try:
                db.flush()
            except IntegrityError as exc:
                # Another request already holds the active reservation for this campaign.
                db.rollback()
                logger.info(
                    "reservation conflict pool_id=%s campaign_id=%s quantity=%s", pool_id, campaign_id, quantity
                )
                raise StorageConflict(f"campaign {campaign_id} already holds an active reservation") from exc

            code_ids = (
                db.execute(
                    select(DiscountCode.id)
                    .where(DiscountCode.pool_id == pool_id, DiscountCode.status == "available")
                    .order_by(DiscountCode.created_at, DiscountCode.id)
                    .limit(quantity)
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            flipped = db.execute(
                update(DiscountCode)
                .where(DiscountCode.id.in_(code_ids), DiscountCode.status == "available")
                .values(status="reserved", reservation_id=reservation.id, reserved_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if flipped != quantity:
                # Counters claimed more codes than rows could be flipped.
                db.rollback()
                self.metrics.pool_exhausted_total.inc()
                raise PoolExhausted(pool_id, flipped, quantity)
            db.commit()

        self.metrics.discount_codes_reserved_total.inc(quantity)
        logger.info(
            "codes reserved pool_id=%s campaign_id=%s reservation_id=%s quantity=%s",
            pool_id,
            campaign_id,
            reservation.id,
            quantity,
        )
        return reservation

    def _release_codes(self, db, reservation: DiscountCodeReservation, target_status: str, now: datetime) -> int:
        """Terminate one active reservation and return its unused codes to the pool."""

        guard = db.execute(
            update(DiscountCodeReservation)
            .where(DiscountCodeReservation.id == reservation.id, DiscountCodeReservation.status == "active")
            .values(status=target_status, released_at=now)
            .execution_options(synchronize_session=False)
        )
        if guard.rowcount != 1:
            raise StorageConflict(f"reservation {reservation.id} is no longer active")

        released = db.execute(
            update(DiscountCode)
            .where(DiscountCode.reservation_id == reservation.id, DiscountCode.status == "reserved")
            .values(status="available", reservation_id=None, reserved_at=None)
            .execution_options(synchronize_session=False)
        ).rowcount
        if released:
            counters = db.execute(
                update(DiscountCodePool)
                .where(DiscountCodePool.id == reservation.pool_id, DiscountCodePool.reserved_codes >= released)
                .values(reserved_codes=DiscountCodePool.reserved_codes - released, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if counters.rowcount != 1:
                raise StorageConflict(f"pool {reservation.pool_id} reserved counter below {released}")
        reservation.status = target_status
        reservation.released_at = now
        return released

    def release(self, reservation_id: str, reason: str = "released", now: datetime | None = None) -> int:
        """Release unused codes; returns how many went back to the pool."""

        target = "cancelled" if reason == "cancelled" else "released"
        now = now or utcnow()
        with self.session_factory() as db:
            reservation = db.get(DiscountCodeReservation, reservation_id)
            if reservation is None:
                raise NotFound(f"reservation {reservation_id} not found")
            if reservation.status != "active":
                raise InvalidStatusTransition(reservation.status, target)
            released = self._release_codes(db, reservation, target, now)
            db.commit()
        logger.info("reservation %s reservation_id=%s codes_released=%s", target, reservation_id, released)
        return released

    def _expire_reservations(self, db, now: datetime, pool_id: str | None = None) -> int:
        query = select(DiscountCodeReservation).where(
            DiscountCodeReservation.status == "active",
            DiscountCodeReservation.expires_at <= now,
        )
        if pool_id is not None:
            query = query.where(DiscountCodeReservation.pool_id == pool_id)
        expired = db.execute(query.with_for_update(skip_locked=True)).scalars().all()
        for reservation in expired:
            released = self._release_codes(db, reservation, "expired", now)
            logger.info(
                "reservation expired reservation_id=%s pool_id=%s codes_released=%s",
                reservation.id,
                reservation.pool_id,
                released,
            )
        return len(expired)

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Expire every active reservation past its deadline."""

        with self.session_factory() as db:
            count = self._expire_reservations(db, now or utcnow())
            db.commit()
        return count

    def assign(self, code_id: str, recipient_id: str, now: datetime | None = None) -> DiscountCode:
        """Consume one reserved code for a recipient."""

        now = now or utcnow()
        with self.session_factory() as db:
            code = db.get(DiscountCode, code_id)
            if code is None:
                raise NotFound(f"discount code {code_id} not found")
            if code.status != "reserved":
                raise InvalidStatusTransition(code.status, "used")
            reservation = db.get(DiscountCodeReservation, code.reservation_id) if code.reservation_id else None
            if reservation is None or reservation.status != "active" or as_utc(reservation.expires_at) <= now:
                raise ReservationExpired(f"reservation for code {code_id} is not active")

            result = db.execute(
                update(DiscountCode)
                .where(
                    DiscountCode.id == code_id,
                    DiscountCode.status == "reserved",
                    DiscountCode.reservation_id == reservation.id,
                )
                .values(status="used", used_at=now, assigned_to=recipient_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise InvalidStatusTransition("reserved", "used")
            counters = db.execute(
                update(DiscountCodePool)
                .where(DiscountCodePool.id == code.pool_id, DiscountCodePool.reserved_codes >= 1)
                .values(
                    reserved_codes=DiscountCodePool.reserved_codes - 1,
                    used_codes=DiscountCodePool.used_codes + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if counters.rowcount != 1:
                db.rollback()
                raise StorageConflict(f"pool {code.pool_id} has no reserved codes to consume")
            db.commit()
            code.status = "used"
            code.used_at = now
            code.assigned_to = recipient_id
            return code

    def next_reserved_code(self, reservation_id: str) -> DiscountCode | None:
        with self.session_factory() as db:
            return db.execute(
                select(DiscountCode)
                .where(DiscountCode.reservation_id == reservation_id, DiscountCode.status == "reserved")
                .order_by(DiscountCode.reserved_at, DiscountCode.created_at, DiscountCode.id)
                .limit(1)
            ).scalar_one_or_none()

    def active_reservation_for(self, campaign_id: str) -> DiscountCodeReservation | None:
        with self.session_factory() as db:
            return db.execute(
                select(DiscountCodeReservation)
                .where(
                    DiscountCodeReservation.campaign_id == campaign_id,
                    DiscountCodeReservation.status == "active",
                )
                .order_by(DiscountCodeReservation.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
