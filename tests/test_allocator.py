"""Discount code pool invariants: no oversell, exact release, guarded assign."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from smsflow.common.db import Base, utcnow
from smsflow.common.errors import (
    InvalidStatusTransition,
    NotFound,
    PoolExhausted,
    ReservationExpired,
    StorageConflict,
)
from smsflow.services.allocator.models import DiscountCode, DiscountCodeReservation
from smsflow.services.allocator.service import AllocatorService


@pytest.fixture
def allocator(session_factory, metrics):
    return AllocatorService(session_factory, metrics, reservation_ttl_seconds=3600)


@pytest.fixture
def pool(allocator):
    return allocator.create_pool("shop-1", "disc-1", [f"CODE{n:02d}" for n in range(10)], name="spring")


def _codes_by_status(session_factory, pool_id):
    with session_factory() as db:
        rows = db.execute(
            select(DiscountCode.status, func.count()).where(DiscountCode.pool_id == pool_id).group_by(DiscountCode.status)
        ).all()
    return dict(rows)


def test_full_pool_blocks_until_released(allocator, pool):
    reservation = allocator.reserve(pool.id, "camp-1", 10)

    with pytest.raises(PoolExhausted) as exc_info:
        allocator.reserve(pool.id, "camp-2", 1)
    assert exc_info.value.available == 0
    assert exc_info.value.needed == 1

    assert allocator.release(reservation.id) == 10
    allocator.reserve(pool.id, "camp-2", 1)

    status = allocator.pool_status(pool.id)
    assert (status.total, status.reserved, status.used, status.available) == (10, 1, 0, 9)


def test_reservations_never_oversell(allocator, pool, session_factory, metrics):
    allocator.reserve(pool.id, "camp-1", 4)
    allocator.reserve(pool.id, "camp-2", 6)

    with pytest.raises(PoolExhausted):
        allocator.reserve(pool.id, "camp-3", 1)

    status = allocator.pool_status(pool.id)
    assert status.reserved == 10
    assert status.available == 0
    assert _codes_by_status(session_factory, pool.id) == {"reserved": 10}
    assert metrics.discount_codes_reserved_total._value.get() == 10
    assert metrics.pool_exhausted_total._value.get() == 1


def test_partial_request_is_rejected_whole(allocator, pool, session_factory):
    allocator.reserve(pool.id, "camp-1", 7)

    with pytest.raises(PoolExhausted) as exc_info:
        allocator.reserve(pool.id, "camp-2", 5)

    assert exc_info.value.available == 3
    assert _codes_by_status(session_factory, pool.id) == {"reserved": 7, "available": 3}


def test_release_returns_only_unused_codes(allocator, pool, session_factory):
    reservation = allocator.reserve(pool.id, "camp-1", 3)
    code = allocator.next_reserved_code(reservation.id)
    allocator.assign(code.id, "recipient-1")

    assert allocator.release(reservation.id, reason="cancelled") == 2

    status = allocator.pool_status(pool.id)
    assert (status.reserved, status.used, status.available) == (0, 1, 9)
    assert _codes_by_status(session_factory, pool.id) == {"available": 9, "used": 1}
    with pytest.raises(InvalidStatusTransition):
        allocator.release(reservation.id)


def test_assign_consumes_a_code_once(allocator, pool):
    reservation = allocator.reserve(pool.id, "camp-1", 2)
    code = allocator.next_reserved_code(reservation.id)

    used = allocator.assign(code.id, "recipient-1")
    assert used.status == "used"
    assert used.assigned_to == "recipient-1"

    with pytest.raises(InvalidStatusTransition):
        allocator.assign(code.id, "recipient-2")

    status = allocator.pool_status(pool.id)
    assert (status.reserved, status.used) == (1, 1)


def test_assign_after_expiry_is_rejected(allocator, pool):
    reservation = allocator.reserve(pool.id, "camp-1", 1)
    code = allocator.next_reserved_code(reservation.id)

    with pytest.raises(ReservationExpired):
        allocator.assign(code.id, "recipient-1", now=utcnow() + timedelta(hours=2))


def test_sweep_returns_expired_codes(allocator, pool, session_factory):
    allocator.reserve(pool.id, "camp-1", 4)

    assert allocator.sweep_expired(now=utcnow() + timedelta(minutes=30)) == 0
    assert allocator.sweep_expired(now=utcnow() + timedelta(hours=2)) == 1

    assert allocator.pool_status(pool.id).available == 10
    assert _codes_by_status(session_factory, pool.id) == {"available": 10}
    assert allocator.active_reservation_for("camp-1") is None


def test_reserve_reclaims_expired_reservations_first(allocator, pool):
    start = utcnow()
    allocator.reserve(pool.id, "camp-1", 10, now=start)

    reservation = allocator.reserve(pool.id, "camp-2", 10, now=start + timedelta(hours=2))

    assert reservation.quantity == 10
    assert allocator.pool_status(pool.id).reserved == 10
    assert allocator.active_reservation_for("camp-2").id == reservation.id


def test_unknown_pool_and_bad_quantity(allocator, pool):
    with pytest.raises(NotFound):
        allocator.reserve("missing", "camp-1", 1)
    with pytest.raises(ValueError):
        allocator.reserve(pool.id, "camp-1", 0)
    with pytest.raises(NotFound):
        allocator.pool_status("missing")


def test_second_active_reservation_for_a_campaign_is_rejected(allocator, pool, session_factory):
    first = allocator.reserve(pool.id, "camp-1", 3)

    with pytest.raises(StorageConflict):
        allocator.reserve(pool.id, "camp-1", 3)

    status = allocator.pool_status(pool.id)
    assert (status.reserved, status.available) == (3, 7)
    assert _codes_by_status(session_factory, pool.id) == {"reserved": 3, "available": 7}
    assert allocator.active_reservation_for("camp-1").id == first.id

    allocator.release(first.id)
    assert allocator.reserve(pool.id, "camp-1", 2).quantity == 2


def test_concurrent_reservations_never_oversell(tmp_path, metrics):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'pool.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    allocator = AllocatorService(factory, metrics)
    pool = allocator.create_pool("shop-1", "disc-1", [f"CODE{n:02d}" for n in range(10)])
    workers = 8
    start = threading.Barrier(workers)

    def reserve(n):
        start.wait()
        try:
            return allocator.reserve(pool.id, f"camp-{n}", 3).id
        except PoolExhausted:
            return None

    with ThreadPoolExecutor(max_workers=workers) as executor:
        results = list(executor.map(reserve, range(workers)))

    won = [reservation_id for reservation_id in results if reservation_id]
    status = allocator.pool_status(pool.id)
    with factory() as db:
        reserved_rows = db.execute(
            select(DiscountCode.reservation_id, func.count())
            .where(DiscountCode.pool_id == pool.id, DiscountCode.status == "reserved")
            .group_by(DiscountCode.reservation_id)
        ).all()
        active = db.execute(
            select(func.count()).select_from(DiscountCodeReservation).where(DiscountCodeReservation.status == "active")
        ).scalar_one()
    engine.dispose()

    assert len(won) == 3
    assert status.reserved == 9
    assert status.reserved + status.used <= status.total
    assert status.available == 1
    assert dict(reserved_rows) == {reservation_id: 3 for reservation_id in won}
    assert active == len(won)
    assert metrics.pool_exhausted_total._value.get() == workers - len(won)
