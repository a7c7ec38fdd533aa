from decimal import Decimal

from app import inventory, ledger
from app.models import OrderItem, ReservationStatus, Status, parse_items, split_items


async def test_created_order_is_pending(db):
    await db.create_order("ord-1", {"cake1": 2}, total="120.50")

    order = await db.order("ord-1")

    assert order.payment_status == Status.PENDING
    assert order.order_status == Status.PENDING
    assert order.items == [OrderItem(item_id="cake1", quantity=2)]
    assert order.total_amount == Decimal("120.50")
    assert order.is_terminal is False


async def test_confirm_order_commits_reservation(db, session_factory):
    await db.seed_stock(cake1=5)
    await db.create_order("ord-1", {"cake1": 2})
    async with session_factory() as session:
        await inventory.reserve_stock(session, "res-1", [OrderItem(item_id="cake1", quantity=2)])

    async with session_factory() as session:
        assert await ledger.confirm_order(session, "ord-1", "pay_1", "res-1")

    order = await db.order("ord-1")
    assert order.payment_status == Status.CONFIRMED
    assert order.order_status == Status.CONFIRMED
    assert order.gateway_payment_id == "pay_1"
    async with session_factory() as session:
        reservation = await inventory.get_reservation(session, "res-1")
    assert reservation.status == ReservationStatus.COMMITTED


async def test_confirm_order_rolls_back_when_reservation_is_gone(db, session_factory):
    await db.seed_stock(cake1=5)
    await db.create_order("ord-1", {"cake1": 2})
    async with session_factory() as session:
        await inventory.reserve_stock(session, "res-1", [OrderItem(item_id="cake1", quantity=2)])
    async with session_factory() as session:
        await inventory.release_stock(session, "res-1")

    async with session_factory() as session:
        assert not await ledger.confirm_order(session, "ord-1", "pay_1", "res-1")

    order = await db.order("ord-1")
    assert order.order_status == Status.PENDING
    assert order.gateway_payment_id is None


async def test_cancel_order_with_captured_payment_keeps_reason(db, session_factory):
    await db.create_order("ord-1", {"cake1": 2})

    async with session_factory() as session:
        assert await ledger.cancel_order(
            session, "ord-1", Status.CONFIRMED, "insufficient_stock", "pay_1"
        )

    order = await db.order("ord-1")
    assert order.payment_status == Status.CONFIRMED
    assert order.order_status == Status.CANCELLED
    assert order.cancellation_reason == "insufficient_stock"
    assert order.gateway_payment_id == "pay_1"


async def test_terminal_orders_are_never_transitioned(db, session_factory):
    await db.create_order("ord-1", {"cake1": 2})
    async with session_factory() as session:
        await ledger.cancel_order(session, "ord-1", Status.CANCELLED, "signature_mismatch")

    async with session_factory() as session:
        assert not await ledger.cancel_order(session, "ord-1", Status.CONFIRMED, "insufficient_stock", "pay_1")
    async with session_factory() as session:
        assert not await ledger.confirm_order(session, "ord-1", "pay_1", "res-unknown")

    order = await db.order("ord-1")
    assert order.payment_status == Status.CANCELLED
    assert order.cancellation_reason == "signature_mismatch"
    assert order.gateway_payment_id is None


async def test_refund_attempts_increment(db, session_factory):
    await db.create_order("ord-1", {"cake1": 2})

    async with session_factory() as session:
        first = await ledger.next_refund_attempt(session, "ord-1")
    async with session_factory() as session:
        second = await ledger.next_refund_attempt(session, "ord-1")

    assert (first, second) == (1, 2)


def test_parse_items_accepts_legacy_product_ids_and_drops_empty_lines():
    raw = '[{"productId": "cake1", "quantity": 2}, {"id": "bread", "quantity": 0}, {"id": "tart"}]'
    assert parse_items(raw) == [OrderItem(item_id="cake1", quantity=2)]


def test_split_items_counts_lines_without_a_usable_quantity():
    raw = '[{"id": "cake1", "quantity": 2}, {"id": "bread"}, {"id": "tart", "quantity": "x"}]'

    items, invalid = split_items(raw)

    assert items == [OrderItem(item_id="cake1", quantity=2)]
    assert invalid == 2


async def test_read_model_uses_camel_case(db):
    await db.create_order("ord-1", {"cake1": 2}, total="99.90")

    model = ledger.to_read_model(await db.order("ord-1"))

    assert model["paymentStatus"] == "pending"
    assert model["orderStatus"] == "pending"
    assert model["items"] == [{"id": "cake1", "quantity": 2}]
    assert Decimal(model["totalAmount"]) == Decimal("99.90")
