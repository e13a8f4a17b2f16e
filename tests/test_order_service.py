"""订单服务单元测试"""
import itertools
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from unittest.mock import patch

from app.core.exceptions import (
    CannotCancelError,
    CannotDeleteError,
    CannotReturnError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    OrderLockedError,
    PersistenceFailureError,
    ProductUnavailableError,
    ReturnAlreadyExistsError,
    ReturnNotFoundError,
    ReturnWindowExpiredError,
    UnauthorizedError,
    ValidationError,
    VariantNotFoundError,
)
from app.db.base import as_utc, utcnow
from app.models.inventory_logs import ChangeType, InventoryLog
from app.models.order import (
    ORDER_TRANSITIONS,
    CancelledBy,
    Order,
    OrderStatus,
    PaymentStatus,
    RefundSource,
    RefundStatus,
    ReturnStatus,
)
from app.models.product import ProductStatus
from app.models.product_variant import ProductVariant
from app.services.catalog_store import CatalogStore
from app.services.order_service import OrderService, generate_order_number

RED_M = {"sku": "TS-RED-M", "size": "M", "color": "Red"}
BLUE_L = {"sku": "TS-BLUE-L", "size": "L", "color": "Blue"}

ALL_PAIRS = list(itertools.product(OrderStatus, OrderStatus))
LEGAL_TRANSITIONS = [(s, t) for s, t in ALL_PAIRS if t in ORDER_TRANSITIONS[s]]
ILLEGAL_TRANSITIONS = [(s, t) for s, t in ALL_PAIRS if t not in ORDER_TRANSITIONS[s]]


def pair_id(pair):
    return f"{pair[0].value}->{pair[1].value}"


def db_error(message="deadlock detected"):
    return OperationalError("UPDATE product_variants SET stock=...", {}, Exception(message))


def variant_stock(db, sku):
    return db.scalar(select(ProductVariant.stock).where(ProductVariant.sku == sku))


def logs_of(db, change_type):
    return db.execute(
        select(InventoryLog).where(InventoryLog.change_type == change_type)
    ).scalars().all()


def advance(service, order, admin, *statuses, shipping=None):
    for status in statuses:
        service.update_order_status(order.id, admin, status, shipping=shipping)
    return order


SHIPPING = SimpleNamespace(
    courier="BlueDart",
    tracking_number="BD123456789",
    tracking_url=None,
    estimated_delivery=None,
)


@pytest.fixture
def service(db_session):
    return OrderService(db_session)


@pytest.fixture
def placed_order(service, customer, tshirt, make_order_request):
    """3 件红 M（每件 500），货到付款"""
    request = make_order_request([{"product": tshirt.id, "variant": RED_M, "quantity": 3}])
    return service.create_order(customer, request)


class TestCreateOrder:
    """下单测试类"""

    def test_create_order_pricing_and_stock(self, service, db_session, customer, tshirt, placed_order):
        """3 x 500 -> 运费0、税270、总价1770，库存 10 -> 7"""
        order = placed_order

        assert order.status == OrderStatus.PENDING
        assert order.subtotal == Decimal("1500.00")
        assert order.shipping_charges == Decimal("0.00")
        assert order.tax == Decimal("270.00")
        assert order.total == Decimal("1770.00")
        assert order.payment_status == PaymentStatus.PENDING
        assert order.paid_at is None
        assert order.order_number.startswith("ORD")
        assert len(order.order_number) == 11

        assert variant_stock(db_session, "TS-RED-M") == 7
        db_session.refresh(tshirt)
        assert tshirt.total_stock == 9
        assert tshirt.total_sold == 3
        assert tshirt.last_sold_at is not None

    def test_create_order_snapshot_and_history(self, placed_order, customer):
        order = placed_order
        item = order.items[0]

        assert item.product_name == "Cotton T-Shirt"
        assert item.variant_sku == "TS-RED-M"
        assert item.price == Decimal("500.00")
        assert item.subtotal == Decimal("1500.00")
        assert item.discount == 10
        assert order.total_items == 3

        assert len(order.status_history) == 1
        entry = order.status_history[0]
        assert entry.status == OrderStatus.PENDING
        assert entry.updated_by == customer.id
        assert "Asha Customer" in entry.comment

    def test_create_order_writes_reserve_log(self, db_session, placed_order):
        logs = logs_of(db_session, ChangeType.RESERVE)

        assert len(logs) == 1
        assert logs[0].quantity == -3
        assert logs[0].before_stock == 10
        assert logs[0].after_stock == 7
        assert logs[0].order_number == placed_order.order_number

    def test_online_payment_marked_paid(self, service, customer, mug, make_order_request):
        request = make_order_request(
            [{"product": mug.id, "quantity": 1}], method="UPI", transaction_id="UPI-778899"
        )
        order = service.create_order(customer, request)

        assert order.payment_status == PaymentStatus.COMPLETED
        assert order.paid_at is not None
        assert order.transaction_id == "UPI-778899"
        # 200 < 500，收运费
        assert order.shipping_charges == Decimal("50.00")
        assert order.total == Decimal("286.00")

    def test_product_without_variants(self, service, db_session, customer, mug, make_order_request):
        order = service.create_order(customer, make_order_request([{"product": mug.id, "quantity": 2}]))

        assert order.items[0].variant is None
        db_session.refresh(mug)
        assert mug.total_stock == 3
        assert mug.total_sold == 2

    def test_billing_defaults_to_shipping(self, placed_order, shipping_address):
        assert placed_order.billing_address["pincode"] == shipping_address["pincode"]

    def test_price_override_allowed(self, service, customer, tshirt, make_order_request):
        request = make_order_request(
            [{"product": tshirt.id, "variant": RED_M, "quantity": 1, "price": "450"}]
        )
        order = service.create_order(customer, request)
        assert order.items[0].price == Decimal("450.00")

    def test_price_override_disabled(self, db_session, customer, tshirt, make_order_request):
        service = OrderService(db_session, allow_price_override=False)
        request = make_order_request(
            [{"product": tshirt.id, "variant": RED_M, "quantity": 1, "price": "1"}]
        )
        order = service.create_order(customer, request)
        assert order.items[0].price == Decimal("500.00")

    def test_variant_price_takes_precedence(self, service, db_session, customer, tshirt, make_order_request):
        variant = db_session.scalar(select(ProductVariant).where(ProductVariant.sku == "TS-BLUE-L"))
        variant.price = Decimal("650.00")
        db_session.commit()

        request = make_order_request([{"product": tshirt.id, "variant": {"sku": "TS-BLUE-L"}, "quantity": 1}])
        order = service.create_order(customer, request)
        assert order.items[0].price == Decimal("650.00")

    def test_unknown_product(self, service, customer, make_order_request):
        with pytest.raises(NotFoundError):
            service.create_order(customer, make_order_request([{"product": 999, "quantity": 1}]))

    def test_inactive_product(self, service, db_session, customer, mug, make_order_request):
        mug.status = ProductStatus.INACTIVE
        db_session.commit()

        with pytest.raises(ProductUnavailableError):
            service.create_order(customer, make_order_request([{"product": mug.id, "quantity": 1}]))

    def test_unknown_variant(self, service, customer, tshirt, make_order_request):
        request = make_order_request([{"product": tshirt.id, "variant": {"sku": "NOPE"}, "quantity": 1}])
        with pytest.raises(VariantNotFoundError):
            service.create_order(customer, request)

    def test_variant_required_for_product_with_variants(self, service, customer, tshirt, make_order_request):
        with pytest.raises(VariantNotFoundError):
            service.create_order(customer, make_order_request([{"product": tshirt.id, "quantity": 1}]))

    def test_insufficient_stock_before_reservation(self, service, db_session, customer, tshirt, make_order_request):
        request = make_order_request([{"product": tshirt.id, "variant": {"sku": "TS-BLUE-L"}, "quantity": 3}])

        with pytest.raises(InsufficientStockError) as exc_info:
            service.create_order(customer, request)

        assert exc_info.value.context["available"] == 2
        assert variant_stock(db_session, "TS-BLUE-L") == 2
        assert db_session.scalar(select(Order.id)) is None

    def test_partial_reservation_is_compensated(self, service, db_session, customer, tshirt, mug, make_order_request):
        """同一规格出现两次：第二次扣减红 M 失败，之前扣过的蓝 L 和红 M 被回补"""
        request = make_order_request([
            {"product": mug.id, "quantity": 2},
            {"product": tshirt.id, "variant": RED_M, "quantity": 6},
            {"product": tshirt.id, "variant": BLUE_L, "quantity": 2},
            {"product": tshirt.id, "variant": RED_M, "quantity": 6},
        ])

        with pytest.raises(InsufficientStockError):
            service.create_order(customer, request)

        db_session.expire_all()
        assert variant_stock(db_session, "TS-RED-M") == 10
        assert variant_stock(db_session, "TS-BLUE-L") == 2
        db_session.refresh(tshirt)
        db_session.refresh(mug)
        assert tshirt.total_stock == 12
        assert tshirt.total_sold == 0
        assert mug.total_stock == 5
        assert mug.total_sold == 0
        assert len(logs_of(db_session, ChangeType.COMPENSATE)) == 2
        assert db_session.scalar(select(Order.id)) is None

    def test_stock_written_in_stable_order(self, service, customer, tshirt, make_order_request):
        """无论请求里的顺序如何，都按 SKU 顺序扣减"""
        request = make_order_request([
            {"product": tshirt.id, "variant": RED_M, "quantity": 1},
            {"product": tshirt.id, "variant": BLUE_L, "quantity": 1},
        ])

        with patch.object(
            service.catalog, "decrement_variant_stock", wraps=service.catalog.decrement_variant_stock
        ) as spy:
            order = service.create_order(customer, request)

        assert [c.args[0] for c in spy.call_args_list] == ["TS-BLUE-L", "TS-RED-M"]
        # 订单明细保持请求顺序
        assert [item.variant_sku for item in order.items] == ["TS-RED-M", "TS-BLUE-L"]

    def test_order_number_collision_retries(self, service, customer, mug, make_order_request, placed_order):
        taken = placed_order.order_number
        with patch(
            "app.services.order_service.generate_order_number",
            side_effect=[taken, "ORD26109999"],
        ):
            order = service.create_order(customer, make_order_request([{"product": mug.id, "quantity": 1}]))
        assert order.order_number == "ORD26109999"

    def test_generate_order_number_format(self):
        number = generate_order_number(utcnow().replace(year=2026, month=3))
        assert number.startswith("ORD2603")
        assert number[7:].isdigit()
        assert len(number) == 11


class TestStatusTransitions:
    """状态机测试类"""

    def test_happy_path(self, service, admin, placed_order):
        order = advance(
            service, placed_order, admin,
            OrderStatus.CONFIRMED, OrderStatus.PROCESSING,
        )
        service.update_order_status(order.id, admin, OrderStatus.SHIPPED, shipping=SHIPPING)
        service.update_order_status(order.id, admin, OrderStatus.OUT_FOR_DELIVERY)
        service.update_order_status(order.id, admin, OrderStatus.DELIVERED)

        assert order.status == OrderStatus.DELIVERED
        assert order.courier == "BlueDart"
        assert order.shipped_at is not None
        assert order.delivered_at is not None
        statuses = [entry.status for entry in order.status_history]
        assert statuses == [
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            OrderStatus.PROCESSING,
            OrderStatus.SHIPPED,
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.DELIVERED,
        ]

    @pytest.mark.parametrize(
        "current,target",
        ILLEGAL_TRANSITIONS,
        ids=[pair_id(pair) for pair in ILLEGAL_TRANSITIONS],
    )
    def test_illegal_transition_rejected(self, service, db_session, admin, placed_order, current, target):
        """不在状态表里的变更一律拒绝，状态和流水都不变"""
        placed_order.status = current
        db_session.commit()
        history_size = len(placed_order.status_history)

        with pytest.raises(InvalidTransitionError) as exc_info:
            service.update_order_status(placed_order.id, admin, target, shipping=SHIPPING)

        assert exc_info.value.context == {
            "current_status": current.value,
            "requested_status": target.value,
        }
        db_session.expire_all()
        order = db_session.get(Order, placed_order.id)
        assert order.status == current
        assert len(order.status_history) == history_size

    @pytest.mark.parametrize(
        "current,target",
        LEGAL_TRANSITIONS,
        ids=[pair_id(pair) for pair in LEGAL_TRANSITIONS],
    )
    def test_legal_transition_appends_history(self, service, db_session, admin, placed_order, current, target):
        placed_order.status = current
        db_session.commit()
        history_size = len(placed_order.status_history)

        order = service.update_order_status(placed_order.id, admin, target, shipping=SHIPPING)

        assert order.status == target
        assert len(order.status_history) == history_size + 1
        assert order.status_history[-1].status == target

    @pytest.mark.parametrize("terminal", [OrderStatus.CANCELLED, OrderStatus.REFUNDED])
    def test_terminal_statuses(self, terminal):
        assert ORDER_TRANSITIONS[terminal] == set()

    def test_ship_requires_tracking(self, service, admin, placed_order):
        advance(service, placed_order, admin, OrderStatus.CONFIRMED, OrderStatus.PROCESSING)

        with pytest.raises(ValidationError):
            service.update_order_status(placed_order.id, admin, OrderStatus.SHIPPED)
        assert placed_order.status == OrderStatus.PROCESSING

    def test_ship_uses_existing_tracking(self, service, admin, placed_order):
        advance(service, placed_order, admin, OrderStatus.CONFIRMED, OrderStatus.PROCESSING)
        service.update_shipping_details(placed_order.id, SHIPPING)

        order = service.update_order_status(placed_order.id, admin, OrderStatus.SHIPPED)
        assert order.status == OrderStatus.SHIPPED

    def test_shipped_cannot_be_cancelled(self, service, admin, customer, placed_order):
        advance(service, placed_order, admin, OrderStatus.CONFIRMED, OrderStatus.PROCESSING)
        service.update_order_status(placed_order.id, admin, OrderStatus.SHIPPED, shipping=SHIPPING)

        with pytest.raises(CannotCancelError):
            service.cancel_order(placed_order.id, customer, "changed my mind about it")
        with pytest.raises(InvalidTransitionError):
            service.update_order_status(placed_order.id, admin, OrderStatus.CANCELLED)

    def test_history_is_append_only(self, service, admin, placed_order):
        first = placed_order.status_history[0]
        first_snapshot = (first.id, first.status, first.comment)

        advance(service, placed_order, admin, OrderStatus.CONFIRMED)

        assert len(placed_order.status_history) == 2
        head = placed_order.status_history[0]
        assert (head.id, head.status, head.comment) == first_snapshot

    def test_admin_cancel_via_status_update(self, service, db_session, admin, placed_order):
        order = service.update_order_status(placed_order.id, admin, OrderStatus.CANCELLED, comment="fraud check")

        assert order.status == OrderStatus.CANCELLED
        assert order.cancelled_by == CancelledBy.ADMIN
        assert variant_stock(db_session, "TS-RED-M") == 10


class TestCancelOrder:
    """取消订单测试类"""

    def test_cancel_restores_stock(self, service, db_session, customer, tshirt, placed_order):
        order = service.cancel_order(placed_order.id, customer, "ordered the wrong size")

        assert order.status == OrderStatus.CANCELLED
        assert order.cancelled_by == CancelledBy.USER
        assert order.cancellation_reason == "ordered the wrong size"
        assert order.refund is None
        assert order.status_history[-1].status == OrderStatus.CANCELLED

        assert variant_stock(db_session, "TS-RED-M") == 10
        db_session.refresh(tshirt)
        assert tshirt.total_stock == 12
        assert tshirt.total_sold == 0
        assert len(logs_of(db_session, ChangeType.RELEASE)) == 1

    def test_cancel_paid_order_creates_refund(self, service, customer, mug, make_order_request):
        """已支付订单取消：退款记录 Pending，支付状态 Refunded"""
        order = service.create_order(
            customer,
            make_order_request([{"product": mug.id, "quantity": 1}], method="Card", transaction_id="TXN-1"),
        )
        order = service.cancel_order(order.id, customer, "found it cheaper elsewhere")

        assert order.payment_status == PaymentStatus.REFUNDED
        assert order.refund_source == RefundSource.CANCELLATION
        assert order.refund_status == RefundStatus.PENDING
        assert order.refund_amount == order.total

    def test_cancel_twice_fails(self, service, db_session, customer, placed_order):
        service.cancel_order(placed_order.id, customer, "ordered the wrong size")

        with pytest.raises(CannotCancelError):
            service.cancel_order(placed_order.id, customer, "ordered the wrong size")
        assert variant_stock(db_session, "TS-RED-M") == 10

    def test_cancel_by_other_user_forbidden(self, service, other_customer, placed_order):
        with pytest.raises(UnauthorizedError):
            service.cancel_order(placed_order.id, other_customer, "not my order at all")

    def test_admin_cancel_marks_admin(self, service, admin, placed_order):
        order = service.cancel_order(placed_order.id, admin, "customer requested by phone")
        assert order.cancelled_by == CancelledBy.ADMIN

    def test_cancel_skips_deleted_product(self, service, db_session, customer, mug, make_order_request):
        order = service.create_order(customer, make_order_request([{"product": mug.id, "quantity": 1}]))
        db_session.delete(mug)
        db_session.commit()

        order = service.cancel_order(order.id, customer, "product was discontinued")
        assert order.status == OrderStatus.CANCELLED
        assert logs_of(db_session, ChangeType.RELEASE) == []

    def test_cancel_skips_deleted_variant(self, service, db_session, customer, tshirt, placed_order):
        """规格已删除：不归还，聚合库存也不动"""
        variant = db_session.scalar(select(ProductVariant).where(ProductVariant.sku == "TS-RED-M"))
        db_session.delete(variant)
        db_session.commit()

        order = service.cancel_order(placed_order.id, customer, "product was discontinued")

        assert order.status == OrderStatus.CANCELLED
        db_session.refresh(tshirt)
        assert tshirt.total_stock == 9
        assert logs_of(db_session, ChangeType.RELEASE) == []


class TestReturns:
    """退货测试类"""

    @pytest.fixture
    def delivered_order(self, service, admin, placed_order):
        advance(service, placed_order, admin, OrderStatus.CONFIRMED, OrderStatus.PROCESSING)
        service.update_order_status(placed_order.id, admin, OrderStatus.SHIPPED, shipping=SHIPPING)
        service.update_order_status(placed_order.id, admin, OrderStatus.DELIVERED)
        return placed_order

    def test_return_within_window(self, service, customer, delivered_order):
        now = as_utc(delivered_order.delivered_at) + timedelta(days=7) - timedelta(seconds=1)
        order = service.return_order(delivered_order.id, customer, "the fabric is too thin", now=now)

        assert order.return_status == ReturnStatus.REQUESTED
        assert order.return_refund_amount == order.total
        assert order.return_request["status"] == ReturnStatus.REQUESTED

    def test_return_at_window_boundary(self, service, customer, delivered_order):
        now = as_utc(delivered_order.delivered_at) + timedelta(days=7)
        order = service.return_order(delivered_order.id, customer, "the fabric is too thin", now=now)
        assert order.return_status == ReturnStatus.REQUESTED

    def test_return_after_window(self, service, customer, delivered_order):
        now = as_utc(delivered_order.delivered_at) + timedelta(days=7, seconds=1)
        with pytest.raises(ReturnWindowExpiredError):
            service.return_order(delivered_order.id, customer, "the fabric is too thin", now=now)

    def test_return_requires_delivered(self, service, customer, placed_order):
        with pytest.raises(CannotReturnError):
            service.return_order(placed_order.id, customer, "the fabric is too thin")

    def test_double_return_rejected(self, service, customer, delivered_order):
        service.return_order(delivered_order.id, customer, "the fabric is too thin")

        with pytest.raises(ReturnAlreadyExistsError):
            service.return_order(delivered_order.id, customer, "a completely different reason")

    def test_only_owner_can_return(self, service, admin, delivered_order):
        with pytest.raises(UnauthorizedError):
            service.return_order(delivered_order.id, admin, "the fabric is too thin")

    def test_return_resolution_flow(self, service, admin, customer, delivered_order):
        service.return_order(delivered_order.id, customer, "the fabric is too thin")

        order = service.update_return_status(delivered_order.id, admin, ReturnStatus.APPROVED, refund_amount="1000")
        assert order.return_refund_amount == Decimal("1000.00")
        assert order.return_approved_at is not None

        order = service.update_return_status(delivered_order.id, admin, ReturnStatus.PICKED_UP)
        assert order.status == OrderStatus.RETURNED

        order = service.update_return_status(delivered_order.id, admin, ReturnStatus.COMPLETED, comment="QC passed")
        assert order.status == OrderStatus.REFUNDED
        assert order.payment_status == PaymentStatus.REFUNDED
        assert order.refund_source == RefundSource.RETURN
        assert order.refund_status == RefundStatus.COMPLETED
        assert order.refund_amount == Decimal("1000.00")
        assert order.return_comment == "QC passed"
        assert order.cancelled_at is None
        assert [entry.status for entry in order.status_history][-2:] == [
            OrderStatus.RETURNED,
            OrderStatus.REFUNDED,
        ]

    def test_refund_amount_cannot_exceed_total(self, service, admin, customer, delivered_order):
        service.return_order(delivered_order.id, customer, "the fabric is too thin")
        with pytest.raises(ValidationError):
            service.update_return_status(delivered_order.id, admin, ReturnStatus.APPROVED, refund_amount="5000")

    def test_illegal_return_transition(self, service, admin, customer, delivered_order):
        service.return_order(delivered_order.id, customer, "the fabric is too thin")
        with pytest.raises(InvalidTransitionError):
            service.update_return_status(delivered_order.id, admin, ReturnStatus.COMPLETED)

    def test_rejected_is_final(self, service, admin, customer, delivered_order):
        service.return_order(delivered_order.id, customer, "the fabric is too thin")
        service.update_return_status(delivered_order.id, admin, ReturnStatus.REJECTED)
        with pytest.raises(InvalidTransitionError):
            service.update_return_status(delivered_order.id, admin, ReturnStatus.APPROVED)

    def test_return_status_without_request(self, service, admin, delivered_order):
        with pytest.raises(ReturnNotFoundError):
            service.update_return_status(delivered_order.id, admin, ReturnStatus.APPROVED)


class TestAdminOperations:
    """管理员操作测试类"""

    def test_bulk_ship_without_tracking_modifies_nothing(self, service, admin, customer, mug, make_order_request):
        orders = [
            service.create_order(customer, make_order_request([{"product": mug.id, "quantity": 1}]))
            for _ in range(2)
        ]
        for order in orders:
            advance(service, order, admin, OrderStatus.CONFIRMED, OrderStatus.PROCESSING)

        result = service.bulk_update_orders([o.id for o in orders], OrderStatus.SHIPPED, admin)

        assert result["matched"] == 2
        assert result["modified"] == 0
        assert {f["error_code"] for f in result["failed"]} == {"VALIDATION_ERROR"}

    def test_bulk_mixed_results(self, service, db_session, admin, customer, mug, make_order_request):
        pending = service.create_order(customer, make_order_request([{"product": mug.id, "quantity": 1}]))
        cancelled = service.create_order(customer, make_order_request([{"product": mug.id, "quantity": 1}]))
        service.cancel_order(cancelled.id, customer, "duplicate order placed")

        result = service.bulk_update_orders([pending.id, cancelled.id, 404], OrderStatus.CONFIRMED, admin)

        assert result["matched"] == 2
        assert result["modified"] == 1
        failures = {f["order_id"]: f["error_code"] for f in result["failed"]}
        assert failures == {cancelled.id: "INVALID_TRANSITION", 404: "NOT_FOUND"}
        db_session.expire_all()
        assert db_session.get(Order, pending.id).status == OrderStatus.CONFIRMED

    def test_bulk_cancel_restores_stock(self, service, db_session, admin, customer, mug, make_order_request):
        order = service.create_order(customer, make_order_request([{"product": mug.id, "quantity": 2}]))

        result = service.bulk_update_orders([order.id], OrderStatus.CANCELLED, admin)

        assert result["modified"] == 1
        db_session.refresh(mug)
        assert mug.total_stock == 5

    def test_bulk_limit(self, service, admin):
        with pytest.raises(ValidationError):
            service.bulk_update_orders(list(range(1, 52)), OrderStatus.CONFIRMED, admin)

    def test_payment_refund_record(self, service, placed_order):
        order = service.update_payment_status(
            placed_order.id, PaymentStatus.PARTIALLY_REFUNDED, refund_amount="100"
        )

        assert order.payment_status == PaymentStatus.PARTIALLY_REFUNDED
        assert order.refund_source == RefundSource.PAYMENT
        assert order.refund_status == RefundStatus.COMPLETED
        assert order.refund_amount == Decimal("100.00")

    def test_payment_completed_stamps_paid_at(self, service, placed_order):
        order = service.update_payment_status(placed_order.id, PaymentStatus.COMPLETED, transaction_id="TXN-9")
        assert order.paid_at is not None
        assert order.transaction_id == "TXN-9"

    def test_payment_refund_requires_amount(self, service, placed_order):
        with pytest.raises(ValidationError):
            service.update_payment_status(placed_order.id, PaymentStatus.REFUNDED)

    def test_admin_notes(self, service, placed_order):
        order = service.add_admin_notes(placed_order.id, "VIP customer, gift wrap")
        assert order.admin_notes == "VIP customer, gift wrap"

    def test_delete_only_cancelled(self, service, db_session, customer, placed_order):
        with pytest.raises(CannotDeleteError):
            service.delete_order(placed_order.id)

        service.cancel_order(placed_order.id, customer, "ordered the wrong size")
        order_id = placed_order.id
        service.delete_order(order_id)
        assert db_session.get(Order, order_id) is None

    def test_track_order(self, service, placed_order):
        order = service.track_order(placed_order.order_number)
        assert order.id == placed_order.id

        with pytest.raises(NotFoundError):
            service.track_order("ORD00000000")


class TestQueries:
    """查询测试类"""

    def test_get_order_permissions(self, service, customer, other_customer, admin, placed_order):
        assert service.get_order_by_id(placed_order.id, customer).id == placed_order.id
        assert service.get_order_by_id(placed_order.id, admin).id == placed_order.id
        with pytest.raises(UnauthorizedError):
            service.get_order_by_id(placed_order.id, other_customer)
        with pytest.raises(NotFoundError):
            service.get_order_by_id(9999, admin)

    def test_list_filters_and_pagination(self, service, customer, other_customer, mug, make_order_request):
        for _ in range(3):
            service.create_order(customer, make_order_request([{"product": mug.id, "quantity": 1}]))
        service.create_order(other_customer, make_order_request([{"product": mug.id, "quantity": 1}]))

        query = SimpleNamespace(
            page=1, limit=2, status=None, payment_status=None, payment_method=None,
            start_date=None, end_date=None, min_amount=None, max_amount=None,
            search=None, user_id=None, sort_by="created_at", sort_order="desc",
        )
        orders, total = service.get_user_orders(customer, query)
        assert total == 3
        assert len(orders) == 2
        assert all(o.user_id == customer.id for o in orders)

        query.page = 2
        orders, total = service.get_user_orders(customer, query)
        assert len(orders) == 1

        query.page, query.limit = 1, 10
        orders, total = service.get_all_orders(query)
        assert total == 4

    def test_list_search_by_name(self, service, customer, mug, make_order_request):
        service.create_order(customer, make_order_request([{"product": mug.id, "quantity": 1}]))
        query = SimpleNamespace(
            page=1, limit=10, status=OrderStatus.PENDING, payment_status=None, payment_method=None,
            start_date=None, end_date=None, min_amount=Decimal("100"), max_amount=None,
            search="asha", user_id=None, sort_by="total", sort_order="asc",
        )
        orders, total = service.get_all_orders(query)
        assert total == 1

        query.search = "nobody"
        assert service.get_all_orders(query)[1] == 0


class TestLocking:
    """分布式锁测试类"""

    def test_lock_acquired_and_released(self, db_session, mock_redlock, customer, placed_order):
        service = OrderService(db_session, rlock=mock_redlock)
        service.cancel_order(placed_order.id, customer, "ordered the wrong size")

        mock_redlock.lock.assert_called_once_with(f"lock:order:{placed_order.id}", 10000)
        mock_redlock.unlock.assert_called_once()

    def test_lock_busy(self, db_session, mock_redlock, customer, placed_order):
        mock_redlock.lock.return_value = False
        service = OrderService(db_session, rlock=mock_redlock)

        with pytest.raises(OrderLockedError):
            service.cancel_order(placed_order.id, customer, "ordered the wrong size")
        assert placed_order.status == OrderStatus.PENDING
        mock_redlock.unlock.assert_not_called()

    def test_stock_cache_invalidated(self, db_session, mock_redis, customer, tshirt, make_order_request):
        service = OrderService(db_session, redis=mock_redis)
        service.create_order(customer, make_order_request([{"product": tshirt.id, "variant": RED_M, "quantity": 1}]))
        mock_redis.delete.assert_called_with(f"stock:product:{tshirt.id}")

    def test_admin_notes_takes_lock(self, db_session, mock_redlock, placed_order):
        service = OrderService(db_session, rlock=mock_redlock)
        service.add_admin_notes(placed_order.id, "call before delivery")

        mock_redlock.lock.assert_called_once_with(f"lock:order:{placed_order.id}", 10000)
        mock_redlock.unlock.assert_called_once()

    def test_delete_blocked_while_locked(self, db_session, mock_redlock, customer, placed_order):
        OrderService(db_session).cancel_order(placed_order.id, customer, "duplicate order placed")
        mock_redlock.lock.return_value = False
        service = OrderService(db_session, rlock=mock_redlock)

        with pytest.raises(OrderLockedError):
            service.delete_order(placed_order.id)
        assert db_session.get(Order, placed_order.id) is not None


class TestPersistenceFailures:
    """数据库异常测试类"""

    def test_reserve_failure_becomes_persistence_error(self, service, db_session, customer, tshirt, make_order_request):
        request = make_order_request([{"product": tshirt.id, "variant": RED_M, "quantity": 2}])

        with patch.object(CatalogStore, "decrement_variant_stock", side_effect=db_error()):
            with pytest.raises(PersistenceFailureError) as exc_info:
                service.create_order(customer, request)

        assert exc_info.value.status_code == 500
        assert exc_info.value.error_code == "PERSISTENCE_FAILURE"
        assert exc_info.value.context["operation"] == "reserve_stock"
        assert variant_stock(db_session, "TS-RED-M") == 10
        assert db_session.scalar(select(Order.id)) is None

    def test_failure_after_partial_reserve_rolls_back(self, service, db_session, customer, tshirt, mug,
                                                      make_order_request):
        """规格已扣减后，无规格商品扣减时数据库报错：整笔回滚"""
        request = make_order_request([
            {"product": tshirt.id, "variant": RED_M, "quantity": 2},
            {"product": mug.id, "quantity": 1},
        ])

        with patch.object(CatalogStore, "decrement_total_stock", side_effect=db_error()):
            with pytest.raises(PersistenceFailureError):
                service.create_order(customer, request)

        db_session.expire_all()
        assert variant_stock(db_session, "TS-RED-M") == 10
        db_session.refresh(tshirt)
        assert tshirt.total_stock == 12
        assert logs_of(db_session, ChangeType.RESERVE) == []

    def test_release_failure_on_cancel(self, service, db_session, customer, placed_order):
        with patch.object(CatalogStore, "increment_variant_stock", side_effect=db_error()):
            with pytest.raises(PersistenceFailureError) as exc_info:
                service.cancel_order(placed_order.id, customer, "ordered the wrong size")

        assert exc_info.value.context["operation"] == "release_stock"
        db_session.expire_all()
        assert db_session.get(Order, placed_order.id).status == OrderStatus.PENDING
        assert variant_stock(db_session, "TS-RED-M") == 7

    def test_bulk_update_stops_on_database_error(self, service, db_session, admin, customer, mug, make_order_request):
        orders = [
            service.create_order(customer, make_order_request([{"product": mug.id, "quantity": 1}]))
            for _ in range(2)
        ]

        with patch.object(CatalogStore, "adjust_total_stock", side_effect=db_error()):
            with pytest.raises(PersistenceFailureError):
                service.bulk_update_orders([o.id for o in orders], OrderStatus.CANCELLED, admin)

        db_session.expire_all()
        assert [db_session.get(Order, o.id).status for o in orders] == [OrderStatus.PENDING] * 2
        db_session.refresh(mug)
        assert mug.total_stock == 3
