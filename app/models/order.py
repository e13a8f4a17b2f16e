import enum

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from app.db.base import Base, BigIntegerPK, utcnow


def _enum_column(enum_cls, name, **kwargs):
    return Column(enum_type(enum_cls, name), **kwargs)


def enum_type(enum_cls, name):
    """按枚举值（而不是成员名）入库"""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda e: [m.value for m in e],
    )


JSONDocument = JSON().with_variant(JSONB(), "postgresql")


# 1️ 状态枚举

class OrderStatus(str, enum.Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURNED = "Returned"
    REFUNDED = "Refunded"


class PaymentMethod(str, enum.Enum):
    COD = "COD"
    ONLINE = "Online"
    UPI = "UPI"
    CARD = "Card"
    WALLET = "Wallet"
    NET_BANKING = "Net Banking"


class PaymentStatus(str, enum.Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"
    REFUNDED = "Refunded"
    PARTIALLY_REFUNDED = "Partially Refunded"


OrderStatusType = enum_type(OrderStatus, "order_status_type")


class CancelledBy(str, enum.Enum):
    USER = "User"
    ADMIN = "Admin"
    SYSTEM = "System"


class ReturnStatus(str, enum.Enum):
    REQUESTED = "Requested"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    PICKED_UP = "Picked Up"
    COMPLETED = "Completed"


class ReturnType(str, enum.Enum):
    REFUND = "Refund"
    EXCHANGE = "Exchange"


class RefundStatus(str, enum.Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"


class RefundSource(str, enum.Enum):
    CANCELLATION = "Cancellation"
    RETURN = "Return"
    PAYMENT = "Payment"


# 2️ 状态机

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED},
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.RETURNED},
    OrderStatus.RETURNED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

CANCELLABLE_STATUSES = {
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
}

RETURN_TRANSITIONS = {
    ReturnStatus.REQUESTED: {ReturnStatus.APPROVED, ReturnStatus.REJECTED},
    ReturnStatus.APPROVED: {ReturnStatus.PICKED_UP},
    ReturnStatus.PICKED_UP: {ReturnStatus.COMPLETED},
    ReturnStatus.REJECTED: set(),
    ReturnStatus.COMPLETED: set(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS.get(current, set())


# 3️ 订单表

class Order(Base):
    __tablename__ = "orders"

    id = Column(
        BigIntegerPK,
        primary_key=True,
        autoincrement=True,
    )

    order_number = Column(
        String(32),
        nullable=False,
        unique=True,
        comment="订单号 ORD+年月+4位随机数",
    )

    user_id = Column(
        BigInteger,
        ForeignKey("users.id"),
        nullable=False,
        index=True,
        comment="下单用户",
    )

    # 金额
    subtotal = Column(Numeric(12, 2), nullable=False)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_charges = Column(Numeric(12, 2), nullable=False, default=0)
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False)

    # 地址快照
    shipping_address = Column(JSONDocument, nullable=False)
    billing_address = Column(JSONDocument, nullable=True)

    # 支付
    payment_method = _enum_column(PaymentMethod, "payment_method_type", nullable=False)
    payment_status = _enum_column(
        PaymentStatus,
        "payment_status_type",
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    transaction_id = Column(String(100), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    payment_gateway = Column(String(50), nullable=True)

    status = Column(
        OrderStatusType,
        nullable=False,
        default=OrderStatus.PENDING,
        comment="订单状态",
    )

    # 物流
    courier = Column(String(100), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    tracking_url = Column(String(500), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    estimated_delivery = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    # 取消
    cancellation_reason = Column(String(500), nullable=True)
    cancelled_by = _enum_column(CancelledBy, "cancelled_by_type", nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # 退货
    return_reason = Column(String(500), nullable=True)
    return_type = _enum_column(ReturnType, "return_type_type", nullable=True)
    return_status = _enum_column(ReturnStatus, "return_status_type", nullable=True)
    return_requested_at = Column(DateTime(timezone=True), nullable=True)
    return_approved_at = Column(DateTime(timezone=True), nullable=True)
    return_refund_amount = Column(Numeric(12, 2), nullable=True)
    return_comment = Column(String(500), nullable=True)

    # 退款（取消 / 退货 / 人工退款共用）
    refund_source = _enum_column(RefundSource, "refund_source_type", nullable=True)
    refund_status = _enum_column(RefundStatus, "refund_status_type", nullable=True)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    coupon_code = Column(String(50), nullable=True)
    coupon_discount = Column(Numeric(12, 2), nullable=False, default=0)

    customer_notes = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )

    status_history = relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="OrderStatusHistory.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "subtotal >= 0 AND discount >= 0 AND shipping_charges >= 0 AND tax >= 0 AND total >= 0",
            name="ck_order_pricing_non_negative",
        ),
    )

    # ---------- 子记录视图（供 schema 序列化） ----------

    @property
    def pricing(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "discount": self.discount,
            "shipping_charges": self.shipping_charges,
            "tax": self.tax,
            "total": self.total,
        }

    @property
    def payment(self) -> dict:
        return {
            "method": self.payment_method,
            "status": self.payment_status,
            "transaction_id": self.transaction_id,
            "paid_at": self.paid_at,
            "payment_gateway": self.payment_gateway,
        }

    @property
    def shipping(self) -> dict:
        return {
            "courier": self.courier,
            "tracking_number": self.tracking_number,
            "tracking_url": self.tracking_url,
            "shipped_at": self.shipped_at,
            "estimated_delivery": self.estimated_delivery,
            "delivered_at": self.delivered_at,
        }

    @property
    def cancellation(self):
        if self.cancelled_at is None:
            return None
        return {
            "reason": self.cancellation_reason,
            "cancelled_by": self.cancelled_by,
            "cancelled_at": self.cancelled_at,
        }

    @property
    def return_request(self):
        if self.return_status is None:
            return None
        return {
            "reason": self.return_reason,
            "return_type": self.return_type,
            "status": self.return_status,
            "requested_at": self.return_requested_at,
            "approved_at": self.return_approved_at,
            "refund_amount": self.return_refund_amount,
            "comment": self.return_comment,
        }

    @property
    def refund(self):
        if self.refund_status is None:
            return None
        return {
            "source": self.refund_source,
            "status": self.refund_status,
            "amount": self.refund_amount,
            "refunded_at": self.refunded_at,
        }

    @property
    def coupon(self) -> dict:
        return {"code": self.coupon_code, "discount_amount": self.coupon_discount}

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def can_cancel(self) -> bool:
        return self.status in CANCELLABLE_STATUSES


# 4️ 索引设计

Index("idx_orders_user_created", Order.user_id, Order.created_at.desc())
Index("idx_orders_status_created", Order.status, Order.created_at.desc())
Index("idx_orders_payment_status", Order.payment_status)
