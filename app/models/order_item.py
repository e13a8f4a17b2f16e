from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from app.db.base import Base, BigIntegerPK


class OrderItem(Base):
    """下单时的商品快照，之后商品信息变化不影响历史订单"""

    __tablename__ = "order_items"

    id = Column(
        BigIntegerPK,
        primary_key=True,
        autoincrement=True,
    )

    order_id = Column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # 不加外键：商品被删除后订单快照依然保留
    product_id = Column(
        BigInteger,
        nullable=False,
        index=True,
        comment="商品ID",
    )

    product_name = Column(String(255), nullable=False)
    product_image = Column(String(500), nullable=True)

    variant_size = Column(String(20), nullable=True)
    variant_color = Column(String(50), nullable=True)
    variant_sku = Column(String(100), nullable=True)

    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False, comment="成交单价")
    discount = Column(Integer, nullable=False, default=0, comment="折扣百分比快照")
    subtotal = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_item_quantity_positive"),
        CheckConstraint("price >= 0", name="ck_order_item_price_non_negative"),
    )

    @property
    def variant(self):
        if not self.variant_sku:
            return None
        return {
            "size": self.variant_size,
            "color": self.variant_color,
            "sku": self.variant_sku,
        }
