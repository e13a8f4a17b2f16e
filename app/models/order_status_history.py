from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    String,
    func,
)
from sqlalchemy.orm import relationship

from app.db.base import Base, BigIntegerPK, utcnow
from app.models.order import OrderStatusType


class OrderStatusHistory(Base):
    """订单状态流水（只追加）"""

    __tablename__ = "order_status_history"

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

    status = Column(OrderStatusType, nullable=False)

    comment = Column(String(500), nullable=True)

    updated_by = Column(
        BigInteger,
        nullable=True,
        comment="操作人（用户或管理员）",
    )

    timestamp = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    order = relationship("Order", back_populates="status_history")
