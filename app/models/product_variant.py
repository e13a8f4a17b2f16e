from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import relationship

from app.db.base import Base, BigIntegerPK, utcnow


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(
        BigIntegerPK,
        primary_key=True,
        autoincrement=True,
    )

    product_id = Column(
        BigInteger,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="商品ID",
    )

    sku = Column(
        String(100),
        nullable=False,
        unique=True,
        comment="规格唯一SKU",
    )

    size = Column(
        String(20),
        nullable=True,
    )

    color = Column(
        String(50),
        nullable=True,
    )

    stock = Column(
        Integer,
        nullable=False,
        default=0,
        comment="规格库存",
    )

    price = Column(
        Numeric(12, 2),
        nullable=True,
        comment="规格价（为空则用商品售价）",
    )

    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    product = relationship("Product", back_populates="variants")

    __table_args__ = (
        CheckConstraint(
            "stock >= 0",
            name="ck_variant_stock_non_negative",
        ),
    )
