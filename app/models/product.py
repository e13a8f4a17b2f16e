import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import relationship

from app.db.base import Base, BigIntegerPK, utcnow


class ProductStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    OUT_OF_STOCK = "out_of_stock"


class Product(Base):
    __tablename__ = "products"

    id = Column(
        BigIntegerPK,
        primary_key=True,
        autoincrement=True,
    )

    name = Column(
        String(255),
        nullable=False,
        comment="商品名称",
    )

    image_url = Column(
        String(500),
        nullable=True,
        comment="主图地址",
    )

    price_selling = Column(
        Numeric(12, 2),
        nullable=False,
        comment="售价",
    )

    discount_percent = Column(
        Integer,
        nullable=False,
        default=0,
        comment="折扣百分比",
    )

    status = Column(
        Enum(
            ProductStatus,
            name="product_status_type",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=ProductStatus.ACTIVE,
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
    )

    # 有规格的商品 = 各规格库存之和；无规格商品直接记库存
    total_stock = Column(
        Integer,
        nullable=False,
        default=0,
        comment="聚合库存",
    )

    total_sold = Column(
        Integer,
        nullable=False,
        default=0,
        comment="累计销量",
    )

    last_sold_at = Column(
        DateTime(timezone=True),
        nullable=True,
    )

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

    variants = relationship(
        "ProductVariant",
        back_populates="product",
        order_by="ProductVariant.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "total_sold >= 0",
            name="ck_total_sold_non_negative",
        ),
    )

    def find_variant(self, sku):
        for variant in self.variants:
            if variant.sku == sku:
                return variant
        return None


# -----------------------------
# 组合索引
# -----------------------------
Index(
    "idx_products_status_active",
    Product.status,
    Product.is_active,
)
