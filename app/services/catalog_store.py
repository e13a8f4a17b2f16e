"""商品目录存储（库存 / 价格的读写）

所有扣减都是单条带条件的 UPDATE：``stock -= qty WHERE stock >= qty``，
由数据库保证原子性，不需要先查后改，也就不会出现并发超卖。
"""

import logging
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session, selectinload

from app.db.base import utcnow
from app.models.product import Product
from app.models.product_variant import ProductVariant

logger = logging.getLogger(__name__)

_SYNC = {"synchronize_session": "fetch"}


class CatalogStore:
    """商品目录存储"""

    def __init__(self, db: Session):
        self.db = db

    def fetch_product(self, product_id: int) -> Optional[Product]:
        return self.db.execute(
            select(Product)
            .where(Product.id == product_id)
            .options(selectinload(Product.variants))
        ).scalar_one_or_none()

    def current_stock(self, product_id: int, sku: Optional[str] = None) -> int:
        """读取当前库存（规格库存或商品总库存）"""
        if sku:
            stmt = select(ProductVariant.stock).where(ProductVariant.sku == sku)
        else:
            stmt = select(Product.total_stock).where(Product.id == product_id)
        return self.db.scalar(stmt) or 0

    def decrement_variant_stock(self, sku: str, quantity: int) -> Optional[int]:
        """条件扣减规格库存，成功返回扣减后库存，库存不足返回 None"""
        return self.db.execute(
            update(ProductVariant)
            .where(ProductVariant.sku == sku, ProductVariant.stock >= quantity)
            .values(stock=ProductVariant.stock - quantity)
            .returning(ProductVariant.stock)
            .execution_options(**_SYNC)
        ).scalar_one_or_none()

    def increment_variant_stock(self, sku: str, quantity: int) -> Optional[int]:
        """归还规格库存，规格不存在返回 None"""
        return self.db.execute(
            update(ProductVariant)
            .where(ProductVariant.sku == sku)
            .values(stock=ProductVariant.stock + quantity)
            .returning(ProductVariant.stock)
            .execution_options(**_SYNC)
        ).scalar_one_or_none()

    def decrement_total_stock(self, product_id: int, quantity: int) -> Optional[int]:
        """无规格商品的条件扣减"""
        return self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.total_stock >= quantity)
            .values(total_stock=Product.total_stock - quantity)
            .returning(Product.total_stock)
            .execution_options(**_SYNC)
        ).scalar_one_or_none()

    def adjust_total_stock(self, product_id: int, delta: int) -> Optional[int]:
        return self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(total_stock=Product.total_stock + delta)
            .returning(Product.total_stock)
            .execution_options(**_SYNC)
        ).scalar_one_or_none()

    def record_sale(self, product_id: int, quantity: int) -> None:
        """累计销量；quantity 为负表示撤销，结果不低于 0"""
        if quantity >= 0:
            values = {
                "total_sold": Product.total_sold + quantity,
                "last_sold_at": utcnow(),
            }
        else:
            values = {
                "total_sold": case(
                    (Product.total_sold + quantity > 0, Product.total_sold + quantity),
                    else_=0,
                ),
            }
        self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(**values)
            .execution_options(**_SYNC)
        )
