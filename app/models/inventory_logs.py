import enum

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    func,
)
from app.db.base import Base, BigIntegerPK, utcnow

# 1定义库存变更类型
class ChangeType(str, enum.Enum):
    RESERVE = "RESERVE"         # 下单扣减
    RELEASE = "RELEASE"         # 取消归还
    COMPENSATE = "COMPENSATE"   # 下单失败补偿
    ADJUST = "ADJUST"           # 对账修正
# 2️库存日志表
class InventoryLog(Base):
    __tablename__ = "inventory_logs"

    id = Column(
        BigIntegerPK,
        primary_key=True,
        autoincrement=True,
    )

    product_id = Column(
        BigInteger,
        nullable=False,
        index=True,
        comment="商品ID",
    )

    variant_sku = Column(
        String(100),
        nullable=True,
        comment="规格SKU（无规格商品为空）",
    )

    order_number = Column(
        String(32),
        nullable=True,
        index=True,
        comment="订单号（对账修正时为空）",
    )

    change_type = Column(
        Enum(
            ChangeType,
            name="inventory_change_type",
        ),
        nullable=False,
        comment="库存变更类型",
    )

    quantity = Column(
        Integer,
        nullable=False,
        comment="变更数量",
    )

    before_stock = Column(
        Integer,
        nullable=False,
        comment="变更前库存",
    )

    after_stock = Column(
        Integer,
        nullable=False,
        comment="变更后库存",
    )

    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    operator = Column(
        String(64),
        nullable=True,
        comment="操作人/服务名",
    )

    source = Column(
        String(50),
        nullable=True,
        comment="来源：order_service / reconcile_job",
    )

# 3️组合索引（高频查询优化）


Index(
    "idx_inventory_logs_product_created_desc",
    InventoryLog.product_id,
    InventoryLog.created_at.desc(),
)
