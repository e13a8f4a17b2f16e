# Models
from .user import User, UserRole
from .product import Product, ProductStatus
from .product_variant import ProductVariant
from .order import (
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    CancelledBy,
    ReturnStatus,
    ReturnType,
    RefundStatus,
    RefundSource,
)
from .order_item import OrderItem
from .order_status_history import OrderStatusHistory
from .inventory_logs import InventoryLog, ChangeType

__all__ = [
    "User",
    "UserRole",
    "Product",
    "ProductStatus",
    "ProductVariant",
    "Order",
    "OrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "CancelledBy",
    "ReturnStatus",
    "ReturnType",
    "RefundStatus",
    "RefundSource",
    "OrderItem",
    "OrderStatusHistory",
    "InventoryLog",
    "ChangeType",
]
