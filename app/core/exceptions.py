"""订单领域异常

所有业务异常都继承自 ``OrderError``（本身是 ``HTTPException``），
因此路由层可以直接透传，由 ``app.main`` 中注册的处理器统一输出：

    {"success": false, "message": ..., "error_code": ..., "context": {...}}
"""

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException

logger = logging.getLogger(__name__)


class OrderError(HTTPException):
    """订单服务异常基类"""

    status_code = 400
    error_code = "ORDER_ERROR"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(status_code=status_code or self.status_code, detail=message)


class ValidationError(OrderError):
    """入参不合法（带字段级错误）"""

    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str = "请求参数验证失败", errors: Optional[Dict[str, str]] = None):
        super().__init__(message, context={"errors": errors or {}})


class AuthenticationError(OrderError):
    status_code = 401
    error_code = "AUTHENTICATION_REQUIRED"

    def __init__(self, message: str = "需要登录"):
        super().__init__(message)


class UnauthorizedError(OrderError):
    """既不是订单所有者也不是管理员"""

    status_code = 403
    error_code = "UNAUTHORIZED"

    def __init__(self, message: str = "无权操作该订单"):
        super().__init__(message)


class NotFoundError(OrderError):
    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any, message: Optional[str] = None):
        super().__init__(
            message or f"{resource} 不存在: {identifier}",
            context={"resource": resource, "id": str(identifier)},
        )


class VariantNotFoundError(NotFoundError):
    error_code = "VARIANT_NOT_FOUND"

    def __init__(self, product_name: str, sku: Optional[str]):
        super().__init__(
            "variant",
            sku,
            message=f"商品 {product_name} 未找到规格: {sku or '未指定'}",
        )
        self.context["product"] = product_name


class ProductUnavailableError(OrderError):
    error_code = "PRODUCT_UNAVAILABLE"

    def __init__(self, product_name: str):
        super().__init__(f"商品已下架: {product_name}", context={"product": product_name})


class InsufficientStockError(OrderError):
    error_code = "INSUFFICIENT_STOCK"

    def __init__(self, product_name: str, requested: int, available: int, sku: Optional[str] = None):
        label = f"{product_name} - {sku}" if sku else product_name
        super().__init__(
            f"库存不足: {label}，可用 {available}，需要 {requested}",
            context={
                "product": product_name,
                "sku": sku,
                "requested": requested,
                "available": available,
            },
        )


class InvalidTransitionError(OrderError):
    error_code = "INVALID_TRANSITION"

    def __init__(self, current_status: str, requested_status: str, subject: str = "订单"):
        super().__init__(
            f"{subject}状态不能从 {current_status} 变更为 {requested_status}",
            context={"current_status": current_status, "requested_status": requested_status},
        )


class CannotCancelError(OrderError):
    error_code = "CANNOT_CANCEL"

    def __init__(self, current_status: str):
        super().__init__(
            f"订单无法取消，当前状态: {current_status}",
            context={"current_status": current_status},
        )


class CannotReturnError(OrderError):
    error_code = "CANNOT_RETURN"

    def __init__(self, current_status: str):
        super().__init__(
            f"只有已送达的订单可以退货，当前状态: {current_status}",
            context={"current_status": current_status, "required_status": "Delivered"},
        )


class CannotDeleteError(OrderError):
    error_code = "CANNOT_DELETE"

    def __init__(self, current_status: str):
        super().__init__(
            f"只有已取消的订单可以删除，当前状态: {current_status}",
            context={"current_status": current_status, "required_status": "Cancelled"},
        )


class ReturnWindowExpiredError(OrderError):
    error_code = "RETURN_WINDOW_EXPIRED"

    def __init__(self, reference_date, window_days: int):
        super().__init__(
            f"退货期已过，仅支持送达后 {window_days} 天内退货",
            context={"reference_date": reference_date.isoformat(), "window_days": window_days},
        )


class ReturnAlreadyExistsError(OrderError):
    error_code = "RETURN_ALREADY_EXISTS"

    def __init__(self, return_status: str):
        super().__init__(
            "该订单已存在退货申请",
            context={"return_status": return_status},
        )


class ReturnNotFoundError(OrderError):
    error_code = "RETURN_NOT_FOUND"

    def __init__(self, order_number: str):
        super().__init__(
            f"订单 {order_number} 没有退货申请",
            context={"order_number": order_number},
        )


class OrderLockedError(OrderError):
    status_code = 429
    error_code = "ORDER_LOCKED"

    def __init__(self, order_id: int):
        super().__init__("订单操作冲突，请稍后重试", context={"order_id": order_id})


class PersistenceFailureError(OrderError):
    """数据写入失败，需人工对账"""

    status_code = 500
    error_code = "PERSISTENCE_FAILURE"

    def __init__(self, operation: str, reason: str = ""):
        super().__init__(
            f"数据写入失败: {operation}",
            context={"operation": operation, "reason": reason},
        )


def internal_error(action: str, e: Exception) -> HTTPException:
    """把路由里的未知异常包装成 500，并记录堆栈"""
    logger.error(f"{action}失败: {str(e)}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))
