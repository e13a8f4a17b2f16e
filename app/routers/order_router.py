"""订单 API 路由"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Query

from app.core.dependencies import get_current_user, get_order_service, get_reporting_service, require_admin
from app.core.exceptions import internal_error
from app.models.user import User
from app.schemas.base import BaseResponse, Pagination
from app.schemas.order import (
    AdminNotesRequest,
    BulkUpdateEnvelope,
    BulkUpdateOrdersRequest,
    CancelOrderRequest,
    CreateOrderRequest,
    OrderEnvelope,
    OrderListEnvelope,
    OrderListQuery,
    OrderResponse,
    ReturnOrderRequest,
    RevenueEnvelope,
    StatisticsEnvelope,
    StatisticsQuery,
    TrackingEnvelope,
    TrackingInfo,
    UpdateOrderStatusRequest,
    UpdatePaymentStatusRequest,
    UpdateReturnStatusRequest,
    UpdateShippingRequest,
)
from app.services.order_service import OrderService
from app.services.reporting_service import ReportingService

router = APIRouter(
    prefix="/orders",
    tags=["订单管理"],
    responses={
        400: {"description": "业务规则校验失败"},
        401: {"description": "未登录"},
        403: {"description": "无权操作"},
        404: {"description": "资源未找到"},
        422: {"description": "请求验证失败"},
        429: {"description": "订单操作冲突"},
        500: {"description": "服务器内部错误"}
    }
)

OrderId = Annotated[int, Path(..., gt=0, description="订单ID")]


def _order_envelope(message: str, order) -> dict:
    return {"success": True, "message": message, "data": OrderResponse.model_validate(order)}


def _list_envelope(orders, total: int, query: OrderListQuery) -> dict:
    return {
        "success": True,
        "data": [OrderResponse.model_validate(order) for order in orders],
        "pagination": Pagination.build(query.page, query.limit, total),
    }


# ==================== 用户接口 ====================

@router.post(
    "",
    response_model=OrderEnvelope,
    status_code=201,
    summary="创建订单",
    description="""校验商品与库存，原子扣减库存后生成订单。

    **规则：**
    - 任一商品库存不足时，已扣减的库存全部回补
    - 满 500 免运费，否则运费 50；税率 18%（四舍五入取整）
    - 货到付款订单支付状态为 Pending，其余为 Completed
    """
)
def create_order(
    request: CreateOrderRequest,
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.create_order(user, request)
        return _order_envelope("下单成功", order)
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        raise internal_error("创建订单", e)


@router.get("/my-orders", response_model=OrderListEnvelope, summary="我的订单")
def get_my_orders(
    query: Annotated[OrderListQuery, Query()],
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service)
):
    try:
        orders, total = service.get_user_orders(user, query)
        return _list_envelope(orders, total, query)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("查询我的订单", e)


@router.get(
    "/track/{order_number}",
    response_model=TrackingEnvelope,
    summary="物流跟踪",
    description="公开接口，只返回状态、物流与状态流水，不含地址和支付信息。"
)
def track_order(
    order_number: str = Path(..., min_length=5, max_length=32, description="订单号"),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.track_order(order_number)
        return {"success": True, "data": TrackingInfo.model_validate(order)}
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("物流跟踪", e)


# ==================== 管理员接口（静态路径） ====================

@router.get("/stats/overview", response_model=StatisticsEnvelope, summary="订单统计")
def get_order_statistics(
    query: Annotated[StatisticsQuery, Query()],
    admin: User = Depends(require_admin),
    service: ReportingService = Depends(get_reporting_service)
):
    try:
        stats = service.get_order_statistics(query.start_date, query.end_date)
        return {"success": True, "data": stats}
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("订单统计", e)


@router.get("/stats/revenue", response_model=RevenueEnvelope, summary="收入分析")
def get_revenue_analytics(
    query: Annotated[StatisticsQuery, Query()],
    admin: User = Depends(require_admin),
    service: ReportingService = Depends(get_reporting_service)
):
    try:
        points = service.get_revenue_analytics(query.start_date, query.end_date, query.group_by)
        return {"success": True, "data": points}
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("收入分析", e)


@router.post(
    "/bulk-update",
    response_model=BulkUpdateEnvelope,
    summary="批量更新订单状态",
    description="""每个订单单独校验状态流转并单独提交，失败的订单记录在 failed 中。

    **允许的目标状态：** Confirmed / Processing / Shipped / Cancelled
    """
)
def bulk_update_orders(
    request: BulkUpdateOrdersRequest,
    admin: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    try:
        result = service.bulk_update_orders(request.order_ids, request.status, admin, request.comment)
        return {
            "success": True,
            "message": f"已更新 {result['modified']} / {result['matched']} 个订单",
            "data": result,
        }
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("批量更新订单", e)


@router.get("", response_model=OrderListEnvelope, summary="全部订单")
def get_all_orders(
    query: Annotated[OrderListQuery, Query()],
    admin: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    try:
        orders, total = service.get_all_orders(query)
        return _list_envelope(orders, total, query)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("查询订单列表", e)


# ==================== 单个订单 ====================

@router.get("/{order_id}", response_model=OrderEnvelope, summary="订单详情")
def get_order(
    order_id: OrderId,
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.get_order_by_id(order_id, user)
        return {"success": True, "data": OrderResponse.model_validate(order)}
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("查询订单", e)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderEnvelope,
    summary="取消订单",
    description="""Pending / Confirmed / Processing 状态可取消，取消后库存归还。

    已支付订单会生成待处理的退款记录，支付状态变为 Refunded。
    """
)
def cancel_order(
    order_id: OrderId,
    request: CancelOrderRequest,
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.cancel_order(order_id, user, request.reason, request.additional_comments)
        return _order_envelope("订单已取消", order)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("取消订单", e)


@router.post("/{order_id}/return", response_model=OrderEnvelope, summary="申请退货")
def return_order(
    order_id: OrderId,
    request: ReturnOrderRequest,
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.return_order(
            order_id,
            user,
            request.reason,
            request.return_type,
            comment=request.additional_comments,
        )
        return _order_envelope("退货申请已提交", order)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("申请退货", e)


@router.put("/{order_id}/status", response_model=OrderEnvelope, summary="更新订单状态")
def update_order_status(
    order_id: OrderId,
    request: UpdateOrderStatusRequest,
    admin: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.update_order_status(
            order_id, admin, request.status, request.comment, request.shipping
        )
        return _order_envelope(f"订单状态已更新为 {request.status.value}", order)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("更新订单状态", e)


@router.put("/{order_id}/return-status", response_model=OrderEnvelope, summary="更新退货状态")
def update_return_status(
    order_id: OrderId,
    request: UpdateReturnStatusRequest,
    admin: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.update_return_status(
            order_id, admin, request.status, request.comment, request.refund_amount
        )
        return _order_envelope(f"退货状态已更新为 {request.status.value}", order)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("更新退货状态", e)


@router.put("/{order_id}/payment-status", response_model=OrderEnvelope, summary="更新支付状态")
def update_payment_status(
    order_id: OrderId,
    request: UpdatePaymentStatusRequest,
    admin: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.update_payment_status(
            order_id,
            request.status,
            transaction_id=request.transaction_id,
            paid_at=request.paid_at,
            refund_amount=request.refund_amount,
        )
        return _order_envelope("支付状态已更新", order)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("更新支付状态", e)


@router.put("/{order_id}/shipping", response_model=OrderEnvelope, summary="更新物流信息")
def update_shipping_details(
    order_id: OrderId,
    request: UpdateShippingRequest,
    admin: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.update_shipping_details(order_id, request)
        return _order_envelope("物流信息已更新", order)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("更新物流信息", e)


@router.put("/{order_id}/admin-notes", response_model=OrderEnvelope, summary="管理员备注")
def add_admin_notes(
    order_id: OrderId,
    request: AdminNotesRequest,
    admin: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.add_admin_notes(order_id, request.notes)
        return _order_envelope("备注已保存", order)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("保存备注", e)


@router.delete("/{order_id}", response_model=BaseResponse, summary="删除订单")
def delete_order(
    order_id: OrderId,
    admin: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service)
):
    try:
        service.delete_order(order_id)
        return {"success": True, "message": "订单已删除"}
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("删除订单", e)
