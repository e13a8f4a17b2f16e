"""库存 API 路由

- 公开：按商品查询库存快照（读缓存）
- 管理员：总库存对账，同步执行或提交到 Celery，并可查询任务状态
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Path

from app.core.dependencies import get_inventory_service, require_admin
from app.core.exceptions import internal_error
from app.models.user import User
from app.schemas.inventory_api import (
    CeleryTaskResponse,
    ReconcileRequest,
    ReconcileResponse,
    StockResponse,
    TaskStatusResponse,
)
from app.services.inventory_service import InventoryService
from tasks.order_tasks import reconcile_product_stock as celery_reconcile_task

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/inventory",
    tags=["库存管理"],
    responses={
        401: {"description": "未登录"},
        403: {"description": "需要管理员权限"},
        422: {"description": "请求验证失败"},
        500: {"description": "服务器内部错误"}
    }
)

STOCK_EXAMPLE = {
    "success": True,
    "data": {
        "product_id": 1,
        "name": "Cotton T-Shirt",
        "status": "active",
        "total_stock": 12,
        "total_sold": 3,
        "variants": [
            {"sku": "TS-RED-M", "size": "M", "color": "Red", "stock": 10},
            {"sku": "TS-BLUE-L", "size": "L", "color": "Blue", "stock": 2},
        ],
    },
}

# Celery 状态 -> 展示文案
TASK_STATE_LABELS = {
    "PENDING": "任务等待中",
    "STARTED": "任务执行中",
    "RETRY": "任务重试中",
    "REVOKED": "任务已撤销",
}


def describe_task(state: str, result, info) -> str:
    if state == "SUCCESS":
        return f"任务完成: 校正 {result} 个商品"
    if state == "FAILURE":
        return f"任务失败: {info}"
    return TASK_STATE_LABELS.get(state, f"任务状态: {state}")


@router.get(
    "/stock/{product_id}",
    response_model=StockResponse,
    summary="查询商品库存",
    description="""返回商品聚合库存、累计销量与各规格库存。

    结果在 Redis 中缓存 5 分钟；下单、取消和对账都会让该商品的缓存失效。
    Redis 不可用时直接查库。
    """,
    responses={
        200: {"description": "查询成功", "content": {"application/json": {"example": STOCK_EXAMPLE}}},
        404: {"description": "商品不存在"},
    }
)
def get_stock(
    product_id: int = Path(..., gt=0, description="商品ID", examples=[1]),
    service: InventoryService = Depends(get_inventory_service)
):
    try:
        return {"success": True, "data": service.get_product_stock(product_id)}
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("查询库存", e)


@router.post(
    "/reconcile/manual",
    response_model=ReconcileResponse,
    summary="同步对账",
    description="在当前请求内把有规格商品的总库存校正为各规格库存之和；`dry_run` 只统计不修改。",
)
def manual_reconcile(
    request: ReconcileRequest,
    admin: User = Depends(require_admin),
    service: InventoryService = Depends(get_inventory_service)
):
    try:
        count = service.reconcile_total_stock(request.batch_size, request.dry_run)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error("手动对账", e)

    logger.info(f"管理员 {admin.id} 执行对账: fixed={count}, dry_run={request.dry_run}")
    return {
        "success": True,
        "message": "对账预览完成" if request.dry_run else "对账完成",
        "fixed_count": count
    }


@router.post(
    "/reconcile/celery",
    response_model=CeleryTaskResponse,
    summary="异步对账",
    description="把对账任务投递到 `orders` 队列，返回任务 ID，可通过状态接口轮询。",
)
def celery_reconcile(
    request: ReconcileRequest,
    admin: User = Depends(require_admin)
):
    try:
        task = celery_reconcile_task.delay(request.batch_size, request.dry_run)
    except Exception as e:
        raise internal_error("提交对账任务", e)

    logger.info(f"管理员 {admin.id} 提交对账任务 {task.id}")
    return {
        "success": True,
        "message": "已提交异步对账任务",
        "task_id": task.id
    }


@router.get(
    "/reconcile/status/{task_id}",
    response_model=TaskStatusResponse,
    summary="查询对账任务状态",
)
def get_reconcile_status(
    task_id: str,
    admin: User = Depends(require_admin)
):
    from celery_app import app as celery

    try:
        task = celery.AsyncResult(task_id)
        state = task.state
        result = task.result if state == "SUCCESS" else None
        return {
            "task_id": task_id,
            "status": describe_task(state, result, task.info),
            "state": state,
            "result": result
        }
    except Exception as e:
        raise internal_error("查询任务状态", e)
