"""库存API专用的Pydantic模型和响应格式"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from app.schemas.base import BaseResponse


# ==================== 请求模型 ====================

class ReconcileRequest(BaseModel):
    """库存对账请求"""
    batch_size: int = Field(
        500,
        ge=1,
        le=10000,
        description="批处理大小",
        examples=[500]
    )
    dry_run: bool = Field(
        False,
        description="只统计不修改"
    )


# ==================== 响应模型 ====================

class VariantStock(BaseModel):
    sku: str
    size: Optional[str] = None
    color: Optional[str] = None
    stock: int = Field(..., ge=0)


class ProductStock(BaseModel):
    """商品库存快照"""
    product_id: int
    name: str
    status: str
    total_stock: int
    total_sold: int
    variants: List[VariantStock] = []


class StockResponse(BaseResponse):
    """单个商品库存响应"""
    data: ProductStock


class ReconcileResponse(BaseResponse):
    """对账任务响应"""
    fixed_count: Optional[int] = Field(
        None,
        ge=0,
        description="需要或已经校正的商品数量"
    )


class CeleryTaskResponse(BaseResponse):
    """Celery任务响应"""
    task_id: Optional[str] = Field(
        None,
        description="任务ID"
    )


class TaskStatusResponse(BaseModel):
    """任务状态响应"""
    task_id: str = Field(
        ...,
        description="任务ID"
    )
    status: str = Field(
        ...,
        description="任务状态描述"
    )
    state: str = Field(
        ...,
        description="任务状态码"
    )
    result: Optional[int] = Field(
        None,
        description="任务结果（校正数量）"
    )


class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    status: str = Field(
        "healthy",
        description="服务状态"
    )
    service: str = Field(
        "order-service",
        description="服务名称"
    )
    version: str = Field(
        "1.0.0",
        description="服务版本"
    )
    checks: Dict[str, str] = Field(
        default_factory=dict,
        description="依赖组件状态 up / down"
    )
