"""订单服务入口：应用装配、全局异常映射、健康检查"""

from contextlib import asynccontextmanager
import logging
from typing import Any

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.exceptions import OrderError
from app.core.redis import async_redis, redis_client
from app.db import init_db
from app.db.session import engine
from app.routers import inventory_router, order_router
from app.schemas.inventory_api import HealthCheckResponse

import uvicorn

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "order-service"
SERVICE_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s %s", SERVICE_NAME, SERVICE_VERSION)

    # 数据库不可用直接启动失败
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        init_db()
    except SQLAlchemyError as e:
        logger.error("❌ Database unavailable: %s", e)
        raise
    logger.info("✅ Database ready, tables ensured")

    # Redis 不可用只降级：无库存缓存、无订单锁
    try:
        await async_redis.ping()
        logger.info("✅ Redis connected")
    except RedisError as e:
        logger.warning(f"⚠️  Redis unavailable ({e}), running without cache and order locks")

    yield

    await async_redis.aclose()
    logger.info("Shutting down %s", SERVICE_NAME)


app = FastAPI(
    title="订单服务 API",
    description="订单生命周期与库存服务：下单扣库存、状态流转、取消退货与统计",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(order_router.router, prefix="/api/v1")
app.include_router(inventory_router.router, prefix="/api/v1")


# ==================== 全局异常处理 ====================

def error_response(status_code: int, message: str, **extra: Any) -> JSONResponse:
    """统一错误响应：{success: false, message, ...}"""
    content = {"success": False, "message": message}
    content.update(jsonable_encoder(extra))
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.info(f"{request.method} {request.url.path} 参数校验失败: {len(exc.errors())} 处")
    return error_response(422, "请求参数验证失败", details=exc.errors())


@app.exception_handler(OrderError)
async def order_exception_handler(request: Request, exc: OrderError):
    if exc.status_code >= 500:
        logger.error(f"{request.url.path} {exc.error_code}: {exc.message} {exc.context}")
    else:
        logger.warning(f"{request.url.path} {exc.error_code}: {exc.message}")
    return error_response(
        exc.status_code,
        exc.message,
        error_code=exc.error_code,
        context=exc.context,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"{request.url.path} HTTP {exc.status_code}: {exc.detail}")
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"{request.method} {request.url.path} 未处理异常: {exc}", exc_info=True)
    return error_response(500, "服务器内部错误")


# ==================== 探活 ====================

def _check_database() -> str:
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning(f"健康检查：数据库不可用 {e}")
        return "down"
    return "up"


def _check_redis() -> str:
    try:
        redis_client.ping()
    except RedisError as e:
        logger.warning(f"健康检查：Redis 不可用 {e}")
        return "down"
    return "up"


@app.get("/health", response_model=HealthCheckResponse)
def health_check():
    """数据库挂掉返回 503；只有 Redis 挂掉时服务降级但仍可用"""
    checks = {"database": _check_database(), "redis": _check_redis()}
    if checks["database"] == "down":
        status = "unhealthy"
    elif checks["redis"] == "down":
        status = "degraded"
    else:
        status = "healthy"

    body = HealthCheckResponse(
        status=status,
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
        checks=checks,
    )
    if status == "unhealthy":
        return JSONResponse(status_code=503, content=body.model_dump())
    return body


@app.get("/")
async def read_root():
    return {
        "service": SERVICE_NAME,
        "docs": "/docs",
        "health": "/health",
        "api": "/api/v1",
    }


if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=settings.APP_RELOAD
    )
