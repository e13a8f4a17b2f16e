"""测试配置和 fixtures"""
from decimal import Decimal

import pytest
from unittest.mock import Mock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from redis import Redis
from redlock import Redlock

import app.models  # noqa: F401  注册全部模型
from app.db.base import Base
from app.models.product import Product, ProductStatus
from app.models.product_variant import ProductVariant
from app.models.user import User, UserRole
from app.schemas.order import CreateOrderRequest


@pytest.fixture
def db_engine():
    """内存 SQLite，所有连接共享同一个库"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """创建测试数据库会话"""
    SessionLocal = sessionmaker(bind=db_engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def mock_redis():
    """创建模拟 Redis 客户端"""
    redis_mock = Mock(spec=Redis)
    redis_mock.get.return_value = None
    redis_mock.setex.return_value = True
    redis_mock.delete.return_value = 1
    return redis_mock


@pytest.fixture
def mock_redlock():
    """创建模拟 Redlock 分布式锁"""
    redlock_mock = Mock(spec=Redlock)
    lock_mock = Mock()
    redlock_mock.lock.return_value = lock_mock
    redlock_mock.unlock.return_value = True
    return redlock_mock


# ==================== 数据 ====================

@pytest.fixture
def customer(db_session):
    user = User(name="Asha Customer", role=UserRole.CUSTOMER)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def other_customer(db_session):
    user = User(name="Ravi Customer", role=UserRole.CUSTOMER)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def admin(db_session):
    user = User(name="Store Admin", role=UserRole.ADMIN)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def tshirt(db_session):
    """有规格商品：红 M 库存10，蓝 L 库存2，单价 500"""
    product = Product(
        name="Cotton T-Shirt",
        image_url="https://cdn.example.com/tshirt.png",
        price_selling=Decimal("500.00"),
        discount_percent=10,
        status=ProductStatus.ACTIVE,
        total_stock=12,
    )
    product.variants = [
        ProductVariant(sku="TS-RED-M", size="M", color="Red", stock=10),
        ProductVariant(sku="TS-BLUE-L", size="L", color="Blue", stock=2),
    ]
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def mug(db_session):
    """无规格商品：库存5，单价 200"""
    product = Product(
        name="Coffee Mug",
        price_selling=Decimal("200.00"),
        status=ProductStatus.ACTIVE,
        total_stock=5,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def shipping_address():
    return {
        "full_name": "Asha Kumar",
        "mobile": "9876543210",
        "address_line1": "12 MG Road, Indiranagar",
        "city": "Bengaluru",
        "state": "Karnataka",
        "pincode": "560038",
    }


@pytest.fixture
def make_order_request(shipping_address):
    """构造下单请求"""

    def _make(items, method="COD", transaction_id=None, coupon=None):
        payload = {
            "items": items,
            "shipping_address": shipping_address,
            "payment": {"method": method},
        }
        if transaction_id:
            payload["payment"]["transaction_id"] = transaction_id
        if coupon:
            payload["coupon"] = {"code": coupon}
        return CreateOrderRequest.model_validate(payload)

    return _make


# ==================== API ====================

@pytest.fixture
def client(db_engine):
    """TestClient：数据库换成内存 SQLite，不连接 Redis"""
    from app.core.dependencies import get_db, get_redis, get_redlock
    from app.main import app

    SessionLocal = sessionmaker(bind=db_engine)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: None
    app.dependency_overrides[get_redlock] = lambda: None
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
