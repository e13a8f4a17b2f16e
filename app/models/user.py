import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Index,
    String,
    func,
    text,
)
from app.db.base import Base, BigIntegerPK, utcnow


# 1️ 角色枚举

class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


ADMIN_ROLES = {UserRole.ADMIN, UserRole.SUPER_ADMIN}


# 2️ 用户表（身份存储，只读）

class User(Base):
    __tablename__ = "users"

    id = Column(
        BigIntegerPK,
        primary_key=True,
        autoincrement=True,
    )

    name = Column(
        String(100),
        nullable=False,
        comment="用户名",
    )

    role = Column(
        Enum(
            UserRole,
            name="user_role_type",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=UserRole.CUSTOMER,
        comment="角色",
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
    )

    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


# 3️ 全局只允许一个超级管理员（唯一部分索引）

Index(
    "uq_users_single_super_admin",
    User.role,
    unique=True,
    postgresql_where=text("role = 'super_admin'"),
    sqlite_where=text("role = 'super_admin'"),
)
