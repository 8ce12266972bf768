"""
exam_backend/orm/user.py
Platform accounts and login history
"""
from enum import Enum
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Enum as SQLEnum

from exam_backend.orm.base import BaseModel, iso


class UserRole(str, Enum):
    """Fixed role enumeration; permissions are looked up per role."""
    super_admin = "super_admin"
    admin = "admin"
    teacher = "teacher"
    student = "student"


ADMIN_ROLES = (UserRole.admin, UserRole.super_admin)


class User(BaseModel):
    """
    Login account.

    Students are created through enrollment with a default password and
    must_change_password set; the flag is cleared by the change-password flow.
    Only admin accounts are ever hard-deleted.
    """
    __tablename__ = "users"

    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(SQLEnum(UserRole), nullable=False, default=UserRole.student, index=True)
    must_change_password = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    last_login_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value if self.role else None,
            "must_change_password": self.must_change_password,
            "is_active": self.is_active,
            "last_login_at": iso(self.last_login_at),
            "created_at": iso(self.created_at),
        }


class LoginLog(BaseModel):
    """One row per login attempt that resolved to a known account."""
    __tablename__ = "login_logs"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    success = Column(Boolean, nullable=False)
    ip_address = Column(String(45), nullable=True)
