"""
exam_backend/config.py
Environment-driven configuration

All settings are read once at import time from the process environment.
A .env file at the project root is loaded first when present.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent
ENV_FILE = PROJECT_ROOT / ".env"

load_dotenv(dotenv_path=ENV_FILE)


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return int(value)


def get_float_env(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return float(value)


ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./exam_platform.db")
SQL_ECHO = get_bool_env("SQL_ECHO", False)

# JWT
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-access-secret-change-me")
JWT_REFRESH_SECRET_KEY = os.getenv("JWT_REFRESH_SECRET_KEY", "dev-refresh-secret-change-me")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = get_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 60)
REFRESH_TOKEN_EXPIRE_DAYS = get_int_env("REFRESH_TOKEN_EXPIRE_DAYS", 7)

# HTTP
CORS_ORIGIN = os.getenv("CORS_ORIGIN", "http://localhost:3000")
RATE_LIMIT_ENABLED = get_bool_env("RATE_LIMIT_ENABLED", True)
LOGIN_RATE_LIMIT = os.getenv("LOGIN_RATE_LIMIT", "30/minute")

# Cache store
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = get_int_env("REDIS_PORT", 6379)
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD") or None
CACHE_PREFIX = os.getenv("CACHE_PREFIX", "exam-")
CACHE_TTL_SECONDS = get_int_env("CACHE_TTL_SECONDS", 3600)

# Login lockout
MAX_LOGIN_ATTEMPTS = get_int_env("MAX_LOGIN_ATTEMPTS", 5)
LOCKOUT_MINUTES = get_int_env("LOCKOUT_MINUTES", 30)
SUPPORT_CONTACT = os.getenv("SUPPORT_CONTACT", os.getenv("SUPPORT_WHATSAPP", ""))

# Accounts
DEFAULT_STUDENT_PASSWORD = os.getenv("DEFAULT_STUDENT_PASSWORD", "Student123!")
BCRYPT_ROUNDS = get_int_env("BCRYPT_ROUNDS", 10)

# Grading
CURVE_TARGET_MEAN = get_float_env("CURVE_TARGET_MEAN", 75.0)
CURVE_TARGET_STD = get_float_env("CURVE_TARGET_STD", 10.0)
