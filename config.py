"""
Configuration settings for the DonorMatch backend.
Values come from environment variables; defaults are for local development.
"""

import os
import secrets


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str = "") -> list:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Config:
    """Application configuration"""

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./donormatch.db")
    SQL_ECHO = _env_bool("SQL_ECHO", False)

    # JWT
    SECRET_KEY = os.getenv("SECRET_KEY", secrets.token_urlsafe(32))
    ALGORITHM = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60))
    SIGNED_URL_EXPIRE_SECONDS = int(os.getenv("SIGNED_URL_EXPIRE_SECONDS", 60))

    # Passwords
    BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))
    MIN_PASSWORD_LENGTH = 8

    # Default admin created on startup when missing
    DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@donormatch.org")
    DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "admin")

    # HTTP
    ALLOWED_ORIGINS = _env_list("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:8080")
    ADMIN_IP_WHITELIST = _env_list("ADMIN_IP_WHITELIST")
    RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)
    MAX_REQUEST_SIZE = 6 * 1024 * 1024  # 5MB certificate plus multipart overhead

    # Certificate storage
    UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")

    # Messaging
    MAX_MESSAGE_LENGTH = 5000

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
