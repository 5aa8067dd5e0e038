"""
Application configuration and settings
"""
import os
from dotenv import load_dotenv

load_dotenv()

# Database Configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./yqpay.db")
DB_MAX_TIME_MS = int(os.getenv("DB_MAX_TIME_MS", "20000"))

# Redis Configuration (per-transaction processing locks)
REDIS_URL = os.getenv("REDIS_URL", "")
PAYMENT_LOCK_PREFIX = os.getenv("PAYMENT_LOCK_PREFIX", "yqpay")
PAYMENT_LOCK_TTL_MS = int(os.getenv("PAYMENT_LOCK_TTL_MS", "15000"))
PAYMENT_LOCK_WAIT_MS = int(os.getenv("PAYMENT_LOCK_WAIT_MS", "3000"))

# Public URLs used to build gateway return/notify URLs
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:5000")

# Auth (token verification for POS stream and print agent)
SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Payment verification
PAYMENT_VERIFICATION_WINDOW_MINUTES = int(os.getenv("PAYMENT_VERIFICATION_WINDOW_MINUTES", "30"))
STALE_VERIFICATION_POLICY = os.getenv("STALE_VERIFICATION_POLICY", "warn")  # warn | reject
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))
RECONCILER_BATCH_LIMIT = int(os.getenv("RECONCILER_BATCH_LIMIT", "100"))
RECONCILER_MIN_AGE_SECONDS = int(os.getenv("RECONCILER_MIN_AGE_SECONDS", "120"))

# POS stream / print agent
SSE_HEARTBEAT_SECONDS = float(os.getenv("SSE_HEARTBEAT_SECONDS", "30"))
SSE_QUEUE_SIZE = int(os.getenv("SSE_QUEUE_SIZE", "100"))
PRINT_HISTORY_LIMIT = int(os.getenv("PRINT_HISTORY_LIMIT", "50"))

# External collaborators (empty disables the call)
STOCK_SERVICE_URL = os.getenv("STOCK_SERVICE_URL", "")
SETTINGS_SERVICE_URL = os.getenv("SETTINGS_SERVICE_URL", "")
FIREBASE_SERVER_KEY = os.getenv("FIREBASE_SERVER_KEY", "")
EXTERNAL_SERVICE_TIMEOUT_SECONDS = float(os.getenv("EXTERNAL_SERVICE_TIMEOUT_SECONDS", "10"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


class Settings:
    PROJECT_NAME: str = "YQPay Concession Payments API"
    VERSION: str = "1.0.0"
    DATABASE_URL = DATABASE_URL
    DB_MAX_TIME_MS = DB_MAX_TIME_MS
    REDIS_URL = REDIS_URL
    PAYMENT_LOCK_PREFIX = PAYMENT_LOCK_PREFIX
    PAYMENT_LOCK_TTL_MS = PAYMENT_LOCK_TTL_MS
    PAYMENT_LOCK_WAIT_MS = PAYMENT_LOCK_WAIT_MS
    FRONTEND_URL = FRONTEND_URL
    BACKEND_URL = BACKEND_URL
    SECRET_KEY = SECRET_KEY
    JWT_ALGORITHM = JWT_ALGORITHM
    PAYMENT_VERIFICATION_WINDOW_MINUTES = PAYMENT_VERIFICATION_WINDOW_MINUTES
    STALE_VERIFICATION_POLICY = STALE_VERIFICATION_POLICY
    GATEWAY_TIMEOUT_SECONDS = GATEWAY_TIMEOUT_SECONDS
    RECONCILER_BATCH_LIMIT = RECONCILER_BATCH_LIMIT
    RECONCILER_MIN_AGE_SECONDS = RECONCILER_MIN_AGE_SECONDS
    SSE_HEARTBEAT_SECONDS = SSE_HEARTBEAT_SECONDS
    SSE_QUEUE_SIZE = SSE_QUEUE_SIZE
    PRINT_HISTORY_LIMIT = PRINT_HISTORY_LIMIT
    STOCK_SERVICE_URL = STOCK_SERVICE_URL
    SETTINGS_SERVICE_URL = SETTINGS_SERVICE_URL
    FIREBASE_SERVER_KEY = FIREBASE_SERVER_KEY
    EXTERNAL_SERVICE_TIMEOUT_SECONDS = EXTERNAL_SERVICE_TIMEOUT_SECONDS
    LOG_LEVEL = LOG_LEVEL

settings = Settings()
