from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from yqpay.core.config import DATABASE_URL, DB_MAX_TIME_MS

SQLALCHEMY_DATABASE_URL = DATABASE_URL


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    if url.startswith("postgresql"):
        # server-side cap on every statement
        return {"options": f"-c statement_timeout={DB_MAX_TIME_MS}"}
    return {}


# Create SQLAlchemy engine
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args=_connect_args(SQLALCHEMY_DATABASE_URL),
    pool_pre_ping=True,
)

# Session maker
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base model for all ORM classes
Base = declarative_base()


# Dependency for FastAPI routes
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
