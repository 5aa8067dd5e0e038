# yqpay/main.py
from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from yqpay.core.config import FRONTEND_URL, settings
from yqpay.core.errors import PaymentError
from yqpay.core.logging_config import configure_logging
from yqpay.database import models, payment_models  # noqa: F401  (register tables)
from yqpay.database.database import engine
from yqpay.services.pos_bus import pos_bus
from yqpay.services.print_dispatcher import print_dispatcher

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    pos_bus.start()
    logger.info("POS stream heartbeat started")

    # Redis init (non-fatal): payment locks degrade to no-ops without it
    if settings.REDIS_URL:
        try:
            from yqpay.core.redis import get_redis
            await get_redis()
            logger.info("Redis connected; payment locks enabled")
        except Exception as e:
            logger.warning(f"Redis connection failed (payment locks disabled): {e}")
    else:
        logger.info("REDIS_URL not set; payment locks disabled")

    yield

    try:
        logger.info("Starting graceful shutdown...")
        await pos_bus.stop()
        await print_dispatcher.close_all()
        logger.info("POS streams and print agents closed")
        try:
            from yqpay.core.redis import close_redis
            await close_redis()
        except Exception as e:
            logger.error(f"Error closing Redis: {e}")
        logger.info("Graceful shutdown complete")
    except asyncio.CancelledError:
        logger.debug("Shutdown process cancelled")


fastapi_app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Concession payment and fulfillment APIs for theater kiosks and online ordering",
    version=settings.VERSION,
    lifespan=lifespan,
)

# Ensure DB models/tables exist
models.Base.metadata.create_all(bind=engine)

ALLOWED_ORIGINS = [
    FRONTEND_URL,
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]
fastapi_app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@fastapi_app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# --- Every router is mounted under the /api prefix the front end expects ---
from yqpay.routers import health, payment_routes, pos_stream, print_agent  # noqa: E402

fastapi_app.include_router(payment_routes.router, prefix="/api")
fastapi_app.include_router(pos_stream.router, prefix="/api")
fastapi_app.include_router(print_agent.router, prefix="/api")
fastapi_app.include_router(health.router, prefix="/api")


@fastapi_app.get("/")
def root():
    return {"message": "YQPay concession payments API is running"}


app = fastapi_app
