import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import engine
from app.middleware.exceptions import register_exception_handlers
from app.middleware.rate_limit import RateLimitMiddleware
from app.middleware.security import SecurityHeadersMiddleware
from app.routers import admin_shipments, health, shipments
from app.services.mailer import close_mailer
from app.utils.redis_client import close_redis

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("globaledge")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("GlobalEdge API starting (%s)", settings.environment)
    try:
        yield
    finally:
        await close_mailer()
        await close_redis()
        await engine.dispose()
        logger.info("GlobalEdge API stopped")


app = FastAPI(
    title="GlobalEdge",
    description="Shipment quoting, booking and tracking",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware (outermost first) ─────────────────────────────
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    RateLimitMiddleware,
    default_limit=100,  # 100 requests per minute (per user or IP)
    default_window=60,
    exempt_paths=["/health", "/health/ready", "/docs", "/openapi.json"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(shipments.router, prefix="/api/shipments", tags=["shipments"])
app.include_router(
    admin_shipments.router, prefix="/api/admin/shipments", tags=["admin"]
)
