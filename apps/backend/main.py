# apps/backend/main.py
import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from apps.backend import flags
from apps.backend.middleware.errors import install_error_handlers
from apps.backend.middleware.request_logging import RequestLoggingMiddleware

from apps.backend.routes.health import router as health_router
from apps.backend.routes.pos import router as pos_router
from apps.backend.routes.spend_rules import router as spend_rules_router
from apps.backend.routes.tiers import router as tiers_router
from apps.backend.routes.webhooks import router as webhooks_router

from apps.backend.services.container import attach_scheduler, get_container
from apps.backend.utils.settings import settings

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("nightlife.main")


# -------------------------------------------------------------------
# Lifespan: POS sync scheduler
# -------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if settings.SYNC_SCHEDULER_ENABLED:
        container = get_container()
        scheduler = AsyncIOScheduler()
        sync_scheduler = attach_scheduler(container, scheduler)
        scheduler.start()
        await sync_scheduler.restore()
        if flags.LIVE_REEVALUATION:
            sync_scheduler.schedule_reevaluation(settings.LIVE_REEVALUATION_INTERVAL_SECONDS)
        log.info("Nightlife engine starting: POS sync scheduler running")
    else:
        log.info("Nightlife engine starting: scheduler disabled")
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)


app = FastAPI(
    title="Nightlife Spend Tiers",
    version=settings.NIGHTLIFE_VERSION,
    description="POS-synchronized spend-tier unlocking engine",
    lifespan=lifespan,
)

# -------------------------------------------------------------------
# Error handling (stable envelopes, no stack leaks)
# -------------------------------------------------------------------
install_error_handlers(app)

# -------------------------------------------------------------------
# Request logging (sensitive headers masked)
# -------------------------------------------------------------------
if flags.REQUEST_LOGGING:
    app.add_middleware(RequestLoggingMiddleware)

# -------------------------------------------------------------------
# CORS (venue dashboard, controlled)
# -------------------------------------------------------------------
if settings.CORS_MODE == "allowlist":
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

# -------------------------------------------------------------------
# Routers
# -------------------------------------------------------------------
app.include_router(health_router)

app.include_router(pos_router)
app.include_router(spend_rules_router)
app.include_router(webhooks_router)

app.include_router(tiers_router)


# -------------------------------------------------------------------
# Root
# -------------------------------------------------------------------
@app.get("/")
async def root():
    return {
        "status": "Nightlife Online",
        "product": "spend-tiers",
        "routes": [
            "/health",
            "/pos",
            "/pos/rules",
            "/pos/webhooks",
            "/tiers",
        ],
    }
