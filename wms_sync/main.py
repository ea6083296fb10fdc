"""
WMS Sync - Main FastAPI Application
"""
from fastapi import FastAPI
from starlette.responses import JSONResponse

from wms_sync.core.config import settings
from wms_sync.core.logging import setup_logging, get_logger
from wms_sync.core.middleware import setup_middleware, setup_exception_handlers
from wms_sync.api.routes import router as api_router
from wms_sync.db.database import AsyncSessionLocal, engine, Base
from wms_sync.domain.setup import configure_sync_engine

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "קבלת webhooks מה-WMS לתור העיבוד."},
    {"name": "Admin Queue", "description": "ניטור ותחזוקה של תור ה-webhooks."},
    {"name": "Admin Sync", "description": "סנכרון באצ'ים מול ה-WMS וכלים להזמנה בודדת."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="סנכרון הזמנות, מלאי ומשלוחים בין החנות המקומית ל-WMS.",
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging, webhook rate limit)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Create tables, validate the event tables, adopt legacy order flags"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    # טבלאות אירועים לא תקינות עוצרות את העלייה
    configure_sync_engine()

    from wms_sync.domain.services.legacy_state_migration import migrate_legacy_flags

    async with AsyncSessionLocal() as session:
        await migrate_legacy_flags(session)


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from wms_sync.core.redis_client import close_redis
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description="התהליך חי ומגיב. לא בודק תלויות חיצוניות.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקה של DB, Redis ו-Celery broker. "
        "מחזיר status=healthy אם הכל תקין, או status=degraded (503) עם פירוט."
    ),
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    from wms_sync.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
