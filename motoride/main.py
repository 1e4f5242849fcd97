from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from .routes import router as api_router, get_conn
from .logging_setup import configure_logging
from .config import settings
from .errors import MotorideError, Internal
from .rate_limit import RateLimitMiddleware
from .security import get_redis
from . import cache, db, ride_service
import logging
import asyncio

# configure file logging for the app
configure_logging(settings.LOG_FILE, level=settings.LOG_LEVEL)
logger = logging.getLogger("motoride.main")

app = FastAPI(title="Motoride - Motorcycle Ride Sharing API")

# registered first so CORS wraps it
app.add_middleware(RateLimitMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


@app.exception_handler(MotorideError)
async def motoride_error_handler(request: Request, exc: MotorideError):
    if exc.status_code >= 500:
        logger.error("request_failed: %s %s error=%s", request.method, request.url.path, exc.message)
    else:
        logger.info("request_rejected: %s %s status=%s error=%s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("database_error: %s %s", request.method, request.url.path, exc_info=exc)
    err = Internal()
    return JSONResponse(status_code=err.status_code, content={"detail": err.message, "code": err.code})


async def periodic_ride_sweep():
    """Complete departed rides every RIDE_SWEEP_INTERVAL_SEC seconds."""
    while True:
        await asyncio.sleep(settings.RIDE_SWEEP_INTERVAL_SEC)
        await ride_service.sweep_departed_rides()


@app.on_event("startup")
async def _startup():
    logger.info("Starting Motoride API application")
    await db.init_db()
    app.state.sweep_task = asyncio.create_task(periodic_ride_sweep())
    logger.info("Started periodic ride sweep task interval=%ss", settings.RIDE_SWEEP_INTERVAL_SEC)


@app.on_event("shutdown")
async def _shutdown():
    task = getattr(app.state, "sweep_task", None)
    if task is not None:
        task.cancel()
    await db.engine.dispose()
    logger.info("Stopped Motoride API application")


@app.get("/")
async def read_root():
    return {"message": "Motoride API"}


@app.get("/health")
async def health_check(conn=Depends(get_conn), redis=Depends(get_redis)):
    database = await db.ping(conn)
    cache_ok = await cache.ping(redis)
    status = "ok" if database and cache_ok else "degraded"
    return {"status": status, "database": database, "redis": cache_ok}
