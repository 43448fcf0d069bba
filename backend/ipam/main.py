"""
IPAM Liveness Monitor - Main Application Entry Point
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from ipam.config import settings
from ipam.database import init_db, AsyncSessionLocal
from ipam.exceptions import IpamError
from ipam.routers import segments, ips, ping
from ipam.services.poller import SegmentPoller
from ipam.services.subnet_sweep import SubnetSweeper

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(timezone="UTC")


async def scheduled_full_scan():
    """Refresh cached liveness for every segment the live loop is not polling."""
    poller: SegmentPoller = app.state.poller
    await poller.scan_all_segments()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    app.state.poller = SegmentPoller(AsyncSessionLocal)
    app.state.sweeper = SubnetSweeper()

    # max_instances=1 keeps a slow sweep from overlapping the next one
    if settings.FULL_SCAN_INTERVAL_SECONDS > 0:
        scheduler.add_job(
            scheduled_full_scan,
            "interval",
            seconds=settings.FULL_SCAN_INTERVAL_SECONDS,
            id="full_scan",
            max_instances=1,
        )
        scheduler.start()
        logger.info("Full scan scheduled every %ds", settings.FULL_SCAN_INTERVAL_SECONDS)

    if settings.MONITOR_AUTOSTART_SEGMENT_ID is not None:
        await app.state.poller.start(settings.MONITOR_AUTOSTART_SEGMENT_ID)

    yield

    # Shutdown
    await app.state.poller.close()
    if scheduler.running:
        scheduler.shutdown()
    logger.info(f"{settings.APP_NAME} shutting down")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)


@app.exception_handler(IpamError)
async def ipam_error_handler(request: Request, exc: IpamError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


# CORS
origins = settings.ALLOWED_ORIGINS.split(",") if settings.ALLOWED_ORIGINS != "*" else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request ID middleware for log correlation
@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    import uuid
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# Security headers middleware
@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if settings.HTTPS_ONLY:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# Routers
app.include_router(segments.router)
app.include_router(ips.router)
app.include_router(ping.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "version": settings.APP_VERSION}
