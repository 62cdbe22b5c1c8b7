import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from imbridge.core.config import settings
from imbridge.api.routes.dingtalk import router as dingtalk_router
from imbridge.api.routes.wework import router as wework_router
from imbridge.services.dingtalk_monitor import DingtalkMonitor
from imbridge.utils.cancellation import AbortController
from imbridge.utils.message_cache import DedupCache


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
)
logger = logging.getLogger("imbridge.main")


def _log_monitor_exit(completion: asyncio.Future) -> None:
    if completion.cancelled():
        return
    exc = completion.exception()
    if exc is not None:
        logger.error("DingTalk monitor stopped with error: %s", exc)
    else:
        logger.info("DingTalk monitor stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    monitor = DingtalkMonitor(
        cache=DedupCache(settings.DEDUP_CACHE_MAX_SIZE, settings.DEDUP_CACHE_TTL_SECONDS),
    )
    app.state.dingtalk_monitor = monitor
    shutdown = AbortController()

    if settings.DINGTALK_ENABLED:
        cfg = settings.dingtalk_config()
        if cfg is None:
            logger.info("DingTalk credentials not set, stream monitor disabled")
        else:
            try:
                completion = monitor.start(cfg, account_id=settings.DINGTALK_ACCOUNT_ID, abort_signal=shutdown.signal)
                completion.add_done_callback(_log_monitor_exit)
            except Exception as e:
                logger.error("DingTalk monitor failed to start: %s", e)

    yield

    shutdown.abort()
    try:
        await asyncio.wait_for(_wait_monitor(monitor), timeout=settings.SHUTDOWN_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("DingTalk monitor still shutting down after %ss, giving up", settings.SHUTDOWN_TIMEOUT)


async def _wait_monitor(monitor: DingtalkMonitor) -> None:
    await monitor.wait_closed()
    await monitor.drain()


app = FastAPI(title=settings.APP_NAME, version="0.1.0", description="IM bridge for DingTalk and WeCom", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(404)
async def not_found_handler(request: Request, exc):
    return JSONResponse(status_code=404, content={"status": "error", "error_type": "not_found", "message": "Not Found"})


@app.exception_handler(500)
async def server_error_handler(request: Request, exc):
    return JSONResponse(status_code=500, content={"status": "error", "error_type": "internal_error", "message": "Internal Server Error"})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"status": "error", "error_type": "validation_error", "message": str(exc)})


@app.get("/api/health")
def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# Routers
app.include_router(dingtalk_router)
app.include_router(wework_router)
