import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from reeru.config import Settings, get_settings
from reeru.database import Database
from reeru.errors import ReeruError
from reeru.middleware.correlation import CorrelationMiddleware, install_log_filter
from reeru.middleware.rate_limit import RedisRateLimitMiddleware
from reeru.routes import clips, user_shorts
from reeru.services.dispatch import JobDispatchBackend, build_dispatch_backend
from reeru.services.dispatcher import JobDispatcher
from reeru.services.gateway import ServiceGateway
from reeru.services.redis_client import RedisHandle
from reeru.utils.logger import logger
from reeru.utils.metrics import get_snapshot
from reeru.worker import build_worker_context, process_clip_job


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    dispatch_backend: Optional[JobDispatchBackend] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> FastAPI:
    """
    Build the API. Everything stateful (database, HTTP client, gateway,
    dispatch backend) is created in the lifespan and hung off app.state.

    `transport`, `dispatch_backend` and `sleep` let tests swap the outside
    world for fakes.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("app.starting", extra={"backend": settings.dispatch_backend})
        database = Database(settings.database_url, echo=settings.debug)
        await database.open()

        redis = RedisHandle(settings.redis_url)
        await redis.connect()

        http = httpx.AsyncClient(transport=transport, timeout=settings.http_timeout_seconds)
        gateway = ServiceGateway(sleep=sleep)
        worker = build_worker_context(settings, database, http, gateway, sleep=sleep)

        async def run_inline(job_id: str) -> None:
            await process_clip_job(worker, job_id)

        backend = dispatch_backend or build_dispatch_backend(settings, http, gateway, inline_runner=run_inline)

        app.state.db = database
        app.state.redis = redis
        app.state.http = http
        app.state.gateway = gateway
        app.state.worker = worker
        app.state.dispatcher = JobDispatcher(backend)
        logger.info(
            "app.ready",
            extra={"backend": backend.name, "path": f"http://{settings.backend_host}:{settings.backend_port}"},
        )

        try:
            yield
        finally:
            drain = getattr(backend, "drain", None)
            if drain is not None:
                await drain()
            await http.aclose()
            await redis.close()
            await database.close()
            logger.info("app.stopped")

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.settings = settings

    clips.limiter.enabled = settings.rate_limit_enabled
    app.state.limiter = clips.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.exception_handler(ReeruError)
    async def reeru_error_handler(request: Request, exc: ReeruError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    install_log_filter()
    # Added innermost first: CORS wraps correlation, which wraps rate limiting
    app.add_middleware(RedisRateLimitMiddleware)
    app.add_middleware(CorrelationMiddleware)
    allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-User-ID", "X-Telegram-Chat-ID", "X-Correlation-ID"],
    )

    # Health check endpoint (minimal response to prevent information disclosure)
    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.get("/")
    async def root():
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics(request: Request):
        snapshot = get_snapshot()
        snapshot["circuits"] = request.app.state.gateway.get_circuit_states()
        snapshot["redis"] = await request.app.state.redis.is_healthy()
        return snapshot

    app.include_router(clips.router, prefix="/api/klap", tags=["Clips"])
    app.include_router(user_shorts.router, prefix="/api/user-shorts", tags=["Library"])

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "reeru.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.debug,
    )
