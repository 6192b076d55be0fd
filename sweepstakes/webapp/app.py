from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from typing import Optional
import asyncio
import logging
import uvicorn

from sweepstakes.config import settings
from sweepstakes.errors import SweepstakesError
from sweepstakes.services.notifications import Notifier, LoggingNotifier
from sweepstakes.webapp.middlewares import RateLimiterMiddleware
from sweepstakes.webapp.routers import promos_router, entries_router, webhooks_router, winners_router, stores_router


logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


async def handle_sweepstakes_error(request: Request, exc: SweepstakesError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def setup_webapp(notifier: Optional[Notifier] = None, rate_limits: bool = True) -> FastAPI:
    """
    Builds the FastAPI application.

    Args:
        notifier (Notifier, optional): Notification collaborator, logs only by default
        rate_limits (bool): Install the rate limiter middleware

    Returns:
        FastAPI: Configured application
    """
    app = FastAPI(
        title="Sweepstakes API",
        description="Entry accrual and winner selection for store giveaways",
        version=API_VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )

    if settings.CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
            allow_headers=["*"],
            expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
        )

    app.add_middleware(GZipMiddleware, minimum_size=1000)

    if rate_limits:
        app.add_middleware(
            RateLimiterMiddleware,
            default_window_size=settings.RATE_LIMIT_DEFAULT["window_size"],
            default_max_requests=settings.RATE_LIMIT_DEFAULT["max_requests"],
            path_limits=settings.RATE_LIMIT_PATHS,
        )

    app.add_exception_handler(SweepstakesError, handle_sweepstakes_error)
    app.state.notifier = notifier or LoggingNotifier()

    app.include_router(promos_router)
    app.include_router(entries_router)
    app.include_router(webhooks_router)
    app.include_router(winners_router)
    app.include_router(stores_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": API_VERSION}

    return app


async def start_webapp(app: FastAPI, shutdown_event: Optional[asyncio.Event] = None,
                       host: Optional[str] = None, port: Optional[int] = None) -> None:
    """
    Serves the application with uvicorn until it stops or ``shutdown_event`` is set.
    """
    config = uvicorn.Config(
        app=app,
        host=host or settings.WEBAPP_HOST,
        port=port or settings.WEBAPP_PORT,
        log_level="info" if settings.DEBUG else "warning",
        access_log=settings.DEBUG,
        proxy_headers=True,
        forwarded_allow_ips=settings.TRUSTED_PROXIES,
    )
    server = uvicorn.Server(config)
    logger.info(f"Web server starting on {config.host}:{config.port}")

    if shutdown_event is None:
        await server.serve()
        return

    server_task = asyncio.create_task(server.serve(), name="webapp_task")
    shutdown_task = asyncio.create_task(shutdown_event.wait(), name="webapp_shutdown_task")
    done, _ = await asyncio.wait([server_task, shutdown_task], return_when=asyncio.FIRST_COMPLETED)

    if server_task in done:
        shutdown_task.cancel()
        server_task.result()
    else:
        logger.info("Shutdown requested, stopping web server")
        server.should_exit = True
        await server_task
    logger.info("Web server stopped")
