import os

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import inspect

from .config import settings
from .db import Base, engine
from .errors import NumericalzError
from .logging import setup_logging, RequestIdMiddleware
from .models import models  # noqa: F401  registers tables on Base.metadata
from .auth.router import router as auth_router
from .routes.clients import router as clients_router
from .routes.workflows import router as workflows_router
from .routes.bulk import router as bulk_router
from .routes.activity import router as activity_router
from .routes.dashboard import router as dashboard_router


logger = structlog.get_logger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NumericalzError)
    async def _domain_error(request: Request, exc: NumericalzError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.message, detail=exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "context": exc.detail})


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    register_error_handlers(app)

    # Routers
    app.include_router(auth_router)
    app.include_router(clients_router)
    app.include_router(workflows_router)
    app.include_router(bulk_router)
    app.include_router(activity_router)
    app.include_router(dashboard_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            existing = set(inspect(engine).get_table_names())
            missing = [t for t in Base.metadata.tables if t not in existing]
            if missing:
                logger.info("creating_tables", tables=missing)
                Base.metadata.create_all(bind=engine)
        logger.info("startup_complete", app=settings.app_name)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
