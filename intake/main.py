"""FastAPI application wiring for the conversation intake service.

- Configures logging, CORS (optional for an admin UI), Prometheus metrics
  and rate limiting.
- Mounts the conversation, operator, queue, BAM and webhook routers.
- Exposes health and version probes.

Every request opens its own database session from ``app.state``; the
reconciliation sweeper runs out of process (see ``sweep.py``) or on demand
through ``POST /api/sweep``.
"""

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.orm import Session, sessionmaker

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .config import IntakeSettings
from .core.clock import Clock, system_clock
from .models.session import get_sessionmaker, init_schema
from .routers import bam, conversations, operators, queue, webhooks
from .routers.context import limiter
from .services import Collaborators

load_dotenv()

logger = logging.getLogger(__name__)


def create_app(
    settings: IntakeSettings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    collaborators: Collaborators | None = None,
    *,
    clock: Clock = system_clock,
) -> FastAPI:
    """Build the API around a settings object and a session factory."""
    settings = settings or IntakeSettings.from_env()
    session_factory = session_factory or get_sessionmaker(settings.database_url)
    if settings.auto_create_schema:
        init_schema(session_factory.kw["bind"])

    app = FastAPI(title="Conversation Intake", version=__version__)
    init_logging(app)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.collaborators = collaborators or Collaborators.from_settings(settings)
    app.state.clock = clock
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    # Optional CORS for an admin UI
    admin_ui_origins = os.getenv("ADMIN_UI_ORIGINS")
    if admin_ui_origins:
        origins = [o.strip() for o in admin_ui_origins.split(",") if o.strip()]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.include_router(conversations.router)
    app.include_router(operators.router)
    app.include_router(queue.router)
    app.include_router(bam.router)
    app.include_router(webhooks.router)

    @app.get("/api/health")
    async def health():
        """Liveness/readiness probe with a minimal JSON body."""
        return {"status": "ok"}

    @app.get("/api/version")
    async def version():
        """Return version information for the application."""
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    # Expose Prometheus metrics
    Instrumentator().instrument(app).expose(
        app, include_in_schema=False, endpoint="/api/metrics"
    )
    logger.info("Intake API ready (wallet mode %s)", settings.wallet_mode.value)
    return app


def __getattr__(name: str):
    # ``uvicorn intake.main:app`` builds the app lazily from the environment.
    if name == "app":
        application = create_app()
        globals()["app"] = application
        return application
    raise AttributeError(name)
