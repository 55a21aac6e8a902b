"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from roll_engine import __version__
from roll_engine.api.routes import rolls
from roll_engine.config import Settings, get_settings
from roll_engine.core.resolvers import register_default_resolvers
from roll_engine.core.roll_engine import RollEngine
from roll_engine.core.roll_session import RollSession
from roll_engine.core.rules_config import get_preset
from roll_engine.middleware.error_handler import setup_error_handlers

logger = logging.getLogger("roll_engine.api")


def build_engine(settings: Settings) -> RollEngine:
    """Engine with the configured rules preset, timeout and the standard resolvers."""
    config = get_preset(settings.RULES_PRESET)
    config.max_execution_time_ms = settings.ROLL_TIMEOUT_MS
    config.enable_logging = settings.DEBUG
    engine = RollEngine(config)
    register_default_resolvers(engine)
    return engine


def create_app(settings: Settings = None) -> FastAPI:
    settings = settings or get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events - startup and shutdown."""
        # Startup: one engine and one session per application
        app.state.roll_engine = build_engine(settings)
        app.state.roll_session = RollSession(app.state.roll_engine, history_limit=settings.ROLL_HISTORY_LIMIT)
        logger.info(f"[Startup] Roll engine ready (preset={settings.RULES_PRESET})")

        yield  # Application runs here

        # Shutdown: drop registered modifiers and history
        app.state.roll_engine.registry.clear()
        app.state.roll_session.clear_history()
        logger.info("[Shutdown] Roll engine state cleared")

    app = FastAPI(
        title="Roll Engine",
        description="D&D 5e dice notation parser and roll engine with transparent breakdowns",
        version=__version__,
        lifespan=lifespan,
    )

    # Middleware to log ALL requests
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.debug(f"[REQUEST] {request.method} {request.url.path}")
        response = await call_next(request)
        logger.debug(f"[RESPONSE] {request.method} {request.url.path} -> {response.status_code}")
        return response

    # CORS middleware for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            settings.FRONTEND_URL,
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",  # Vite
            "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Structured error handlers
    setup_error_handlers(app, debug=settings.DEBUG)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "online", "service": "Roll Engine", "version": __version__}

    @app.get("/health")
    async def health_check(request: Request):
        """Detailed health check."""
        engine: RollEngine = request.app.state.roll_engine
        return {
            "status": "healthy",
            "rules_preset": settings.RULES_PRESET,
            "resolvers": engine.resolver_names,
            "debug_mode": settings.DEBUG,
        }

    # Routes
    app.include_router(rolls.router, prefix="/api/rolls", tags=["rolls"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run("roll_engine.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
