import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import make_url

from wishkeep.api.deps import ServiceContainer
from wishkeep.api.routes import admin, auth, lists, reservations
from wishkeep.core.config import Settings, settings as default_settings
from wishkeep.core.errors import AppError, RateLimitedError
from wishkeep.core.logger import configure_logging
from wishkeep.core.security import ensure_secure_secret
from wishkeep.db.session import build_engine, build_session_factory, create_schema


logger = configure_logging()


def _handle_async_exception(loop, context) -> None:
    message = context.get("message", "Async error")
    exc = context.get("exception")
    if exc:
        logger.error("Async error: %s", message, exc_info=exc)
    else:
        logger.error("Async error: %s", message)


@asynccontextmanager
async def lifespan(app: FastAPI):
    asyncio.get_running_loop().set_exception_handler(_handle_async_exception)
    app_settings: Settings = app.state.container.settings
    try:
        db_url = make_url(app_settings.database_url)
        logger.info(
            "DB config driver=%s host=%s database=%s",
            db_url.get_backend_name(),
            db_url.host,
            db_url.database,
        )
    except Exception:
        logger.warning("DB config parse failed", exc_info=True)
    await create_schema(app.state.engine)
    yield
    await app.state.engine.dispose()


def create_app(app_settings: Settings | None = None) -> FastAPI:
    app_settings = app_settings or default_settings
    ensure_secure_secret(app_settings)

    app = FastAPI(
        title=app_settings.app_name,
        description="Wishlists with private gift reservations",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.container = ServiceContainer.from_settings(app_settings)
    app.state.engine = build_engine(app_settings.database_url, app_settings)
    app.state.session_factory = build_session_factory(app.state.engine)

    cors_origins = app_settings.backend_cors_origins
    if not cors_origins and app_settings.frontend_url:
        cors_origins = [app_settings.frontend_url]
    logger.info("CORS origins parsed=%s", cors_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id", "Retry-After"],
        max_age=600,
    )

    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    @app.middleware("http")
    async def tracing_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (perf_counter() - start) * 1000.0
            logger.exception(
                "Request failed id=%s method=%s path=%s duration_ms=%.2f",
                request_id,
                request.method,
                request.url.path,
                duration_ms,
            )
            raise

        duration_ms = (perf_counter() - start) * 1000.0
        logger.info(
            "Request completed id=%s method=%s path=%s status=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            logger.warning(
                "Request degraded id=%s method=%s path=%s code=%s",
                getattr(request.state, "request_id", None),
                request.method,
                request.url.path,
                exc.code,
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled error id=%s method=%s path=%s",
            getattr(request.state, "request_id", None),
            request.method,
            request.url.path,
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    app.include_router(auth.router)
    app.include_router(reservations.router)
    app.include_router(lists.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
