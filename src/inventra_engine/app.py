"""FastAPI application factory for Inventra-Engine."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from inventra_engine.common.config import get_settings
from inventra_engine.common.exceptions import InventraError
from inventra_engine.common.logging import setup_logging
from inventra_engine.common.schemas import ErrorResponse, HealthResponse

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        from inventra_engine.deps import get_connection_manager, get_db
        db = get_db()
        await db.init()
        await db.create_all()
        yield
        await get_connection_manager().dispose_all()
        await db.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InventraError)
    async def inventra_error_handler(request: Request, exc: InventraError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message,
                         extra={"engine": exc.engine})
        body = ErrorResponse(error=exc.message, code=exc.code, engine=exc.engine)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump())

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(version=settings.api_version)

    from inventra_engine.audit.router import router as audit_router
    from inventra_engine.connections.router import router as connections_router
    from inventra_engine.descriptors.router import router as descriptors_router
    from inventra_engine.executor.router import router as executor_router
    from inventra_engine.isolation.router import router as isolation_router

    prefix = settings.api_prefix
    app.include_router(connections_router, prefix=prefix, tags=["connections"])
    app.include_router(descriptors_router, prefix=prefix, tags=["descriptors"])
    app.include_router(executor_router, prefix=prefix, tags=["executor"])
    app.include_router(isolation_router, prefix=prefix, tags=["isolation"])
    app.include_router(audit_router, prefix=prefix, tags=["audit"])

    return app
