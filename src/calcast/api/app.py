"""FastAPI application factory."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from calcast.config import get_settings
from calcast.core.errors import (
    CredentialExchangeError,
    CredentialTransportError,
    HandshakeError,
    MappingNotFound,
    NoActiveAccounts,
    WorkspaceNotAuthorized,
)

_ERROR_STATUS: dict[type[Exception], int] = {
    WorkspaceNotAuthorized: 403,
    MappingNotFound: 404,
    NoActiveAccounts: 409,
    HandshakeError: 400,
    CredentialExchangeError: 400,
    CredentialTransportError: 502,
    ValueError: 422,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    from calcast.core.services import shutdown_services

    await shutdown_services()


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="calcast API",
        description="Multi-account calendar broadcast and account linking",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from calcast.api.routers import connections, events, health, oauth

    app.include_router(health.router, tags=["health"])
    app.include_router(oauth.router, prefix="/oauth", tags=["oauth"])
    app.include_router(connections.router, prefix="/api/v1/connections", tags=["connections"])
    app.include_router(events.router, prefix="/api/v1/events", tags=["events"])

    for exc_type, status_code in _ERROR_STATUS.items():

        async def handler(request: Request, exc: Exception, status_code: int = status_code):
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})

        app.add_exception_handler(exc_type, handler)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    return app
