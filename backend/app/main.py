import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import socketio
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.gzip import GZipMiddleware

from app.api import auth, documents, health, versions
from app.core.config import Settings, settings as default_settings
from app.core.errors import AppError
from app.core.lifecycle import ProcessGuard
from app.core.logging import configure_logging, api_logger
from app.core.middleware import (
    BodySizeLimitMiddleware,
    RequestContextMiddleware,
    SecurityHeadersMiddleware,
    app_error_handler,
    global_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from app.db.database import create_tables
from app.realtime.socket import CollaborationHub, create_socket_server


def create_app(settings: Optional[Settings] = None, hub: Optional[CollaborationHub] = None) -> FastAPI:
    """
    Build the HTTP application.
    The collaboration hub is created first (or passed in) and handed to the
    routers that reach live sessions.
    """
    settings = settings or default_settings
    if hub is None:
        hub = CollaborationHub(create_socket_server(settings), config=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        loop = asyncio.get_running_loop()
        if loop.get_exception_handler() is None:
            ProcessGuard().install_loop_handler(loop)
        await create_tables()
        hub.start()
        api_logger.info("Application started", env=settings.NODE_ENV, port=settings.PORT)
        yield
        # Shutdown
        await hub.stop()
        api_logger.info("Application stopped")

    app = FastAPI(
        title=settings.APP_NAME,
        description="Backend API for collaborative document editing",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Middleware: the last one added is the outermost
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_body_bytes)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(RequestContextMiddleware, config=settings)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # Include routers
    app.include_router(health.router, prefix="", tags=["Health"])
    app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
    app.include_router(documents.build_router(hub), prefix="/api/documents", tags=["Documents"])
    app.include_router(versions.build_router(hub), prefix="/api/versions", tags=["Versions"])

    return app


def create_asgi_app(app: FastAPI, hub: CollaborationHub) -> socketio.ASGIApp:
    """Serve Socket.IO at /socket.io and everything else through FastAPI, on one port."""
    return socketio.ASGIApp(hub.sio, other_asgi_app=app, socketio_path="socket.io")


configure_logging(default_settings)
hub = CollaborationHub(create_socket_server(default_settings), config=default_settings)
app = create_app(hub=hub)
asgi_app = create_asgi_app(app, hub)
