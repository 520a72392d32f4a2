"""
Request middleware and exception handlers.
Provides request_id injection, timing, security headers, body size limits
and the JSON error envelope: {"status": "error", "message": ...}.
"""
import time
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import Settings, settings
from app.core.errors import AppError
from app.core.logging import (
    get_request_id,
    generate_request_id,
    request_id_var,
    request_start_var,
    api_logger,
)

QUIET_PATHS = ('/health', '/healthz', '/readyz')


def error_response(status_code: int, message: str, headers: Optional[dict] = None, **extra) -> JSONResponse:
    request_id = get_request_id()
    response_headers = dict(headers or {})
    if request_id:
        response_headers.setdefault('X-Request-ID', request_id)
    return JSONResponse(
        status_code=status_code,
        content={'status': 'error', 'message': message, **extra},
        headers=response_headers,
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    1. Generates/propagates request_id for tracing
    2. Tracks request timing
    3. Logs request/response summary (every request at INFO in development)
    """

    def __init__(self, app, config: Optional[Settings] = None):
        super().__init__(app)
        self.config = config or settings

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get('X-Request-ID') or generate_request_id()

        request_id_var.set(request_id)
        request_start_var.set(time.time())
        request.state.request_id = request_id

        path = request.url.path
        quiet = path in QUIET_PATHS
        if self.config.is_development:
            api_logger.info(f"{request.method} {path}")
        elif not quiet:
            api_logger.debug(
                f"{request.method} {path}",
                client=request.client.host if request.client else 'unknown',
            )

        try:
            response = await call_next(request)
            response.headers['X-Request-ID'] = request_id

            if not quiet:
                duration = round((time.time() - request_start_var.get()) * 1000, 2)
                log_level = 'debug' if response.status_code < 400 else 'warning'
                getattr(api_logger, log_level)(
                    f"{request.method} {path} -> {response.status_code}",
                    duration_ms=duration,
                    status=response.status_code,
                )

            return response

        except Exception as e:
            # Unexpected error - log and return safe JSON response
            duration = round((time.time() - request_start_var.get()) * 1000, 2)
            api_logger.error(
                f"{request.method} {path} -> 500 (unhandled)",
                error=e,
                exc_info=True,
                duration_ms=duration,
            )
            return error_response(500, 'Internal server error', headers={'X-Request-ID': request_id})
        finally:
            request_id_var.set(None)
            request_start_var.set(None)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Default hardening headers for every response.
    The API docs pages load assets from a CDN, so they get no CSP.
    """

    CSP = (
        "default-src 'self';base-uri 'self';font-src 'self' https: data:;"
        "form-action 'self';frame-ancestors 'self';img-src 'self' data:;"
        "object-src 'none';script-src 'self';script-src-attr 'none';"
        "style-src 'self' https: 'unsafe-inline';upgrade-insecure-requests"
    )

    HEADERS = {
        'Cross-Origin-Opener-Policy': 'same-origin',
        'Cross-Origin-Resource-Policy': 'same-origin',
        'Origin-Agent-Cluster': '?1',
        'Referrer-Policy': 'no-referrer',
        'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
        'X-Content-Type-Options': 'nosniff',
        'X-DNS-Prefetch-Control': 'off',
        'X-Download-Options': 'noopen',
        'X-Frame-Options': 'SAMEORIGIN',
        'X-Permitted-Cross-Domain-Policies': 'none',
        'X-XSS-Protection': '0',
    }

    DOCS_PATHS = ('/docs', '/redoc', '/openapi.json')

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for name, value in self.HEADERS.items():
            response.headers.setdefault(name, value)
        if not request.url.path.startswith(self.DOCS_PATHS):
            response.headers.setdefault('Content-Security-Policy', self.CSP)
        return response


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests whose declared body is larger than the configured limit."""

    def __init__(self, app, max_bytes: int):
        super().__init__(app)
        self.max_bytes = max_bytes

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        length = request.headers.get('content-length')
        if length is not None:
            try:
                declared = int(length)
            except ValueError:
                return error_response(400, 'Invalid Content-Length header')
            if declared > self.max_bytes:
                api_logger.warning(
                    f"Body too large in {request.method} {request.url.path}",
                    content_length=declared,
                    limit=self.max_bytes,
                )
                return error_response(413, 'Request entity too large')
        return await call_next(request)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    The request id is in the X-Request-ID header for debugging.
    """
    api_logger.error(
        f"Unhandled exception in {request.method} {request.url.path}",
        error=exc,
        exc_info=True,
        path=str(request.url.path),
    )
    return error_response(500, 'Internal server error')


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        api_logger.error(f"HTTP {exc.status_code}: {exc.message}", error=exc, path=str(request.url.path))
    else:
        api_logger.warning(f"HTTP {exc.status_code}: {exc.message}", path=str(request.url.path))
    return error_response(exc.status_code, exc.message)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """
    Handler for HTTPException, including the router's own 404 for unknown paths.
    """
    status_code = exc.status_code
    detail = exc.detail
    if status_code == 404 and detail == 'Not Found':
        detail = 'Route not found'

    if status_code >= 500:
        api_logger.error(f"HTTP {status_code}: {detail}", path=str(request.url.path), status=status_code)
    elif status_code >= 400:
        api_logger.warning(f"HTTP {status_code}: {detail}", path=str(request.url.path), status=status_code)

    return error_response(status_code, str(detail), headers=getattr(exc, 'headers', None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Handler for RequestValidationError - returns structured validation errors.
    """
    errors = []
    for error in exc.errors():
        errors.append({
            'field': '.'.join(str(loc) for loc in error.get('loc', [])),
            'message': error.get('msg', 'Validation error'),
            'type': error.get('type', 'value_error'),
        })

    api_logger.warning(
        f"Validation error in {request.method} {request.url.path}",
        errors=errors,
    )
    return error_response(422, 'Validation error', errors=errors)
