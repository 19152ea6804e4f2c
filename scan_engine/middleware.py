"""FastAPI middleware for webhook tracing and logging"""
import time
import uuid
from typing import Callable

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .logging import correlation_id, get_logger

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Binds a correlation ID to each webhook delivery and echoes it back"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        corr_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        token = correlation_id.set(corr_id)
        request.state.correlation_id = corr_id

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            process_time = time.perf_counter() - start_time
            correlation_id.reset(token)

        response.headers[CORRELATION_HEADER] = corr_id
        logger.info(
            f"{request.method} {request.url.path} completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time": round(process_time, 4),
                "correlation_id": corr_id,
            },
        )
        return response


class ScannerLoggingMiddleware(BaseHTTPMiddleware):
    """Logs the scanner client and payload size of inbound deliveries"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method == "POST":
            logger.debug(
                f"Incoming {request.method} {request.url.path}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "content_length": request.headers.get("content-length"),
                    "client_ip": request.client.host if request.client else None,
                    "user_agent": request.headers.get("user-agent"),
                },
            )
        return await call_next(request)


def add_middleware(app: FastAPI) -> None:
    """Add standard middleware to FastAPI app"""
    app.add_middleware(ScannerLoggingMiddleware)
    # Added last so it wraps everything else
    app.add_middleware(CorrelationMiddleware)
    logger.info("Standard middleware added to FastAPI app")

