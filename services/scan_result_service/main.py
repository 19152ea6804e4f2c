"""
Scan Result Service

FastAPI webhook receiving scanner results for uploaded media. Each delivery
is validated, reconciled into the media's tag associations and, once every
required scanner has reported, turned into a moderation disposition.
Responses tell the scanner whether a redelivery makes sense: 4xx for
payloads that will never succeed, 503 for transient store failures.
"""

import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from scan_engine.config import get_config
from scan_engine.database import check_database_health, get_db_manager
from scan_engine.engine import ScanResultProcessor
from scan_engine.errors import ScanEngineError, SubmissionValidationError
from scan_engine.logging import get_correlation_id, get_logger
from scan_engine.middleware import add_middleware
from scan_engine.schemas import (
    ErrorResponse,
    HealthCheckResponse,
    ScanResultResponse,
    TagCacheInvalidationRequest,
    parse_submission,
)
from scan_engine.sinks import create_sinks
from scan_engine.store import ScanStore
from scan_engine.tag_cache import RedisTagCache, create_tag_cache

# Prometheus metrics
REQUEST_COUNT = Counter('scan_result_service_requests_total', 'Total requests', ['method', 'endpoint', 'status'])
REQUEST_DURATION = Histogram('scan_result_service_request_duration_seconds', 'Request duration', ['endpoint'])

app = FastAPI(title="Scan Result Service", version="1.0.0")
logger = get_logger(__name__)
config = get_config()

add_middleware(app)

processor: Optional[ScanResultProcessor] = None


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    start_time = time.perf_counter()
    response = await call_next(request)
    REQUEST_COUNT.labels(method=request.method, endpoint=request.url.path, status=response.status_code).inc()
    REQUEST_DURATION.labels(endpoint=request.url.path).observe(time.perf_counter() - start_time)
    return response


@app.exception_handler(ScanEngineError)
async def scan_engine_error_handler(request: Request, exc: ScanEngineError):
    if exc.status_code >= 500:
        logger.error(f"Scan result rejected ({exc.status_code}): {exc.message}", extra={"media_id": exc.media_id})
    else:
        logger.warning(f"Scan result rejected ({exc.status_code}): {exc.message}", extra={"media_id": exc.media_id})
    body = ErrorResponse(
        error=type(exc).__name__,
        message=exc.message,
        retryable=exc.retryable,
        details=exc.details or None,
        correlation_id=get_correlation_id(),
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.on_event("startup")
async def on_startup():
    """Initialize database, tag cache and collaborator sinks"""
    global processor
    await get_db_manager().initialize()
    if processor is None:
        processor = ScanResultProcessor(
            store=ScanStore(),
            cache=create_tag_cache(config),
            sinks=create_sinks(config),
            settings=config,
        )
    logger.info(
        "Scan result service initialized",
        extra={"required_scan_sources": config.required_scan_sources},
    )


@app.on_event("shutdown")
async def on_shutdown():
    """Cleanup on shutdown"""
    if processor is not None:
        await processor.dispatcher.drain()
        await processor.dispatcher.sinks.close()
        await processor.reconciler.cache.close()
    await get_db_manager().close()
    logger.info("Scan result service shutdown complete")


def get_processor() -> ScanResultProcessor:
    """Get processor instance"""
    if processor is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return processor


@app.post("/webhooks/scan-result", response_model=ScanResultResponse)
async def receive_scan_result(request: Request, scan_processor: ScanResultProcessor = Depends(get_processor)):
    """Accept one scanner result for a media item"""
    try:
        payload = await request.json()
    except ValueError:
        raise SubmissionValidationError("Request body must be a JSON object")
    if not isinstance(payload, dict):
        raise SubmissionValidationError("Request body must be a JSON object")

    submission = parse_submission(payload)
    outcome = await scan_processor.process(submission)
    return ScanResultResponse(
        media_id=outcome.media_id,
        ingestion=outcome.ingestion,
        gate_open=outcome.gate_open,
        needs_review=outcome.needs_review,
        blocked_for=outcome.blocked_for,
    )


@app.post("/tags/cache/invalidate")
async def invalidate_tag_cache(
    body: TagCacheInvalidationRequest,
    scan_processor: ScanResultProcessor = Depends(get_processor),
):
    """Drop cached dictionary entries after a tag's severity changed"""
    names = [name.lower().strip() for name in body.names]
    invalidated = await scan_processor.reconciler.cache.invalidate(names)
    logger.info(f"Invalidated {invalidated} cached tags", extra={"tag_names": names})
    return {"ok": True, "invalidated": invalidated}


@app.get("/health", response_model=HealthCheckResponse)
async def health_check(deep: bool = False):
    """Health check endpoint with optional deep checks"""
    health_status = HealthCheckResponse(
        status="healthy",
        service=config.service_name,
        timestamp=datetime.now(timezone.utc),
        version=config.service_version,
    )

    if deep:
        dependencies = {}
        database = await check_database_health()
        dependencies["database"] = database["status"]
        if database["status"] != "healthy":
            health_status.status = "unhealthy"

        cache = processor.reconciler.cache if processor is not None else None
        if isinstance(cache, RedisTagCache):
            try:
                await cache.client.ping()
                dependencies["redis"] = "healthy"
            except Exception as e:
                logger.error(f"Redis health check failed: {e}")
                dependencies["redis"] = "unhealthy"
                health_status.status = "unhealthy"
        health_status.dependencies = dependencies

    return health_status


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/config")
async def get_service_config():
    """Engine tuning constants in effect"""
    return {
        "required_scan_sources": config.required_scan_sources,
        "sfw_nsfw_level_ceiling": config.sfw_nsfw_level_ceiling,
        "review_queue_sampling_modulus": config.review_queue_sampling_modulus,
        "first_scan_recency_days": config.first_scan_recency_days,
        "default_tag_confidence": config.default_tag_confidence,
        "tag_cache_backend": config.tag_cache_backend,
        "tag_cache_ttl_seconds": config.tag_cache_ttl_seconds,
        "blocked_hash_check": config.blocked_hash_check,
        "environment": config.environment,
    }


@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": "Scan Result Service API", "version": config.service_version}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8010)
