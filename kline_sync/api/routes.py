from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from kline_sync.config import settings
from kline_sync.container import get_services
from kline_sync.errors import SyncError
from kline_sync.observability import observability
from kline_sync.schemas import (
    AutoGapFillRequest,
    BatchGapFillRequest,
    BatchGapFillResponse,
    ConfigSchema,
    ConfigUpdateRequest,
    GapDetectResponse,
    GapFillResponse,
    GapListResponse,
    GapSchema,
    HistorySyncRequest,
    HistorySyncResponse,
    IncrementalSyncResponse,
    KlineDeleteRequest,
    KlineListResponse,
    KlineSchema,
    RealtimeReconnectRequest,
    RealtimeStatusResponse,
    SeriesRequest,
    SubscriptionSchema,
    SyncStatusSchema,
    SyncTaskSchema,
    TaskListResponse,
)
from kline_sync.utils.intervals import validate_interval
from kline_sync.utils.validators import to_epoch_ms

logger = logging.getLogger(__name__)
router = APIRouter()


def error_response(error_code: str, message: str, status_code: int = 400):
    payload = {
        "schema_version": settings.schema_version,
        "status": "error",
        "error_code": error_code,
        "message": message,
    }
    return JSONResponse(payload, status_code=status_code)


def create_app(lifespan=None) -> FastAPI:
    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError):
        return error_response(exc.error_code, exc.message, status_code=exc.status_code)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
        response = None
        start = time.perf_counter()
        try:
            response = await call_next(request)
            return response
        finally:
            latency_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.info(
                "request_complete",
                extra={
                    "request_id": request_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code if response else None,
                    "latency_ms": latency_ms,
                },
            )

    app.include_router(router)
    return app


def _gap_fill_payload(result) -> dict:
    return {"schema_version": settings.schema_version, **asdict(result)}


# Health


@router.get("/health")
def health():
    services = get_services()
    return {
        "schema_version": settings.schema_version,
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime_seconds": round(observability.uptime_seconds(), 3),
        "last_sync": observability.snapshot(),
        "realtime_subscriptions": services.realtime.subscription_count(),
    }


@router.get("/readiness")
def readiness():
    services = get_services()
    return {"schema_version": settings.schema_version, "status": "ready", "cache": services.cache.metrics()}


@router.get("/metrics")
def all_metrics():
    services = get_services()
    output = services.metrics.global_metrics()
    output["schema_version"] = settings.schema_version
    output["circuit_breakers"] = services.circuit_breaker.snapshot()
    output["gaps"] = services.detector.count_by_status()
    output["pending_backfills"] = services.realtime.pending_backfills()
    return output


# Klines


@router.get("/klines", response_model=KlineListResponse)
def list_klines(
    symbol_id: int,
    interval: str,
    start: str | None = None,
    end: str | None = None,
    limit: int = Query(500, ge=1, le=5000),
):
    validate_interval(interval)
    start_ms = to_epoch_ms(start) if start else None
    end_ms = to_epoch_ms(end) if end else None
    klines = get_services().store.list_range(symbol_id, interval, start_ms, end_ms, limit)
    return KlineListResponse(
        schema_version=settings.schema_version,
        symbol_id=symbol_id,
        interval=interval,
        count=len(klines),
        klines=[KlineSchema.model_validate(k) for k in klines],
    )


@router.post("/klines/delete")
def delete_klines(request: KlineDeleteRequest):
    start_ms = to_epoch_ms(request.start_time)
    end_ms = to_epoch_ms(request.end_time)
    deleted = get_services().store.delete_range(request.symbol_id, request.interval, start_ms, end_ms)
    return {"schema_version": settings.schema_version, "deleted_count": deleted}


@router.delete("/klines/{symbol_id}/{interval}")
def delete_kline_series(symbol_id: int, interval: str):
    deleted = get_services().store.delete_series(symbol_id, interval)
    return {"schema_version": settings.schema_version, "deleted_count": deleted}


@router.delete("/klines/{symbol_id}")
def delete_symbol_klines(symbol_id: int):
    deleted = get_services().store.delete_symbol(symbol_id)
    return {"schema_version": settings.schema_version, "deleted_count": deleted}


# Gaps


@router.get("/gaps", response_model=GapListResponse)
def list_gaps(
    symbol_id: int | None = None,
    interval: str | None = None,
    status: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
):
    items, total = get_services().detector.list_gaps(symbol_id, interval, status, page, page_size)
    return GapListResponse(
        schema_version=settings.schema_version,
        total=total,
        page=page,
        page_size=page_size,
        items=[GapSchema.model_validate(g) for g in items],
    )


@router.get("/gaps/{gap_id}", response_model=GapSchema)
def get_gap(gap_id: int):
    return GapSchema.model_validate(get_services().detector.get(gap_id))


@router.post("/gaps/detect", response_model=GapDetectResponse)
def detect_gaps(request: SeriesRequest):
    result = get_services().detector.detect(request.symbol_id, request.interval)
    return GapDetectResponse(
        schema_version=settings.schema_version,
        success=result.success,
        message=result.message,
        symbol_count=result.symbol_count,
        interval_count=result.interval_count,
        new_gap_count=result.new_gap_count,
        total_gap_count=result.total_gap_count,
        gaps=[GapSchema.model_validate(g) for g in result.gaps],
    )


@router.post("/gaps/detect-all", response_model=GapDetectResponse)
def detect_all_gaps():
    result = get_services().detector.detect_all()
    return GapDetectResponse(
        schema_version=settings.schema_version,
        success=result.success,
        message=result.message,
        symbol_count=result.symbol_count,
        interval_count=result.interval_count,
        new_gap_count=result.new_gap_count,
        total_gap_count=result.total_gap_count,
    )


@router.post("/gaps/batch-fill", response_model=BatchGapFillResponse)
def batch_fill_gaps(request: BatchGapFillRequest):
    return _gap_fill_payload(get_services().healer.batch_fill(request.gap_ids))


@router.post("/gaps/auto-fill", response_model=BatchGapFillResponse)
def auto_fill_gaps():
    return _gap_fill_payload(get_services().healer.auto_fill())


@router.post("/gaps/{gap_id}/fill", response_model=GapFillResponse)
def fill_gap(gap_id: int):
    return _gap_fill_payload(get_services().healer.fill_gap(gap_id))


@router.post("/gaps/{gap_id}/reset", response_model=GapSchema)
def reset_gap(gap_id: int):
    return GapSchema.model_validate(get_services().healer.reset_failed_gap(gap_id))


# Sync


@router.post("/sync/history", response_model=HistorySyncResponse)
def sync_history(request: HistorySyncRequest):
    synced = get_services().history.sync_range(
        request.symbol_id,
        request.interval,
        to_epoch_ms(request.start_time),
        to_epoch_ms(request.end_time),
    )
    return HistorySyncResponse(
        schema_version=settings.schema_version,
        symbol_id=request.symbol_id,
        interval=request.interval,
        synced_count=synced,
    )


@router.post("/sync/incremental", response_model=HistorySyncResponse)
def sync_incremental(request: SeriesRequest):
    synced = get_services().history.sync_incremental(request.symbol_id, request.interval)
    return HistorySyncResponse(
        schema_version=settings.schema_version,
        symbol_id=request.symbol_id,
        interval=request.interval,
        synced_count=synced,
    )


@router.post("/sync/incremental-all", response_model=IncrementalSyncResponse)
def sync_incremental_all():
    summary = get_services().history.sync_all_incremental()
    return IncrementalSyncResponse(
        schema_version=settings.schema_version,
        total_symbols=summary.total_symbols,
        total_processed=summary.total_processed,
        success_count=summary.success_count,
        failure_count=summary.failure_count,
        total_klines=summary.total_klines,
        results=[asdict(r) for r in summary.results],
    )


@router.get("/sync/status", response_model=list[SyncStatusSchema])
def list_sync_status(symbol_id: int | None = None):
    return [SyncStatusSchema.model_validate(s) for s in get_services().sync.list_status(symbol_id)]


@router.put("/sync/status/{status_id}/auto-gap-fill", response_model=SyncStatusSchema)
def set_auto_gap_fill(status_id: int, request: AutoGapFillRequest):
    return SyncStatusSchema.model_validate(get_services().sync.set_auto_gap_fill_by_id(status_id, request.enabled))


@router.get("/sync/tasks", response_model=TaskListResponse)
def list_tasks(
    symbol_id: int | None = None,
    interval: str | None = None,
    task_type: str | None = None,
    status: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
):
    items, total = get_services().sync.list_tasks(symbol_id, interval, task_type, status, page, page_size)
    return TaskListResponse(
        schema_version=settings.schema_version,
        total=total,
        page=page,
        page_size=page_size,
        items=[SyncTaskSchema.model_validate(t) for t in items],
    )


@router.get("/sync/tasks/{task_id}", response_model=SyncTaskSchema)
def get_task(task_id: int):
    return SyncTaskSchema.model_validate(get_services().sync.get_task(task_id))


# Realtime


@router.get("/realtime/status", response_model=RealtimeStatusResponse)
def realtime_status():
    services = get_services()
    realtime = services.realtime
    return RealtimeStatusResponse(
        schema_version=settings.schema_version,
        enabled=services.config.is_realtime_sync_enabled(),
        subscription_count=realtime.subscription_count(),
        connected_count=realtime.connected_count(),
        pending_backfills=realtime.pending_backfills(),
        subscriptions=[SubscriptionSchema.model_validate(s) for s in realtime.subscriptions()],
    )


@router.post("/realtime/symbols/{symbol_id}/start")
def start_realtime(symbol_id: int):
    count = get_services().realtime.start(symbol_id)
    return {"schema_version": settings.schema_version, "subscription_count": count}


@router.post("/realtime/symbols/{symbol_id}/stop")
def stop_realtime(symbol_id: int):
    count = get_services().realtime.stop(symbol_id)
    return {"schema_version": settings.schema_version, "stopped_count": count}


@router.post("/realtime/data-sources/{data_source_id}/stop")
def stop_realtime_by_data_source(data_source_id: int):
    count = get_services().realtime.stop_by_data_source(data_source_id)
    return {"schema_version": settings.schema_version, "stopped_count": count}


@router.post("/realtime/start-all")
def start_all_realtime():
    count = get_services().realtime.start_all()
    return {"schema_version": settings.schema_version, "subscription_count": count}


@router.post("/realtime/stop-all")
def stop_all_realtime():
    count = get_services().realtime.stop_all()
    return {"schema_version": settings.schema_version, "stopped_count": count}


@router.post("/realtime/reconnect")
def realtime_reconnect(request: RealtimeReconnectRequest):
    validate_interval(request.interval)
    queued = get_services().realtime.on_reconnect(request.data_source_id, request.symbol_id, request.interval)
    return {"schema_version": settings.schema_version, "backfill_queued": queued}


# Config


@router.get("/config", response_model=list[ConfigSchema])
def list_config():
    return [ConfigSchema.model_validate(c) for c in get_services().config.list_all()]


@router.put("/config/{key}", response_model=ConfigSchema)
def update_config(key: str, request: ConfigUpdateRequest):
    config = get_services().config
    config.update_value(key, request.value)
    return ConfigSchema.model_validate(config.get_config(key))


@router.post("/config/refresh")
def refresh_config():
    get_services().config.refresh_cache()
    return {"schema_version": settings.schema_version, "status": "ok"}
