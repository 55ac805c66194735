"""FastAPI application — device lifecycle, readings and predictions over HTTP.

The :class:`~wearable_telemetry.service.TelemetryService` is created (or
injected) in :func:`create_app`, initialised in the lifespan, and reached
by the routes through ``request.app.state.service``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import structlog
from fastapi import FastAPI, HTTPException, Query, Request

from wearable_telemetry.api.middleware import setup_middleware
from wearable_telemetry.api.schemas import (
    ConnectRequest,
    HandleOut,
    PredictionRequest,
    ReadingRequest,
)
from wearable_telemetry.config import get_settings
from wearable_telemetry.models import DataType, PredictionType, utcnow
from wearable_telemetry.service import TelemetryService

logger = structlog.get_logger(__name__)


def _service(request: Request) -> TelemetryService:
    return request.app.state.service


def create_app(service: TelemetryService | None = None) -> FastAPI:
    """Build the application around *service* (a default one if omitted)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup / shutdown lifecycle hooks."""
        svc = service or TelemetryService(get_settings())
        app.state.service = svc

        # 1. Database
        await svc.database.init()
        logger.info("server.db_ready")

        # 2. Hardware, dispatcher, subscriptions
        await svc.initialize()
        logger.info("server.started", port=svc.settings.api_port)

        yield  # ← application runs

        # Shutdown
        await svc.cleanup()
        await svc.database.dispose()
        logger.info("server.stopped")

    app = FastAPI(
        title="Wearable Telemetry API",
        description="Wearable telemetry ingestion, threshold alerting and trend prediction.",
        version="0.1.0",
        lifespan=lifespan,
    )
    setup_middleware(app)

    # ── Health ────────────────────────────────────────────────

    @app.get("/health", tags=["system"])
    async def health(request: Request):
        svc = _service(request)
        return {
            "status": "ok" if svc.initialized else "stopped",
            "connected_devices": len(svc.manager.connected_ids),
            "dispatcher": svc.dispatcher.stats,
        }

    # ── Devices ───────────────────────────────────────────────

    @app.get("/devices/scan", tags=["devices"])
    async def scan_devices(
        request: Request,
        timeout: float | None = Query(None, gt=0, le=60),
        service_filter: list[str] = Query([], alias="service"),
    ):
        handles = await _service(request).scan_for_devices(service_filter, timeout)
        return [HandleOut.from_handle(h).model_dump() for h in handles]

    @app.post("/devices/connect", status_code=201, tags=["devices"])
    async def connect_device(request: Request, req: ConnectRequest):
        device = await _service(request).connect_device(req.to_handle(), req.user_id)
        return device.model_dump(mode="json")

    @app.delete("/devices/{device_id}", tags=["devices"])
    async def disconnect_device(request: Request, device_id: str):
        device = await _service(request).disconnect_device(device_id)
        return device.model_dump(mode="json")

    @app.get("/devices", tags=["devices"])
    async def list_devices(request: Request, user_id: str = Query(...)):
        devices = await _service(request).get_devices(user_id)
        return [d.model_dump(mode="json") for d in devices]

    # ── Readings ──────────────────────────────────────────────

    @app.post("/devices/{device_id}/readings", status_code=202, tags=["data"])
    async def push_reading(request: Request, device_id: str, req: ReadingRequest):
        """Push one reading into the device's ingestion channel."""
        point = req.to_point(device_id)
        if not _service(request).push_reading(point):
            raise HTTPException(409, f"Device {device_id} no longer accepts readings.")
        return {"accepted": True, "device_id": device_id, "type": point.type.value}

    @app.get("/devices/{device_id}/data", tags=["data"])
    async def get_health_data(
        request: Request,
        device_id: str,
        data_type: DataType = Query(..., alias="type"),
        start: datetime | None = Query(None),
        end: datetime | None = Query(None),
    ):
        end = end or utcnow()
        start = start or end - timedelta(hours=24)
        points = await _service(request).get_health_data(device_id, data_type, start, end)
        return [p.model_dump(mode="json") for p in points]

    # ── Predictions ───────────────────────────────────────────

    @app.post("/predictions", status_code=201, tags=["predictions"])
    async def generate_predictions(request: Request, req: PredictionRequest):
        points = [p.to_point(p.device_id) for p in req.points]
        predictions = await _service(request).generate_predictions(req.user_id, points, req.types)
        return [p.model_dump(mode="json") for p in predictions]

    @app.get("/predictions/{user_id}", tags=["predictions"])
    async def prediction_history(
        request: Request,
        user_id: str,
        prediction_type: PredictionType | None = Query(None, alias="type"),
        start: datetime | None = Query(None),
        end: datetime | None = Query(None),
    ):
        history = await _service(request).get_prediction_history(user_id, prediction_type, start, end)
        return [p.model_dump(mode="json") for p in history]

    return app


app = create_app()
