"""Data-access layer — thin async wrappers around SQLAlchemy queries.

Every committed write is published on the :class:`EventBus` so that change
subscriptions see it.  Store failures are logged and re-raised as
:class:`~wearable_telemetry.errors.PersistenceFailed`.
"""

from __future__ import annotations

import json
from datetime import datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from wearable_telemetry.errors import PersistenceFailed
from wearable_telemetry.events.bus import ChangeOp, EventBus, Table
from wearable_telemetry.models import (
    DataType,
    DeviceStatus,
    DeviceType,
    HealthDataPoint,
    HealthPrediction,
    PredictionType,
    WearableDevice,
)
from wearable_telemetry.storage.database import (
    Database,
    HealthDataRow,
    HealthPredictionRow,
    WearableDeviceRow,
)

logger = structlog.get_logger(__name__)


class BaseRepository:
    """Shared base with session management for all repositories."""

    def __init__(self, database: Database, bus: EventBus | None = None) -> None:
        self._db = database
        self._bus = bus

    def _publish(self, table: Table, op: ChangeOp, record, origin: str | None = None) -> None:
        if self._bus is not None:
            self._bus.publish(table, op, record, origin=origin)

    @staticmethod
    def _failed(operation: str, exc: Exception) -> PersistenceFailed:
        logger.error("repository.error", operation=operation, error=str(exc))
        return PersistenceFailed(operation, str(exc))


# ── Devices ───────────────────────────────────────────────────

def _device_from_row(row: WearableDeviceRow) -> WearableDevice:
    return WearableDevice(
        id=row.id,
        device_id=row.device_id,
        user_id=row.user_id,
        name=row.name,
        type=DeviceType(row.type),
        manufacturer=row.manufacturer,
        model=row.model,
        status=DeviceStatus(row.status),
        last_sync=row.last_sync,
        battery_level=row.battery_level,
        metadata=json.loads(row.metadata_json or "{}"),
    )


class DeviceRepository(BaseRepository):
    """CRUD operations for :class:`WearableDevice` records."""

    async def upsert(self, device: WearableDevice) -> WearableDevice:
        """Insert *device*, or update the existing record for the same owner
        and hardware address (keeping its store-assigned id)."""
        try:
            async with self._db.session() as session:
                stmt = select(WearableDeviceRow).where(
                    WearableDeviceRow.user_id == device.user_id,
                    WearableDeviceRow.device_id == device.device_id,
                )
                row = (await session.execute(stmt)).scalars().first()
                op = ChangeOp.UPDATE
                if row is None:
                    row = WearableDeviceRow(id=device.id)
                    session.add(row)
                    op = ChangeOp.INSERT
                row.device_id = device.device_id
                row.user_id = device.user_id
                row.name = device.name
                row.type = device.type.value
                row.manufacturer = device.manufacturer
                row.model = device.model
                row.status = device.status.value
                row.last_sync = device.last_sync
                row.battery_level = device.battery_level
                row.metadata_json = json.dumps(device.metadata)
                await session.commit()
                saved = _device_from_row(row)
        except SQLAlchemyError as exc:
            raise self._failed("device.upsert", exc) from exc
        self._publish(Table.DEVICES, op, saved)
        return saved

    async def update_status(
        self,
        user_id: str,
        device_id: str,
        status: DeviceStatus,
        last_sync: datetime | None = None,
    ) -> WearableDevice | None:
        """Set *status* (and optionally ``last_sync``) on the record one
        owner holds for a hardware address.  Returns ``None`` when there is
        no such record."""
        try:
            async with self._db.session() as session:
                stmt = select(WearableDeviceRow).where(
                    WearableDeviceRow.user_id == user_id,
                    WearableDeviceRow.device_id == device_id,
                )
                row = (await session.execute(stmt)).scalars().first()
                if row is None:
                    return None
                row.status = status.value
                if last_sync is not None:
                    row.last_sync = last_sync
                await session.commit()
                updated = _device_from_row(row)
        except SQLAlchemyError as exc:
            raise self._failed("device.update_status", exc) from exc
        self._publish(Table.DEVICES, ChangeOp.UPDATE, updated)
        return updated

    async def list_for_user(self, user_id: str) -> list[WearableDevice]:
        try:
            async with self._db.session() as session:
                stmt = (
                    select(WearableDeviceRow)
                    .where(WearableDeviceRow.user_id == user_id)
                    .order_by(WearableDeviceRow.created_at.asc())
                )
                rows = (await session.execute(stmt)).scalars().all()
                return [_device_from_row(r) for r in rows]
        except SQLAlchemyError as exc:
            raise self._failed("device.list", exc) from exc


# ── Health data ───────────────────────────────────────────────

def _point_to_row(point: HealthDataPoint) -> HealthDataRow:
    return HealthDataRow(
        device_id=point.device_id,
        type=point.type.value,
        value=point.value,
        unit=point.unit,
        timestamp=point.timestamp,
        metadata_json=json.dumps(point.metadata),
    )


def _point_from_row(row: HealthDataRow) -> HealthDataPoint:
    return HealthDataPoint(
        device_id=row.device_id,
        type=DataType(row.type),
        value=row.value,
        unit=row.unit,
        timestamp=row.timestamp,
        metadata=json.loads(row.metadata_json or "{}"),
    )


class HealthDataRepository(BaseRepository):
    """Append-only storage for :class:`HealthDataPoint` objects."""

    # ── Write ─────────────────────────────────────────────────

    async def save(self, point: HealthDataPoint, *, origin: str | None = None) -> None:
        """Append *point*; *origin* tags the change event for subscribers."""
        try:
            async with self._db.session() as session:
                session.add(_point_to_row(point))
                await session.commit()
        except SQLAlchemyError as exc:
            raise self._failed("health_data.save", exc) from exc
        self._publish(Table.HEALTH_DATA, ChangeOp.INSERT, point, origin)

    # ── Read ──────────────────────────────────────────────────

    async def get_range(
        self,
        device_id: str,
        data_type: DataType,
        start: datetime,
        end: datetime,
    ) -> list[HealthDataPoint]:
        """Points in ``[start, end]``, oldest first, ties in arrival order."""
        try:
            async with self._db.session() as session:
                stmt = (
                    select(HealthDataRow)
                    .where(
                        HealthDataRow.device_id == device_id,
                        HealthDataRow.type == data_type.value,
                        HealthDataRow.timestamp >= start,
                        HealthDataRow.timestamp <= end,
                    )
                    .order_by(HealthDataRow.timestamp.asc(), HealthDataRow.seq.asc())
                )
                rows = (await session.execute(stmt)).scalars().all()
                return [_point_from_row(r) for r in rows]
        except SQLAlchemyError as exc:
            raise self._failed("health_data.get_range", exc) from exc

    async def count_for_device(self, device_id: str) -> int:
        try:
            async with self._db.session() as session:
                stmt = (
                    select(func.count())
                    .select_from(HealthDataRow)
                    .where(HealthDataRow.device_id == device_id)
                )
                return (await session.execute(stmt)).scalar() or 0
        except SQLAlchemyError as exc:
            raise self._failed("health_data.count", exc) from exc


# ── Predictions ───────────────────────────────────────────────

def _prediction_from_row(row: HealthPredictionRow) -> HealthPrediction:
    return HealthPrediction(
        id=row.id,
        user_id=row.user_id,
        device_id=row.device_id,
        type=PredictionType(row.type),
        prediction=row.prediction,
        confidence=row.confidence,
        timestamp=row.timestamp,
        metadata=json.loads(row.metadata_json or "{}"),
    )


class PredictionRepository(BaseRepository):
    """Insert-only storage for :class:`HealthPrediction` records."""

    async def save(self, prediction: HealthPrediction) -> HealthPrediction:
        try:
            async with self._db.session() as session:
                session.add(
                    HealthPredictionRow(
                        id=prediction.id,
                        user_id=prediction.user_id,
                        device_id=prediction.device_id,
                        type=prediction.type.value,
                        prediction=prediction.prediction,
                        confidence=prediction.confidence,
                        timestamp=prediction.timestamp,
                        metadata_json=json.dumps(prediction.metadata),
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise self._failed("prediction.save", exc) from exc
        self._publish(Table.PREDICTIONS, ChangeOp.INSERT, prediction)
        return prediction

    async def history(
        self,
        user_id: str,
        prediction_type: PredictionType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[HealthPrediction]:
        """Predictions for *user_id*, newest first, optionally filtered."""
        stmt = select(HealthPredictionRow).where(HealthPredictionRow.user_id == user_id)
        if prediction_type is not None:
            stmt = stmt.where(HealthPredictionRow.type == prediction_type.value)
        if start is not None:
            stmt = stmt.where(HealthPredictionRow.timestamp >= start)
        if end is not None:
            stmt = stmt.where(HealthPredictionRow.timestamp <= end)
        stmt = stmt.order_by(HealthPredictionRow.timestamp.desc())
        try:
            async with self._db.session() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_prediction_from_row(r) for r in rows]
        except SQLAlchemyError as exc:
            raise self._failed("prediction.history", exc) from exc
