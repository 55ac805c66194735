"""Per-device ingestion channel: hardware push → persistence, thresholds, trends.

One channel exists per connected device.  :meth:`IngestionChannel.push` is
the hardware callback and never blocks: it evaluates the reading against
the thresholds straight away and queues it on two bounded per-type
buffers, one drained by a persistence writer task and one by the trend
task.  On overflow the oldest point of that buffer is dropped and a
:class:`~wearable_telemetry.errors.DataLoss` warning is emitted.
"""

from __future__ import annotations

import asyncio
import warnings
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import structlog

from wearable_telemetry.errors import DataLoss, PersistenceFailed
from wearable_telemetry.events.bus import INGESTION_ORIGIN
from wearable_telemetry.models import DataType, HealthDataPoint, WearableDevice

if TYPE_CHECKING:
    from wearable_telemetry.analysis.trend import TrendAnalyzer
    from wearable_telemetry.monitors.thresholds import ThresholdEvaluator
    from wearable_telemetry.storage.repository import HealthDataRepository

logger = structlog.get_logger(__name__)

WindowCallback = Callable[[WearableDevice, DataType, list[HealthDataPoint]], Awaitable[None]]


@dataclass
class _Lane:
    """Buffers for one data type of one device."""

    to_persist: deque[HealthDataPoint] = field(default_factory=deque)
    to_analyze: deque[HealthDataPoint] = field(default_factory=deque)
    dropped: int = 0


class IngestionChannel:
    """Push-fed pipe for a single device.

    Usage::

        channel = IngestionChannel(device, evaluator=..., analyzer=..., repository=...)
        await channel.start()
        session.set_listener(channel.push)
        ...
        await channel.close()   # drains, then stops
    """

    def __init__(
        self,
        device: WearableDevice,
        *,
        evaluator: ThresholdEvaluator,
        analyzer: TrendAnalyzer,
        repository: HealthDataRepository,
        on_window_close: WindowCallback | None = None,
        buffer_size: int = 256,
    ) -> None:
        self._device = device
        self._evaluator = evaluator
        self._analyzer = analyzer
        self._repo = repository
        self._on_window_close = on_window_close
        self._buffer_size = buffer_size

        self._lanes: dict[DataType, _Lane] = {}
        self._persist_ready = asyncio.Event()
        self._analyze_ready = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._closed = False
        self._rr = 0

        self._stats = {
            "accepted": 0,
            "rejected": 0,
            "critical": 0,
            "persisted": 0,
            "persist_failures": 0,
            "analyzed": 0,
            "windows_closed": 0,
            "dropped": 0,
        }

    # ── Properties ────────────────────────────────────────────

    @property
    def device(self) -> WearableDevice:
        return self._device

    @property
    def device_id(self) -> str:
        return self._device.device_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stats(self) -> dict[str, Any]:
        return dict(self._stats)

    @property
    def pending(self) -> int:
        return sum(len(lane.to_persist) + len(lane.to_analyze) for lane in self._lanes.values())

    def dropped(self, data_type: DataType) -> int:
        lane = self._lanes.get(data_type)
        return lane.dropped if lane is not None else 0

    def update_device(self, device: WearableDevice) -> None:
        """Refresh descriptive fields (name, battery) used in alert messages."""
        self._device = device

    # ── Producer side ─────────────────────────────────────────

    def push(self, point: HealthDataPoint) -> bool:
        """Accept one reading from the hardware layer.

        Returns ``False`` (nothing buffered) once the channel is closed.
        """
        if self._closed:
            self._stats["rejected"] += 1
            logger.warning("channel.rejected", device=self.device_id, type=point.type.value)
            return False
        if point.device_id != self.device_id:
            raise ValueError(f"point for {point.device_id} pushed into channel of {self.device_id}")

        lane = self._lanes.get(point.type)
        if lane is None:
            lane = self._lanes[point.type] = _Lane()
        self._stats["accepted"] += 1

        self._buffer(lane.to_persist, lane, point)
        self._persist_ready.set()

        if self._evaluator.evaluate(point, self._device):
            self._stats["critical"] += 1

        self._buffer(lane.to_analyze, lane, point)
        self._analyze_ready.set()
        return True

    def _buffer(self, buf: deque[HealthDataPoint], lane: _Lane, point: HealthDataPoint) -> None:
        if len(buf) >= self._buffer_size:
            buf.popleft()
            lane.dropped += 1
            self._stats["dropped"] += 1
            logger.warning(
                "channel.data_loss",
                device=self.device_id,
                type=point.type.value,
                dropped=lane.dropped,
            )
            warnings.warn(DataLoss(self.device_id, point.type.value, lane.dropped), stacklevel=3)
        buf.append(point)

    def _next(self, pick: Callable[[_Lane], deque[HealthDataPoint]]) -> HealthDataPoint | None:
        """Pop the oldest point of the next non-empty lane (round robin)."""
        lanes = list(self._lanes.values())
        for offset in range(len(lanes)):
            buf = pick(lanes[(self._rr + offset) % len(lanes)])
            if buf:
                self._rr = (self._rr + offset + 1) % len(lanes)
                return buf.popleft()
        return None

    # ── Consumer loops ────────────────────────────────────────

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._persist_loop(), name=f"persist-{self.device_id}"),
            asyncio.create_task(self._analyze_loop(), name=f"analyze-{self.device_id}"),
        ]
        logger.info("channel.started", device=self.device_id)

    async def _persist_loop(self) -> None:
        while True:
            point = self._next(lambda lane: lane.to_persist)
            if point is None:
                if self._closed:
                    return
                self._persist_ready.clear()
                await self._persist_ready.wait()
                continue
            try:
                await self._repo.save(point, origin=INGESTION_ORIGIN)
                self._stats["persisted"] += 1
            except PersistenceFailed as exc:
                self._stats["persist_failures"] += 1
                logger.error("channel.persist_failed", device=self.device_id, type=point.type.value, error=str(exc))

    async def _analyze_loop(self) -> None:
        while True:
            point = self._next(lambda lane: lane.to_analyze)
            if point is None:
                if self._closed:
                    return
                self._analyze_ready.clear()
                await self._analyze_ready.wait()
                continue
            self._stats["analyzed"] += 1
            if not self._analyzer.append(point):
                continue
            self._stats["windows_closed"] += 1
            if self._on_window_close is None:
                continue
            window = self._analyzer.window(self.device_id, point.type)
            try:
                await self._on_window_close(self._device, point.type, window)
            except Exception:
                logger.exception("channel.window_callback_error", device=self.device_id, type=point.type.value)

    async def close(self, *, drain_timeout: float = 10.0) -> None:
        """Stop accepting points, drain what is buffered, then stop the tasks."""
        already_closed = self._closed
        self._closed = True
        self._persist_ready.set()
        self._analyze_ready.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=drain_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("channel.drain_timeout", device=self.device_id, pending=self.pending)
        self._tasks = []
        if not already_closed:
            logger.info("channel.closed", device=self.device_id, **self._stats)
