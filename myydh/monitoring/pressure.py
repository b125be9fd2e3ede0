"""
Process load monitoring and request shedding.

A background task samples event loop delay, event loop utilization, heap
usage and resident memory. While the latest sample breaches any enabled
threshold, every request is answered with 503 Service Unavailable; the
first sample back under all thresholds restores normal service.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

import psutil
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from ..api.responses import NegotiatedResponse, error_body
from ..config.models import ProcessLoadSettings
from . import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PressureSample:
    event_loop_delay: float = 0.0  # milliseconds
    event_loop_utilization: float = 0.0  # 0..1
    heap_used_bytes: int = 0
    rss_bytes: int = 0


class PressureMonitor:
    def __init__(
        self,
        settings: ProcessLoadSettings,
        process: Optional[psutil.Process] = None,
    ):
        self.settings = settings
        self._process = process
        self._task: Optional[asyncio.Task] = None
        self._under_pressure = False
        self.last_sample: Optional[PressureSample] = None
        self.breaches: List[str] = []

    @property
    def under_pressure(self) -> bool:
        return self._under_pressure

    def exceeded(self, sample: PressureSample) -> List[str]:
        s = self.settings
        checks = (
            ("event_loop_delay", s.max_event_loop_delay, sample.event_loop_delay),
            (
                "event_loop_utilization",
                s.max_event_loop_utilization,
                sample.event_loop_utilization,
            ),
            ("heap_used_bytes", s.max_heap_used_bytes, sample.heap_used_bytes),
            ("rss_bytes", s.max_rss_bytes, sample.rss_bytes),
        )
        return [name for name, limit, value in checks if limit and value > limit]

    def record_sample(self, sample: PressureSample) -> bool:
        """Store a sample and return whether the process is now under pressure."""
        breaches = self.exceeded(sample)
        was = self._under_pressure
        self.last_sample = sample
        self.breaches = breaches
        self._under_pressure = bool(breaches)

        metrics.event_loop_delay.set(sample.event_loop_delay)
        metrics.event_loop_utilization.set(sample.event_loop_utilization)
        metrics.heap_used_bytes.set(sample.heap_used_bytes)
        metrics.rss_bytes.set(sample.rss_bytes)
        metrics.under_pressure.set(1 if self._under_pressure else 0)

        if self._under_pressure and not was:
            logger.warning("Process under pressure (%s); shedding requests", ", ".join(breaches))
        elif was and not self._under_pressure:
            logger.info("Process load recovered; accepting requests")
        return self._under_pressure

    def _memory(self) -> tuple[int, int]:
        if self._process is None:
            self._process = psutil.Process()
        mem = self._process.memory_info()
        # "data" (heap + stack segments) is Linux only
        heap = getattr(mem, "data", None) or mem.rss
        return int(heap), int(mem.rss)

    async def sample_once(self) -> PressureSample:
        loop = asyncio.get_running_loop()
        interval = self.settings.sample_interval
        wall_start = loop.time()
        cpu_start = time.process_time()
        await asyncio.sleep(interval)
        wall = loop.time() - wall_start
        cpu = time.process_time() - cpu_start
        heap, rss = self._memory()
        return PressureSample(
            event_loop_delay=max(0.0, (wall - interval) * 1000),
            event_loop_utilization=min(1.0, cpu / wall) if wall > 0 else 0.0,
            heap_used_bytes=heap,
            rss_bytes=rss,
        )

    async def _run(self) -> None:
        while True:
            sample = await self.sample_once()
            self.record_sample(sample)

    def start(self) -> None:
        if self._task is not None or not self.settings.enabled:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Process load monitor started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Process load monitor stopped")


class LoadSheddingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, monitor: PressureMonitor):
        super().__init__(app)
        self.monitor = monitor

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if self.monitor.under_pressure:
            metrics.load_shed_total.inc()
            return NegotiatedResponse(
                error_body(503, "Service Unavailable"), request=request, status_code=503
            )
        return await call_next(request)
