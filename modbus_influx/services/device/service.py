"""
Poller Service - Modbus to InfluxDB

Responsible for:
- One scheduled loop per distinct scan interval
- Fanning each tick out over the interval's poll targets
- Handing decoded samples to the sink writer
- Serving /health and /stats when configured
- Graceful shutdown on SIGTERM/SIGINT
"""

import asyncio
import signal
from datetime import datetime, timezone
from functools import partial

import httpx
from aiohttp import web

from modbus_influx.common.config import AppConfig, PollTarget
from modbus_influx.common.logging_setup import get_service_logger
from modbus_influx.common.scheduler import SchedulerGroup
from modbus_influx.services.sink.writer import SinkWriter
from .connection_pool import ConnectionPool
from .register_reader import RegisterReader

logger = get_service_logger("device")


def format_interval(seconds: float) -> str:
    """Short label for an interval: 2s, 500ms"""
    if float(seconds).is_integer():
        return f"{int(seconds)}s"
    millis = seconds * 1000
    if abs(millis - round(millis)) < 1e-9:
        return f"{int(round(millis))}ms"
    return f"{seconds}s"


class PollerService:
    """
    Poller Service

    Wires the poll target table to the scheduler, the Modbus transport and
    the sink:
    - Targets sharing an interval are polled together, once per tick
    - A tick still running when the next one is due makes that one skip
    - Reads within a tick run concurrently up to poller.max_concurrency
    """

    def __init__(
        self,
        config: AppConfig,
        sink_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config

        self.connection_pool = ConnectionPool(connection_timeout=config.modbus.timeout)
        self.register_reader = RegisterReader(self.connection_pool)
        self.sink = SinkWriter(config.influxdb, config.sink, transport=sink_transport)
        self.schedulers = SchedulerGroup()

        self._start_time = datetime.now(timezone.utc)
        self._health_runner: web.AppRunner | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the sink, the connection pool and one loop per interval"""
        logger.info("Starting Poller Service")
        self._running = True
        self._start_time = datetime.now(timezone.utc)

        await self.sink.start()
        await self.connection_pool.start()

        for interval in self.config.targets.intervals:
            name = f"interval-{format_interval(interval)}"
            self.schedulers.add(name, interval, partial(self.run_tick, interval))
            logger.info(
                f"Scheduling {len(self.config.targets.for_interval(interval))} targets every "
                f"{format_interval(interval)}",
                extra={"scheduler": name},
            )
        await self.schedulers.start_all()

        if self.config.health is not None:
            await self._start_health_server()

        logger.info(
            f"Poller Service started ({len(self.config.targets)} targets, "
            f"{len(self.config.targets.endpoints)} endpoints)",
            extra={"target_count": len(self.config.targets)},
        )

    async def run(self) -> None:
        """Start, then block until a shutdown signal arrives, then stop"""
        await self.start()
        self._setup_signal_handlers()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """
        Stop the service.

        Order: timers (in-flight ticks drain), sink (final flush), connections,
        health server.
        """
        logger.info("Stopping Poller Service")
        self._running = False

        await self.schedulers.stop_all()
        await self.sink.stop()
        await self.connection_pool.stop()
        await self._stop_health_server()

        logger.info("Poller Service stopped")

    async def run_tick(self, interval: float) -> int:
        """
        Poll every target of one interval once.

        Returns:
            Number of samples handed to the sink
        """
        targets = self.config.targets.for_interval(interval)
        semaphore = asyncio.Semaphore(self.config.poller.max_concurrency)

        results = await asyncio.gather(
            *(self._poll_one(target, semaphore) for target in targets),
            return_exceptions=True,
        )

        total = 0
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Unexpected error polling {target.name}: {result}",
                    extra={"target": target.name},
                )
            else:
                total += result
        return total

    async def _poll_one(self, target: PollTarget, semaphore: asyncio.Semaphore) -> int:
        # A target queued on a busy endpoint holds no slot
        samples = await self.register_reader.poll_target(target, in_flight=semaphore)
        if samples:
            await self.sink.enqueue(samples)
        return len(samples)

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(self._handle_shutdown))

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal"""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    def get_stats(self) -> dict:
        reader_stats = self.register_reader.get_stats()
        return {
            "schedulers": self.schedulers.get_stats(),
            "connections": self.connection_pool.get_stats(),
            "targets": reader_stats["targets"],
            "decode_errors": reader_stats["decode_errors"],
            "sink": self.sink.get_stats(),
        }

    def create_health_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/stats", self._stats_handler)
        return app

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        settings = self.config.health
        self._health_runner = web.AppRunner(self.create_health_app())
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, settings.host, settings.port)
        await site.start()

        logger.info(f"Health server started on {settings.host}:{settings.port}")

    async def _stop_health_server(self) -> None:
        """Stop the health check HTTP server"""
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests"""
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        states = self.register_reader.get_stats()["targets"]
        online = sum(1 for state in states.values() if state["online"])

        return web.json_response({
            "status": "healthy" if self._running else "unhealthy",
            "service": "modbus-influx",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "targets": len(self.config.targets),
            "targets_online": online,
        })

    async def _stats_handler(self, request: web.Request) -> web.Response:
        """Return scheduler, connection, target and sink counters"""
        return web.json_response(self.get_stats())
