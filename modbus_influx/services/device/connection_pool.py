"""
Modbus Connection Pool

One connection per Modbus TCP endpoint, shared by every poll target behind
that endpoint. Each endpoint comes with a lock: the underlying transport does
not support concurrent in-flight requests, so requests to one endpoint are
serialized while distinct endpoints proceed in parallel.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone

from modbus_influx.common.config import Endpoint
from modbus_influx.common.logging_setup import get_service_logger
from .modbus_client import ModbusClient

logger = get_service_logger("device.pool")


@dataclass
class PooledConnection:
    """A pooled Modbus TCP connection with its request mutex"""
    client: ModbusClient
    lock: asyncio.Lock  # Serializes requests on this endpoint
    last_used: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    use_count: int = 0


class ConnectionPool:
    """
    Modbus connection pool.

    Manages connections by:
    - Reusing one connection per host:port
    - Handing out a per-endpoint lock callers hold for a whole poll attempt
    - Closing connections idle for longer than max_idle_seconds
    - Draining in-flight requests before closing on stop()
    """

    def __init__(
        self,
        connection_timeout: float = 1.0,
        max_idle_seconds: int = 300,
    ):
        self._connections: dict[str, PooledConnection] = {}
        self._lock = asyncio.Lock()
        self._connection_timeout = connection_timeout
        self._max_idle_seconds = max_idle_seconds
        self._cleanup_task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        """Start the connection pool"""
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Connection pool started")

    async def stop(self) -> None:
        """
        Stop the pool and close all connections.

        Each endpoint lock is acquired first, so a request still in flight
        finishes or times out before its connection is closed.
        """
        self._running = False

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        async with self._lock:
            for key, pooled in self._connections.items():
                async with pooled.lock:
                    await pooled.client.disconnect()
            self._connections.clear()

        logger.info("Connection pool stopped")

    async def get_connection(self, endpoint: Endpoint) -> tuple[ModbusClient, asyncio.Lock]:
        """
        Get or create the connection for an endpoint.

        The client connects lazily on its first read.

        Returns:
            Tuple of (ModbusClient, asyncio.Lock for request serialization)
        """
        key = endpoint.key

        async with self._lock:
            if key in self._connections:
                pooled = self._connections[key]
                pooled.last_used = datetime.now(timezone.utc)
                pooled.use_count += 1
                return pooled.client, pooled.lock

            client = ModbusClient(
                host=endpoint.host,
                port=endpoint.port,
                timeout=self._connection_timeout,
            )

            self._connections[key] = PooledConnection(
                client=client,
                lock=asyncio.Lock(),
                use_count=1,
            )

            logger.debug(f"Created new connection: {key}")
            return client, self._connections[key].lock

    async def _cleanup_loop(self) -> None:
        """Periodic cleanup of idle connections"""
        while self._running:
            await asyncio.sleep(60)

            try:
                await self._cleanup_idle_connections()
            except Exception as e:
                logger.warning(f"Error in cleanup loop: {e}")

    async def _cleanup_idle_connections(self) -> None:
        """Close connections that have been idle too long (entries stay pooled)"""
        now = datetime.now(timezone.utc)
        closed = 0

        async with self._lock:
            for key, pooled in self._connections.items():
                idle_seconds = (now - pooled.last_used).total_seconds()
                if idle_seconds > self._max_idle_seconds and pooled.client.is_connected:
                    async with pooled.lock:
                        await pooled.client.disconnect()
                    closed += 1
                    logger.debug(f"Closed idle connection: {key}")

        if closed:
            logger.info(f"Closed {closed} idle connections")

    def get_stats(self) -> dict:
        """Get connection pool statistics"""
        return {
            "total_connections": len(self._connections),
            "connections": {
                key: {
                    "state": pooled.client.state.value,
                    "use_count": pooled.use_count,
                    "connect_count": pooled.client.connect_count,
                    "last_error": pooled.client.last_error,
                    "last_used": pooled.last_used.isoformat(),
                }
                for key, pooled in self._connections.items()
            },
        }
