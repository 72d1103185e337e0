"""
Async Modbus Client

Wrapper around pymodbus for read-input-registers exchanges against one
Modbus TCP endpoint, with an explicit connection state machine:

    DISCONNECTED -> CONNECTING -> CONNECTED -> (I/O error or timeout) -> DISCONNECTED
"""

import asyncio
from enum import Enum

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException

from modbus_influx.common.exceptions import TransportError
from modbus_influx.common.logging_setup import get_service_logger

logger = get_service_logger("device.modbus")


class ConnectionState(str, Enum):
    """Transport-level connection state"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ModbusClient:
    """
    Async Modbus TCP client for one endpoint.

    Handles:
    - Inline connect when a read finds the connection DISCONNECTED
    - A hard timeout around every connect and every request
    - Teardown on timeout or I/O error, so the next read starts on a
      fresh connection instead of a possibly desynchronized stream

    There is no retry inside a read: the next scheduled poll is the retry.
    pymodbus' own retries and background reconnects are disabled.
    """

    def __init__(
        self,
        host: str,
        port: int = 502,
        timeout: float = 1.0,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout

        self._client: AsyncModbusTcpClient | None = None
        self._state = ConnectionState.DISCONNECTED
        self.connect_count = 0
        self.last_error: str | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._client is not None

    async def connect(self) -> None:
        """Establish connection to the Modbus endpoint"""
        if self.is_connected and self._client.connected:
            return

        self._teardown()
        self._state = ConnectionState.CONNECTING
        self.connect_count += 1

        self._client = AsyncModbusTcpClient(
            host=self.host,
            port=self.port,
            timeout=self.timeout,
            retries=0,
            reconnect_delay=0,
        )

        try:
            connected = await asyncio.wait_for(self._client.connect(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._teardown()
            raise self._error("connect timeout", TransportError.PHASE_CONNECT, timed_out=True)
        except (ModbusException, OSError) as e:
            self._teardown()
            raise self._error(str(e), TransportError.PHASE_CONNECT) from e

        if not connected:
            self._teardown()
            raise self._error("connection refused", TransportError.PHASE_CONNECT)

        self._state = ConnectionState.CONNECTED
        self.last_error = None
        logger.debug(f"Connected to Modbus endpoint {self.host}:{self.port}")

    async def disconnect(self) -> None:
        """Close connection"""
        self._teardown()
        logger.debug(f"Disconnected from {self.host}:{self.port}")

    async def read_input_registers(
        self,
        address: int,
        count: int,
        unit_id: int = 1,
    ) -> list[int]:
        """
        Read `count` input registers starting at `address`.

        Returns:
            Exactly `count` raw register words

        Raises:
            TransportError: connect failure, timeout, I/O error, exception
                response or truncated response
        """
        if not self.is_connected or not self._client.connected:
            await self.connect()

        try:
            response = await asyncio.wait_for(
                self._client.read_input_registers(
                    address=address,
                    count=count,
                    device_id=unit_id,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            self._teardown()
            raise self._error(
                f"read timeout at {address} (+{count})",
                TransportError.PHASE_REQUEST,
                unit_id=unit_id,
                timed_out=True,
            )
        except (ModbusException, OSError) as e:
            self._teardown()
            raise self._error(str(e), TransportError.PHASE_REQUEST, unit_id=unit_id) from e

        if response.isError():
            # The device answered: the stream is in sync, keep the connection
            raise self._error(
                f"exception response at {address}: {response}",
                TransportError.PHASE_RESPONSE,
                unit_id=unit_id,
            )

        registers = list(getattr(response, "registers", None) or [])
        if len(registers) < count:
            self._teardown()
            raise self._error(
                f"truncated response at {address}: expected {count} registers, got {len(registers)}",
                TransportError.PHASE_RESPONSE,
                unit_id=unit_id,
            )

        return registers[:count]

    def _teardown(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.warning(f"Error closing Modbus client {self.host}:{self.port}: {e}")
            self._client = None
        self._state = ConnectionState.DISCONNECTED

    def _error(
        self,
        message: str,
        phase: str,
        unit_id: int | None = None,
        timed_out: bool = False,
    ) -> TransportError:
        self.last_error = message
        return TransportError(
            message,
            host=self.host,
            port=self.port,
            unit_id=unit_id,
            phase=phase,
            timed_out=timed_out,
        )
