"""Shared fixtures: an in-memory Modbus server standing in for pymodbus, and sample documents."""

import asyncio
import copy
import time
from collections import Counter

import pytest

from modbus_influx.common.config import RegisterDataType, WordOrder
from modbus_influx.services.device.decoder import encode


class FakeResponse:
    """Mimics a pymodbus read response"""

    def __init__(self, registers: list[int], error: bool = False):
        self.registers = registers
        self._error = error

    def isError(self) -> bool:
        return self._error

    def __repr__(self) -> str:
        return "ExceptionResponse(0x84, IllegalAddress)" if self._error else f"Response({self.registers})"


class FakeAsyncModbusTcpClient:
    """Stands in for pymodbus.client.AsyncModbusTcpClient"""

    def __init__(self, server: "FakeModbusServer", host: str, port: int = 502, **kwargs):
        self.server = server
        self.host = host
        self.port = port
        self.kwargs = kwargs
        self.connected = False
        self.closed = False

    async def connect(self) -> bool:
        if self.server.refuse_connect:
            return False
        self.connected = True
        return True

    def close(self) -> None:
        self.connected = False
        self.closed = True

    async def read_input_registers(self, address: int, count: int, device_id: int = 1):
        server = self.server
        server.requests.append((self.host, self.port, device_id, address, count))
        server.request_started.append((self.host, time.monotonic()))
        server.enter(self.host)
        try:
            if server.hang or self.host in server.hung_hosts:
                await asyncio.sleep(3600)
            if server.delay:
                await asyncio.sleep(server.delay)
        finally:
            server.leave(self.host)

        unit = server.units.get(device_id)
        if unit is None:
            return FakeResponse([], error=True)

        registers = [unit.get(a, 0) for a in range(address, address + count)]
        if server.truncate:
            registers = registers[:-1]
        return FakeResponse(registers)


class FakeModbusServer:
    """Register maps per unit id, plus switches to inject transport faults"""

    def __init__(self):
        self.units: dict[int, dict[int, int]] = {}
        self.clients: list[FakeAsyncModbusTcpClient] = []
        self.requests: list[tuple] = []
        self.refuse_connect = False
        self.hang = False
        self.truncate = False
        self.delay = 0.0
        self.hung_hosts: set[str] = set()
        self.request_started: list[tuple[str, float]] = []

        # In-flight bookkeeping: current and peak counts
        self.in_flight: Counter[str] = Counter()
        self.peak_per_host: Counter[str] = Counter()
        self.peak_total = 0
        self.peak_hosts = 0

    def enter(self, host: str) -> None:
        self.in_flight[host] += 1
        self.peak_per_host[host] = max(self.peak_per_host[host], self.in_flight[host])
        self.peak_total = max(self.peak_total, sum(self.in_flight.values()))
        self.peak_hosts = max(self.peak_hosts, sum(1 for n in self.in_flight.values() if n > 0))

    def leave(self, host: str) -> None:
        self.in_flight[host] -= 1

    def set_words(self, unit_id: int, address: int, words: list[int]) -> None:
        unit = self.units.setdefault(unit_id, {})
        for offset, word in enumerate(words):
            unit[address + offset] = word

    def set_value(
        self,
        unit_id: int,
        address: int,
        value: int | float,
        data_type: RegisterDataType,
        word_order: WordOrder = WordOrder.BIG,
    ) -> None:
        self.set_words(unit_id, address, encode(value, data_type, word_order))

    def client_factory(self, host: str, port: int = 502, **kwargs) -> FakeAsyncModbusTcpClient:
        client = FakeAsyncModbusTcpClient(self, host, port, **kwargs)
        self.clients.append(client)
        return client


@pytest.fixture
def modbus_server(monkeypatch) -> FakeModbusServer:
    server = FakeModbusServer()
    monkeypatch.setattr(
        "modbus_influx.services.device.modbus_client.AsyncModbusTcpClient",
        server.client_factory,
    )
    return server


GDT20_DOCUMENT = {
    "modbus": {"hostname": "127.0.0.1", "port": 502, "timeout": "1s"},
    "influxdb2": {
        "hostname": "http://localhost:9999/api/v2",
        "organization": "testorg",
        "bucket": "testbucket",
        "auth_token": "secret-token",
    },
    "templates": {
        "gdt20": {
            "scan_interval": "2s",
            "tags": {"sensor": "WIKA GDT20"},
            "input_registers": [
                {"addr": 0, "name": "pressure", "data_type": "f32", "tags": {"unit": "bar"}},
                {"addr": 12, "name": "temperature", "data_type": "f32", "tags": {"unit": "°C"}},
                {"addr": 20, "name": "gas_density", "data_type": "f32", "tags": {"unit": "kg/m^3"}},
            ],
        },
    },
    "devices": [
        {"template": "gdt20", "id": 1, "tags": {"gas_compartment": "CB", "phase": "L1"}},
        {"template": "gdt20", "id": 2, "tags": {"gas_compartment": "CB", "phase": "L2"}},
        {"template": "gdt20", "id": 3, "tags": {"gas_compartment": "CB", "phase": "L3"}},
    ],
}

GDT20_TOML = """
[modbus]
hostname = "127.0.0.1"
port = 502
timeout = "1s"

[influxdb2]
hostname = "http://localhost:9999/api/v2"
organization = "testorg"
bucket = "testbucket"
auth_token = "secret-token"

[templates.gdt20]
scan_interval = "2s"
tags.sensor = "WIKA GDT20"

  [[templates.gdt20.input_registers]]
  addr = 0
  name = "pressure"
  data_type = "f32"
  tags.unit = "bar"

  [[templates.gdt20.input_registers]]
  addr = 12
  name = "temperature"
  data_type = "f32"
  tags.unit = "°C"

  [[templates.gdt20.input_registers]]
  addr = 20
  name = "gas_density"
  data_type = "f32"
  tags.unit = "kg/m^3"

[[devices]]
template = "gdt20"
id = 1
tags = { gas_compartment = "CB", phase = "L1" }

[[devices]]
template = "gdt20"
id = 2
tags = { gas_compartment = "CB", phase = "L2" }

[[devices]]
template = "gdt20"
id = 3
tags = { gas_compartment = "CB", phase = "L3" }
"""


@pytest.fixture
def gdt20_document() -> dict:
    return copy.deepcopy(GDT20_DOCUMENT)
