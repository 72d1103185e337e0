"""
Configuration Dataclasses

Type-safe, immutable runtime configuration. Built once at startup from the
configuration document by services.config.registry.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator


class RegisterDataType(str, Enum):
    """Modbus register data types"""
    UINT16 = "u16"
    INT16 = "i16"
    UINT32 = "u32"
    INT32 = "i32"
    FLOAT32 = "f32"
    UINT64 = "u64"
    INT64 = "i64"
    FLOAT64 = "f64"

    @classmethod
    def parse(cls, value: str) -> "RegisterDataType":
        """Accept canonical names (f32) and long aliases (float32)."""
        key = value.strip().lower()
        key = _DATATYPE_ALIASES.get(key, key)
        return cls(key)

    @property
    def word_count(self) -> int:
        """Number of 16-bit registers spanned by this type"""
        return _DATATYPE_WIDTHS[self]


_DATATYPE_ALIASES = {
    "uint16": "u16",
    "int16": "i16",
    "uint32": "u32",
    "int32": "i32",
    "float32": "f32",
    "uint64": "u64",
    "int64": "i64",
    "float64": "f64",
}

_DATATYPE_WIDTHS = {
    RegisterDataType.UINT16: 1,
    RegisterDataType.INT16: 1,
    RegisterDataType.UINT32: 2,
    RegisterDataType.INT32: 2,
    RegisterDataType.FLOAT32: 2,
    RegisterDataType.UINT64: 4,
    RegisterDataType.INT64: 4,
    RegisterDataType.FLOAT64: 4,
}


class WordOrder(str, Enum):
    """Order of 16-bit registers inside multi-register values"""
    BIG = "big"  # most-significant register first
    LITTLE = "little"  # least-significant register first


class SinkApi(str, Enum):
    """Supported InfluxDB write APIs"""
    V1 = "influxdb"
    V2 = "influxdb2"


# Highest register address reachable by a Modbus request
MAX_REGISTER_ADDRESS = 0xFFFF

# Maximum registers per read-input-registers request
MAX_REGISTERS_PER_READ = 125

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|s|m|h)")


def parse_duration(value: str | int | float) -> float:
    """
    Parse a duration into seconds.

    Accepts bare numbers (seconds) and unit strings such as "1s", "500ms",
    "1m30s" or "2h".
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip().lower()
    if not text:
        raise ValueError("Duration cannot be empty")

    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if text[pos:match.start()].strip():
            raise ValueError(f"Invalid duration: {value!r}")
        number, unit = float(match.group(1)), match.group(2)
        total += number * {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}[unit]
        pos = match.end()

    if pos == 0 or text[pos:].strip():
        raise ValueError(f"Invalid duration: {value!r}")
    return total


@dataclass(frozen=True)
class RegisterField:
    """One named, typed value at a fixed input-register address"""
    address: int
    name: str
    data_type: RegisterDataType
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def word_count(self) -> int:
        return self.data_type.word_count

    @property
    def end_address(self) -> int:
        """Last register address covered by this field (inclusive)"""
        return self.address + self.word_count - 1


@dataclass(frozen=True)
class ReadBlock:
    """A contiguous register range fetched with a single request"""
    address: int
    count: int
    fields: tuple[RegisterField, ...]


@dataclass(frozen=True)
class Template:
    """Register map plus sampling cadence shared by several devices"""
    name: str
    scan_interval: float
    fields: tuple[RegisterField, ...]
    read_blocks: tuple[ReadBlock, ...]
    tags: dict[str, str] = field(default_factory=dict)
    word_order: WordOrder = WordOrder.BIG


@dataclass(frozen=True)
class Endpoint:
    """Modbus TCP endpoint"""
    host: str
    port: int = 502

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class PollTarget:
    """One device resolved against its template, ready to be polled"""
    identity: int | str
    unit_id: int
    endpoint: Endpoint
    template: Template
    device_tags: dict[str, str] = field(default_factory=dict)

    @property
    def interval(self) -> float:
        return self.template.scan_interval

    @property
    def name(self) -> str:
        return f"{self.template.name}/{self.identity}"

    @property
    def tags(self) -> dict[str, str]:
        """Template tags overridden key-wise by device tags"""
        return {**self.template.tags, **self.device_tags}

    def sample_tags(self, register: RegisterField) -> dict[str, str]:
        """Tags for one field: template < field < device"""
        return {**self.template.tags, **register.tags, **self.device_tags}


@dataclass(frozen=True)
class ModbusSettings:
    """Default Modbus TCP endpoint and request timeout"""
    hostname: str = "127.0.0.1"
    port: int = 502
    timeout: float = 1.0


@dataclass(frozen=True)
class InfluxSettings:
    """InfluxDB write API connection"""
    api: SinkApi
    hostname: str
    organization: str = ""
    bucket: str = ""
    auth_token: str = ""
    database: str = ""
    username: str = ""
    password: str = ""

    @property
    def write_url(self) -> str:
        return f"{self.hostname.rstrip('/')}/write"

    def write_params(self) -> dict[str, str]:
        if self.api == SinkApi.V2:
            return {"org": self.organization, "bucket": self.bucket, "precision": "ns"}
        params = {"db": self.database, "precision": "ns"}
        if self.username:
            params["u"] = self.username
            params["p"] = self.password
        return params

    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "text/plain; charset=utf-8"}
        if self.api == SinkApi.V2 and self.auth_token:
            headers["Authorization"] = f"Token {self.auth_token}"
        return headers


@dataclass(frozen=True)
class SinkSettings:
    """Batching and retry policy of the sink writer"""
    batch_size: int = 500
    flush_interval: float = 1.0
    max_buffer: int = 10_000
    retry_backoff: tuple[float, ...] = (1.0, 2.0, 4.0)
    timeout: float = 10.0


@dataclass(frozen=True)
class PollerSettings:
    """Scheduler fan-out limits"""
    max_concurrency: int = 16


@dataclass(frozen=True)
class HealthSettings:
    """Status HTTP server"""
    host: str = "127.0.0.1"
    port: int = 8083


class PollTargetSet:
    """
    Immutable table of poll targets.

    Precomputed indexes by endpoint and by interval give O(1) grouping for
    the scheduler and the connection pool.
    """

    def __init__(self, targets: list[PollTarget]):
        self._targets: tuple[PollTarget, ...] = tuple(targets)
        by_endpoint: dict[Endpoint, list[PollTarget]] = {}
        by_interval: dict[float, list[PollTarget]] = {}
        for target in self._targets:
            by_endpoint.setdefault(target.endpoint, []).append(target)
            by_interval.setdefault(target.interval, []).append(target)
        self._by_endpoint = {k: tuple(v) for k, v in by_endpoint.items()}
        self._by_interval = {k: tuple(v) for k, v in by_interval.items()}

    def __iter__(self) -> Iterator[PollTarget]:
        return iter(self._targets)

    def __len__(self) -> int:
        return len(self._targets)

    @property
    def intervals(self) -> list[float]:
        return sorted(self._by_interval)

    @property
    def endpoints(self) -> list[Endpoint]:
        return list(self._by_endpoint)

    def for_interval(self, interval: float) -> tuple[PollTarget, ...]:
        return self._by_interval.get(interval, ())

    def for_endpoint(self, endpoint: Endpoint) -> tuple[PollTarget, ...]:
        return self._by_endpoint.get(endpoint, ())


@dataclass(frozen=True)
class AppConfig:
    """Fully validated application configuration"""
    modbus: ModbusSettings
    influxdb: InfluxSettings
    targets: PollTargetSet
    templates: dict[str, Template]
    sink: SinkSettings = field(default_factory=SinkSettings)
    poller: PollerSettings = field(default_factory=PollerSettings)
    health: HealthSettings | None = None
