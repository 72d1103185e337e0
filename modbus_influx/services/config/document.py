"""
Configuration Document Schema

Pydantic models for the shape of the configuration document. Unknown keys
are rejected; cross-references (template names, identities, overlaps) are
checked later by the registry.
"""

from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator

from modbus_influx.common.config import RegisterDataType, WordOrder, parse_duration


def _parse_duration(value):
    if not isinstance(value, (str, int, float)):
        raise ValueError(f"invalid duration {value!r}")
    return parse_duration(value)


def _parse_data_type(value):
    if isinstance(value, str):
        try:
            return RegisterDataType.parse(value)
        except ValueError:
            raise ValueError(f"unknown data type {value!r}") from None
    return value


# Durations: "1s", "500ms", "1m30s" or bare seconds
Duration = Annotated[float, BeforeValidator(_parse_duration), Field(gt=0)]
Backoff = Annotated[float, BeforeValidator(_parse_duration), Field(ge=0)]
DataType = Annotated[RegisterDataType, BeforeValidator(_parse_data_type)]
Port = Annotated[int, Field(ge=1, le=65535)]
Tags = dict[str, str]


class Section(BaseModel):
    model_config = ConfigDict(extra="forbid", coerce_numbers_to_str=True)


class ModbusSection(Section):
    """Default Modbus TCP endpoint"""
    hostname: str = "127.0.0.1"
    port: Port = 502
    timeout: Duration = 1.0


class Influx2Section(Section):
    """InfluxDB 2.x write API"""
    hostname: str = "http://localhost:8086/api/v2"
    organization: str
    bucket: str
    auth_token: str = ""


class Influx1Section(Section):
    """InfluxDB 1.x write API"""
    hostname: str = "http://localhost:8086"
    database: str
    username: str = ""
    password: str = ""


class SinkSection(Section):
    batch_size: int = Field(default=500, ge=1)
    flush_interval: Duration = 1.0
    max_buffer: int = Field(default=10_000, ge=1)
    retry_backoff: list[Backoff] = Field(default_factory=lambda: [1.0, 2.0, 4.0])
    timeout: Duration = 10.0

    @model_validator(mode="after")
    def _buffer_holds_a_batch(self) -> "SinkSection":
        if self.max_buffer < self.batch_size:
            raise ValueError(
                f"max_buffer ({self.max_buffer}) must be at least batch_size ({self.batch_size})"
            )
        return self


class PollerSection(Section):
    max_concurrency: int = Field(default=16, ge=1)


class HealthSection(Section):
    host: str = "127.0.0.1"
    port: Port = 8083


class RegisterFieldModel(Section):
    """One [[templates.<name>.input_registers]] entry"""
    addr: int = Field(ge=0, le=65535)
    name: str = Field(min_length=1)
    data_type: DataType
    tags: Tags = Field(default_factory=dict)


class TemplateModel(Section):
    scan_interval: Duration
    word_order: WordOrder = WordOrder.BIG
    tags: Tags = Field(default_factory=dict)
    input_registers: list[RegisterFieldModel] = Field(default_factory=list)


class DeviceModel(Section):
    """One [[devices]] entry"""
    template: str
    id: int | str
    unit_id: int | None = Field(default=None, ge=0, le=255)
    hostname: str | None = None
    port: Port | None = None
    tags: Tags = Field(default_factory=dict)


class ConfigDocument(Section):
    """Root of the configuration document"""
    modbus: ModbusSection = Field(default_factory=ModbusSection)
    influxdb2: Influx2Section | None = None
    influxdb: Influx1Section | None = None
    sink: SinkSection = Field(default_factory=SinkSection)
    poller: PollerSection = Field(default_factory=PollerSection)
    health: HealthSection | None = None
    templates: dict[str, TemplateModel] = Field(default_factory=dict)
    devices: list[DeviceModel] = Field(default_factory=list)
