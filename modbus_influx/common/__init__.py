"""
Common Utilities

Shared modules used across all services:
- config.py - Configuration dataclasses
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- sample.py - Decoded value handed to the sink
- scheduler.py - Interval loops with skip-if-busy admission
"""

from .config import (
    AppConfig,
    Endpoint,
    InfluxSettings,
    ModbusSettings,
    PollTarget,
    PollTargetSet,
    ReadBlock,
    RegisterDataType,
    RegisterField,
    SinkApi,
    SinkSettings,
    Template,
    WordOrder,
    parse_duration,
)
from .exceptions import (
    PollerError,
    ConfigError,
    TransportError,
    DecodeError,
    SinkError,
)
from .logging_setup import (
    setup_logging,
    configure_logging,
    get_service_logger,
    log_device_read,
    log_flush,
)
from .sample import Sample
from .scheduler import ScheduledLoop, SchedulerGroup

__all__ = [
    # Config
    "AppConfig",
    "Endpoint",
    "InfluxSettings",
    "ModbusSettings",
    "PollTarget",
    "PollTargetSet",
    "ReadBlock",
    "RegisterDataType",
    "RegisterField",
    "SinkApi",
    "SinkSettings",
    "Template",
    "WordOrder",
    "parse_duration",
    # Exceptions
    "PollerError",
    "ConfigError",
    "TransportError",
    "DecodeError",
    "SinkError",
    # Logging
    "setup_logging",
    "configure_logging",
    "get_service_logger",
    "log_device_read",
    "log_flush",
    # Runtime
    "Sample",
    "ScheduledLoop",
    "SchedulerGroup",
]
