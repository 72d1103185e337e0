"""Sample: one decoded value with its tags and capture time, handed to the sink."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Sample:
    """One decoded field value of one poll attempt"""
    measurement: str
    value: int | float
    timestamp_ns: int
    tags: dict[str, str] = field(default_factory=dict)
