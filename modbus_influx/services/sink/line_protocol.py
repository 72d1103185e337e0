"""
InfluxDB Line Protocol

    <measurement>[,<tag>=<value>...] value=<field value> <timestamp ns>

Tags are written sorted by key, empty tag values are omitted (InfluxDB
rejects them), integers carry the `i` suffix and floats are written with
repr() so they round-trip exactly.
"""

import math

from modbus_influx.common.sample import Sample

_MEASUREMENT_ESCAPES = str.maketrans({",": r"\,", " ": r"\ "})
_KEY_ESCAPES = str.maketrans({",": r"\,", "=": r"\=", " ": r"\ "})

FIELD_KEY = "value"


def escape_measurement(name: str) -> str:
    return name.translate(_MEASUREMENT_ESCAPES)


def escape_key(text: str) -> str:
    """Escape a tag key, tag value or field key."""
    return text.translate(_KEY_ESCAPES)


def format_value(value: int | float) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return f"{value}i"
    return repr(float(value))


def is_writable(sample: Sample) -> bool:
    """NaN and infinities cannot be represented in line protocol"""
    return not (isinstance(sample.value, float) and not math.isfinite(sample.value))


def format_line(sample: Sample) -> str:
    """Render one sample as a line protocol record"""
    parts = [escape_measurement(sample.measurement)]
    for key in sorted(sample.tags):
        value = sample.tags[key]
        if value == "":
            continue
        parts.append(f"{escape_key(key)}={escape_key(value)}")

    series = ",".join(parts)
    return f"{series} {FIELD_KEY}={format_value(sample.value)} {sample.timestamp_ns}"


def format_batch(samples: list[Sample]) -> str:
    return "\n".join(format_line(sample) for sample in samples)
