"""
Register Decoder

Pure conversion between raw 16-bit register words and typed values.

Convention: multi-register values are assembled most-significant register
first (WordOrder.BIG) unless a template sets word_order = "little", in which
case the register sequence is reversed before assembly. Bytes inside each
register are always big-endian, as mandated by Modbus.
"""

import struct
from typing import Sequence

from modbus_influx.common.config import RegisterDataType, WordOrder
from modbus_influx.common.exceptions import DecodeError

# struct format for the big-endian byte image of each type
_FORMATS = {
    RegisterDataType.UINT16: ">H",
    RegisterDataType.INT16: ">h",
    RegisterDataType.UINT32: ">I",
    RegisterDataType.INT32: ">i",
    RegisterDataType.FLOAT32: ">f",
    RegisterDataType.UINT64: ">Q",
    RegisterDataType.INT64: ">q",
    RegisterDataType.FLOAT64: ">d",
}


def decode(
    words: Sequence[int],
    data_type: RegisterDataType,
    word_order: WordOrder = WordOrder.BIG,
) -> int | float:
    """
    Decode raw register words into a typed scalar.

    Args:
        words: Exactly data_type.word_count register values (0..65535)
        data_type: Declared type of the field
        word_order: Register order for multi-register types

    Returns:
        int for integer types, float for f32/f64 (NaN and inf included)

    Raises:
        DecodeError: if the word count or a word value is out of range
    """
    expected = data_type.word_count
    if len(words) != expected:
        raise DecodeError(
            f"{data_type.value} needs {expected} register(s), got {len(words)}"
        )

    for word in words:
        if not 0 <= word <= 0xFFFF:
            raise DecodeError(f"register value out of range: {word}")

    ordered = list(words)
    if word_order == WordOrder.LITTLE:
        ordered.reverse()

    raw = struct.pack(f">{expected}H", *ordered)
    return struct.unpack(_FORMATS[data_type], raw)[0]


def encode(
    value: int | float,
    data_type: RegisterDataType,
    word_order: WordOrder = WordOrder.BIG,
) -> list[int]:
    """Encode a value into register words (inverse of decode)."""
    try:
        raw = struct.pack(_FORMATS[data_type], value)
    except struct.error as e:
        raise DecodeError(f"cannot encode {value!r} as {data_type.value}: {e}") from e

    words = list(struct.unpack(f">{data_type.word_count}H", raw))
    if word_order == WordOrder.LITTLE:
        words.reverse()
    return words
