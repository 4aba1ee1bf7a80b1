"""Decoding and encoding of register-mapped device points.

Raw buffers are the big-endian concatenation of the 16-bit register words
returned by the device.  ``reverse_endianness`` flips numeric values to a
little-endian reading of the whole buffer and, for ASCII strings, swaps the
two characters packed in each register.
"""

from __future__ import annotations

import math
import struct
from typing import Any, Dict, Iterable, List, Sequence, Tuple, Union

from burnin.errors import DecodeError
from burnin.models.device import DataType, RegisterMapping

Value = Union[int, float, bool, str]

REGISTER_COUNTS: Dict[DataType, int] = {
    DataType.INT16: 1,
    DataType.UINT16: 1,
    DataType.BOOL: 1,
    DataType.INT32: 2,
    DataType.UINT32: 2,
    DataType.FLOAT32: 2,
    DataType.ASCII8: 4,
    DataType.ASCII16: 8,
}

_STRUCT_CODES: Dict[DataType, str] = {
    DataType.INT16: "h",
    DataType.UINT16: "H",
    DataType.INT32: "i",
    DataType.UINT32: "I",
    DataType.FLOAT32: "f",
}

WRITABLE_TYPES = frozenset(
    {DataType.INT16, DataType.UINT16, DataType.INT32, DataType.UINT32, DataType.FLOAT32, DataType.BOOL}
)


def register_count(data_type: DataType) -> int:
    return REGISTER_COUNTS[DataType(data_type)]


def words_to_bytes(words: Iterable[Any]) -> bytes:
    """Pack register words (or coil bits) into a big-endian byte buffer."""

    buffer = bytearray()
    for word in words:
        if isinstance(word, bool):
            word = int(word)
        if not isinstance(word, int) or not 0 <= word <= 0xFFFF:
            raise DecodeError(f"register word out of range: {word!r}")
        buffer += word.to_bytes(2, "big")
    return bytes(buffer)


def bytes_to_words(raw: bytes) -> List[int]:
    if len(raw) % 2:
        raise ValueError("register buffers must have an even length")
    return [int.from_bytes(raw[i:i + 2], "big") for i in range(0, len(raw), 2)]


def _swap_pairs(raw: bytes) -> bytes:
    swapped = bytearray(raw)
    swapped[0::2], swapped[1::2] = raw[1::2], raw[0::2]
    return bytes(swapped)


def _scaled(raw_value: Union[int, float], mapping: RegisterMapping) -> Union[int, float]:
    if mapping.scale == 1 and mapping.offset == 0:
        return raw_value
    return mapping.scale * raw_value + mapping.offset


def decode(raw: bytes, mapping: RegisterMapping) -> Value:
    """Decode the raw buffer of one point into its engineering value."""

    data_type = DataType(mapping.data_type)
    width = register_count(data_type) * 2
    if not isinstance(raw, (bytes, bytearray)):
        raise DecodeError(f"{mapping.name}: expected bytes, got {type(raw).__name__}")
    if len(raw) < width:
        raise DecodeError(
            f"{mapping.name}: truncated buffer ({len(raw)} bytes, {data_type.value} needs {width})"
        )
    chunk = bytes(raw[:width])

    if data_type is DataType.BOOL:
        word = int.from_bytes(chunk, "little" if mapping.reverse_endianness else "big")
        if word not in (0, 1):
            raise DecodeError(f"{mapping.name}: 0x{word:04X} is not a boolean word (0 or 1)")
        return word == 1

    if data_type in (DataType.ASCII8, DataType.ASCII16):
        if mapping.reverse_endianness:
            chunk = _swap_pairs(chunk)
        try:
            text = chunk.decode("ascii")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"{mapping.name}: non-ASCII bytes in string register") from exc
        return text.rstrip("\x00 ")

    order = "<" if mapping.reverse_endianness else ">"
    (raw_value,) = struct.unpack(order + _STRUCT_CODES[data_type], chunk)
    if data_type is DataType.FLOAT32 and not math.isfinite(raw_value):
        raise DecodeError(f"{mapping.name}: non-finite float in register")
    return _scaled(raw_value, mapping)


def encode(value: Any, mapping: RegisterMapping) -> bytes:
    """Inverse of :func:`decode` for write-capable data types."""

    data_type = DataType(mapping.data_type)
    if data_type not in WRITABLE_TYPES:
        raise ValueError(f"{mapping.name}: data type {data_type.value} is read-only")

    if data_type is DataType.BOOL:
        raw = b"\x00\x01" if bool(value) else b"\x00\x00"
        return raw[::-1] if mapping.reverse_endianness else raw

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{mapping.name}: numeric value expected, got {value!r}")
    if mapping.scale == 0:
        raise ValueError(f"{mapping.name}: cannot invert a zero scale")

    raw_value: Union[int, float] = (value - mapping.offset) / mapping.scale
    if data_type is not DataType.FLOAT32:
        raw_value = int(round(raw_value))

    order = "<" if mapping.reverse_endianness else ">"
    try:
        return struct.pack(order + _STRUCT_CODES[data_type], raw_value)
    except struct.error as exc:
        raise ValueError(f"{mapping.name}: value {value!r} out of range for {data_type.value}") from exc


def encode_words(value: Any, mapping: RegisterMapping) -> List[int]:
    return bytes_to_words(encode(value, mapping))


def decode_block(
    words: Sequence[Any],
    start: int,
    mappings: Iterable[RegisterMapping],
    *,
    bits: bool = False,
) -> Tuple[Dict[str, Value], Dict[str, str]]:
    """Decode every mapping that lies inside a register block.

    ``start`` is the configured address of ``words[0]``.  Returns decoded
    values and per-point decode errors; mappings outside the block are
    ignored.  Bit tables (coils, discrete inputs) always decode to ``bool``.
    """

    values: Dict[str, Value] = {}
    errors: Dict[str, str] = {}
    for mapping in mappings:
        index = mapping.address - start
        width = 1 if bits else register_count(mapping.data_type)
        if index < 0 or index + width > len(words):
            continue
        if bits:
            values[mapping.name] = bool(words[index])
            continue
        try:
            values[mapping.name] = decode(words_to_bytes(words[index:index + width]), mapping)
        except DecodeError as exc:
            errors[mapping.name] = str(exc)
    return values, errors


__all__ = [
    "REGISTER_COUNTS",
    "WRITABLE_TYPES",
    "bytes_to_words",
    "decode",
    "decode_block",
    "encode",
    "encode_words",
    "register_count",
    "words_to_bytes",
]
