from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import NamedTuple, Tuple

import numpy as np

GRIB_MAGIC = b"GRIB"
SUPPORTED_EDITION = 2
INDICATOR_LENGTH = 16
SECTION_HEADER_LENGTH = 5
BITMAP_FOLLOWS = 0
LATLON_GRID_TEMPLATE = 0
SIMPLE_PACKING_TEMPLATE = 0
MAX_BIT_WIDTH = 32
MICRO_DEGREES = 1e-6
# Number of packed values unpacked per numpy pass; bounds peak memory on CONUS grids.
UNPACK_CHUNK_VALUES = 1 << 20
LOGGER = logging.getLogger("mrms_radar.grib_decoder")


class GribDecodeError(RuntimeError):
    """Base class for GRIB2 decode failures. No partial grid is ever returned."""


class MalformedHeader(GribDecodeError):
    """Raised when the indicator or identification section is not usable."""


class UnsupportedEdition(MalformedHeader):
    """Raised when the indicator names a GRIB edition other than 2."""


class TruncatedInput(GribDecodeError):
    """Raised when the buffer is shorter than a section or field requires."""


class InvalidSectionLength(GribDecodeError):
    """Raised when a declared section length is zero or overruns the buffer."""


class UnexpectedSection(GribDecodeError):
    """Raised when sections do not appear in ascending order 1..7."""


class UnsupportedGridTemplate(GribDecodeError):
    """Raised for grid definition templates other than regular lat/lon."""


class UnsupportedPackingTemplate(GribDecodeError):
    """Raised for data representation templates other than simple packing."""


class GridShapeMismatch(GribDecodeError):
    """Raised when nx * ny disagrees with the declared number of data points."""


class TruncatedData(GribDecodeError):
    """Raised when the packed bitstream ends before the last valid cell."""


class RawSection(NamedTuple):
    number: int
    start: int
    payload_start: int
    end: int


@dataclass(frozen=True)
class Indicator:
    discipline: int
    edition: int
    message_length: int


@dataclass(frozen=True)
class GridGeometry:
    points_x: int
    points_y: int
    lat_first: float
    lon_first: float
    lat_last: float
    lon_last: float
    dx: float
    dy: float

    @property
    def size(self) -> int:
        return self.points_x * self.points_y


@dataclass(frozen=True)
class PackingParameters:
    reference_value: float
    binary_scale_factor: int
    decimal_scale_factor: int
    bit_width: int


@dataclass(frozen=True)
class DecodedGrid:
    values: np.ndarray
    valid: np.ndarray
    geometry: GridGeometry
    packing: PackingParameters
    reference_time: datetime
    discipline: int

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.geometry.points_y, self.geometry.points_x)

    @property
    def valid_count(self) -> int:
        return int(np.count_nonzero(self.valid))

    def as_2d(self) -> np.ndarray:
        return self.values.reshape(self.shape)


class ByteCursor:
    """Bounds-checked big-endian reads over one section of a message.

    Offsets are relative to the section start, so GRIB octet ``n`` of a
    section is read at offset ``n - 1``.
    """

    def __init__(self, buffer: bytes, start: int, end: int) -> None:
        self._buffer = memoryview(buffer)
        self._start = start
        self._end = end

    def _unpack(self, fmt: str, offset: int):
        size = struct.calcsize(fmt)
        pos = self._start + offset
        if offset < 0 or pos + size > self._end:
            raise TruncatedInput(
                f"read of {size} bytes at offset {offset} exceeds section of {self._end - self._start} bytes"
            )
        return struct.unpack_from(fmt, self._buffer, pos)[0]

    def u8(self, offset: int) -> int:
        return self._unpack(">B", offset)

    def u16(self, offset: int) -> int:
        return self._unpack(">H", offset)

    def i16(self, offset: int) -> int:
        return self._unpack(">h", offset)

    def u32(self, offset: int) -> int:
        return self._unpack(">I", offset)

    def i32(self, offset: int) -> int:
        return self._unpack(">i", offset)

    def u64(self, offset: int) -> int:
        return self._unpack(">Q", offset)

    def f32(self, offset: int) -> float:
        return self._unpack(">f", offset)

    def tail(self, offset: int) -> bytes:
        pos = self._start + offset
        if pos > self._end:
            raise TruncatedInput(f"section ends before offset {offset}")
        return bytes(self._buffer[pos : self._end])


def read_indicator(buffer: bytes) -> Indicator:
    if len(buffer) < INDICATOR_LENGTH:
        raise TruncatedInput(f"indicator section needs {INDICATOR_LENGTH} bytes, got {len(buffer)}")
    if bytes(buffer[0:4]) != GRIB_MAGIC:
        raise MalformedHeader(f"bad magic {bytes(buffer[0:4])!r}, expected {GRIB_MAGIC!r}")
    cursor = ByteCursor(buffer, 0, INDICATOR_LENGTH)
    edition = cursor.u8(7)
    if edition != SUPPORTED_EDITION:
        raise UnsupportedEdition(f"GRIB edition {edition} not supported")
    return Indicator(discipline=cursor.u8(6), edition=edition, message_length=cursor.u64(8))


def read_section(buffer: bytes, offset: int) -> RawSection:
    remaining = len(buffer) - offset
    if remaining < SECTION_HEADER_LENGTH:
        raise TruncatedInput(f"section header at offset {offset} needs 5 bytes, {max(remaining, 0)} remain")
    length, number = struct.unpack_from(">IB", buffer, offset)
    if length < SECTION_HEADER_LENGTH or length > remaining:
        raise InvalidSectionLength(
            f"section {number} at offset {offset} declares length {length}, {remaining} bytes remain"
        )
    return RawSection(number=number, start=offset, payload_start=offset + SECTION_HEADER_LENGTH, end=offset + length)


def _expect_section(buffer: bytes, offset: int, number: int) -> RawSection:
    section = read_section(buffer, offset)
    if section.number != number:
        raise UnexpectedSection(f"expected section {number} at offset {offset}, found section {section.number}")
    return section


def _cursor(buffer: bytes, section: RawSection) -> ByteCursor:
    return ByteCursor(buffer, section.start, section.end)


def decode_reference_time(buffer: bytes, section: RawSection) -> datetime:
    cursor = _cursor(buffer, section)
    try:
        return datetime(
            cursor.u16(12),
            cursor.u8(14),
            cursor.u8(15),
            cursor.u8(16),
            cursor.u8(17),
            cursor.u8(18),
            tzinfo=timezone.utc,
        )
    except ValueError as exc:
        raise MalformedHeader(f"invalid reference time in identification section: {exc}") from exc


def decode_grid_geometry(buffer: bytes, section: RawSection) -> GridGeometry:
    cursor = _cursor(buffer, section)
    template = cursor.u16(12)
    if template != LATLON_GRID_TEMPLATE:
        raise UnsupportedGridTemplate(f"grid definition template {template} not supported")
    return GridGeometry(
        points_x=cursor.u32(30),
        points_y=cursor.u32(34),
        lat_first=cursor.i32(46) * MICRO_DEGREES,
        lon_first=cursor.i32(50) * MICRO_DEGREES,
        lat_last=cursor.i32(55) * MICRO_DEGREES,
        lon_last=cursor.i32(59) * MICRO_DEGREES,
        dx=cursor.u32(63) * MICRO_DEGREES,
        dy=cursor.u32(67) * MICRO_DEGREES,
    )


def decode_data_representation(buffer: bytes, section: RawSection) -> Tuple[int, PackingParameters]:
    cursor = _cursor(buffer, section)
    number_of_data_points = cursor.u32(5)
    template = cursor.u16(9)
    if template != SIMPLE_PACKING_TEMPLATE:
        raise UnsupportedPackingTemplate(f"data representation template {template} not supported")
    packing = PackingParameters(
        reference_value=cursor.f32(11),
        binary_scale_factor=cursor.i16(15),
        decimal_scale_factor=cursor.i16(17),
        bit_width=cursor.u8(19),
    )
    if packing.bit_width > MAX_BIT_WIDTH:
        raise UnsupportedPackingTemplate(f"bit width {packing.bit_width} exceeds {MAX_BIT_WIDTH}")
    return number_of_data_points, packing


def decode_bitmap(buffer: bytes, section: RawSection) -> bytes | None:
    cursor = _cursor(buffer, section)
    indicator = cursor.u8(5)
    if indicator != BITMAP_FOLLOWS:
        return None
    return cursor.tail(6)


def _require_packed_bits(data: bytes, count: int, bit_width: int) -> None:
    needed_bits = count * bit_width
    if needed_bits > len(data) * 8:
        raise TruncatedData(
            f"{count} values of {bit_width} bits need {(needed_bits + 7) // 8} bytes, payload has {len(data)}"
        )


def unpack_bits(data: bytes, count: int, bit_width: int) -> np.ndarray:
    """Read ``count`` consecutive big-endian unsigned integers of ``bit_width`` bits."""
    _require_packed_bits(data, count, bit_width)
    out = np.empty(count, dtype=np.uint64)
    if count == 0 or bit_width == 0:
        out.fill(0)
        return out

    # Pad so a 5-byte window starting at the last value's first byte stays in range.
    padded = np.concatenate([np.frombuffer(data, dtype=np.uint8), np.zeros(5, dtype=np.uint8)]).astype(np.uint64)
    mask = np.uint64((1 << bit_width) - 1)
    for chunk_start in range(0, count, UNPACK_CHUNK_VALUES):
        chunk_end = min(count, chunk_start + UNPACK_CHUNK_VALUES)
        bit_offsets = np.arange(chunk_start, chunk_end, dtype=np.uint64) * np.uint64(bit_width)
        byte_index = (bit_offsets >> np.uint64(3)).astype(np.int64)
        bit_shift = bit_offsets & np.uint64(7)
        window = np.zeros(chunk_end - chunk_start, dtype=np.uint64)
        for k in range(5):
            window = (window << np.uint64(8)) | padded[byte_index + k]
        out[chunk_start:chunk_end] = (window >> (np.uint64(40 - bit_width) - bit_shift)) & mask
    return out


def decode_values(
    data: bytes,
    bitmap: bytes | None,
    number_of_data_points: int,
    packing: PackingParameters,
) -> Tuple[np.ndarray, np.ndarray]:
    """Unpack section 7 into physical values.

    Only cells flagged valid by the bitmap consume packed bits; missing cells
    are NaN. ``Y = (R + X * 2**E) * 10**(-D)``.
    """
    n = int(number_of_data_points)
    # Size checks run before any array sized by the header is allocated.
    if bitmap is None:
        _require_packed_bits(data, n, packing.bit_width)
        valid = np.ones(n, dtype=bool)
    else:
        needed = (n + 7) // 8
        if len(bitmap) < needed:
            raise TruncatedInput(f"bitmap covers {len(bitmap) * 8} cells, grid has {n}")
        valid = np.unpackbits(np.frombuffer(bitmap, dtype=np.uint8), count=n).astype(bool)
        _require_packed_bits(data, int(np.count_nonzero(valid)), packing.bit_width)

    values = np.full(n, np.nan, dtype=np.float32)
    valid_count = int(np.count_nonzero(valid))
    if packing.bit_width == 0:
        values[valid] = np.float32(packing.reference_value)
        return values, valid

    packed = unpack_bits(data, valid_count, packing.bit_width)
    binary_scale = 2.0 ** packing.binary_scale_factor
    decimal_scale = 10.0 ** (-packing.decimal_scale_factor)
    physical = (float(packing.reference_value) + packed.astype(np.float64) * binary_scale) * decimal_scale
    values[valid] = physical.astype(np.float32)
    return values, valid


def decode(buffer: bytes, product_id: str = "") -> DecodedGrid:
    """Decode one GRIB2 message (MRMS lat/lon grid, simple packing)."""
    indicator = read_indicator(buffer)
    offset = INDICATOR_LENGTH

    identification = _expect_section(buffer, offset, 1)
    reference_time = decode_reference_time(buffer, identification)
    offset = identification.end

    section = read_section(buffer, offset)
    if section.number == 2:
        offset = section.end

    grid_section = _expect_section(buffer, offset, 3)
    geometry = decode_grid_geometry(buffer, grid_section)
    product_section = _expect_section(buffer, grid_section.end, 4)

    representation = _expect_section(buffer, product_section.end, 5)
    number_of_data_points, packing = decode_data_representation(buffer, representation)
    if geometry.size != number_of_data_points:
        raise GridShapeMismatch(
            f"grid {geometry.points_x}x{geometry.points_y} has {geometry.size} points, "
            f"data representation declares {number_of_data_points}"
        )

    bitmap_section = _expect_section(buffer, representation.end, 6)
    bitmap = decode_bitmap(buffer, bitmap_section)
    data_section = _expect_section(buffer, bitmap_section.end, 7)
    data = bytes(buffer[data_section.payload_start : data_section.end])

    values, valid = decode_values(data, bitmap, number_of_data_points, packing)
    values.flags.writeable = False
    valid.flags.writeable = False
    LOGGER.debug(
        "Decoded product=%s grid=%dx%d valid=%d bits=%d ref=%s E=%d D=%d time=%s",
        product_id or "-",
        geometry.points_x,
        geometry.points_y,
        int(np.count_nonzero(valid)),
        packing.bit_width,
        packing.reference_value,
        packing.binary_scale_factor,
        packing.decimal_scale_factor,
        reference_time.isoformat(),
    )
    return DecodedGrid(
        values=values,
        valid=valid,
        geometry=geometry,
        packing=packing,
        reference_time=reference_time,
        discipline=indicator.discipline,
    )
