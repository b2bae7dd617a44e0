# firmware/hexfile.py
"""
Разбор Intel-HEX в плоский образ флеш-памяти.

Формат строки:  :BBAAAARRDD...DDCC
    BB   — число байт данных
    AAAA — 16-битный адрес (относительно текущей базы)
    RR   — тип записи (00..05)
    DD   — данные
    CC   — контрольная сумма (дополнение до двух от суммы всех байт)

Разбор однопроходный: записи применяются по порядку, поздняя запись по тому же
адресу побеждает. Любая ошибка обрывает весь разбор — полуготовый образ наружу
не отдаётся.
"""
from __future__ import annotations

import logging
import string
import zlib
from dataclasses import dataclass, replace
from enum import IntEnum
from pathlib import Path
from typing import Iterable

from ..errors import AddressOutOfRangeError, ChecksumMismatchError, MalformedRecordError

log = logging.getLogger(__name__)

RECORD_START = ":"
_HEX_DIGITS = frozenset(string.hexdigits)
# byte_count + address(2) + record_type + checksum
_RECORD_OVERHEAD = 5


class RecordType(IntEnum):
    DATA = 0x00
    END_OF_FILE = 0x01
    EXTENDED_SEGMENT_ADDRESS = 0x02
    START_SEGMENT_ADDRESS = 0x03
    EXTENDED_LINEAR_ADDRESS = 0x04
    START_LINEAR_ADDRESS = 0x05


@dataclass(frozen=True)
class HexRecord:
    byte_count: int
    address: int
    record_type: RecordType
    payload: bytes
    checksum: int

    @property
    def word(self) -> int:
        """Полезная нагрузка записей 02/04 как 16-битное число (big-endian)."""
        return int.from_bytes(self.payload[:2], "big")


@dataclass(frozen=True)
class DecoderState:
    """Локальное состояние декодера между записями."""
    base_address: int = 0
    finished: bool = False


class MemoryImage:
    """
    Образ флеш-памяти фиксированного размера.
    Пока идёт разбор — пишется; после freeze() — только чтение.
    """

    def __init__(self, capacity: int):
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self.capacity = capacity
        self._data = bytearray(capacity)
        self.occupied_low: int | None = None
        self.occupied_high: int | None = None
        self._frozen = False

    def write(self, address: int, payload: bytes) -> None:
        if self._frozen:
            raise RuntimeError("MemoryImage is read-only after decoding")
        if not payload:
            return
        end = address + len(payload)
        if address < 0 or end > self.capacity:
            raise AddressOutOfRangeError(
                f"write 0x{address:X}..0x{end - 1:X} outside flash of {self.capacity} bytes"
            )
        self._data[address:end] = payload
        if self.occupied_low is None or address < self.occupied_low:
            self.occupied_low = address
        if self.occupied_high is None or end - 1 > self.occupied_high:
            self.occupied_high = end - 1

    def freeze(self) -> "MemoryImage":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def is_empty(self) -> bool:
        return self.occupied_low is None

    @property
    def data(self) -> bytes:
        return bytes(self._data)

    def read(self, address: int, size: int) -> bytes:
        end = address + size
        if address < 0 or size < 0 or end > self.capacity:
            raise IndexError(f"read 0x{address:X}+{size} outside image")
        return bytes(self._data[address:end])

    def span(self) -> bytes:
        """Занятая часть образа [occupied_low, occupied_high]."""
        if self.is_empty:
            return b""
        return bytes(self._data[self.occupied_low:self.occupied_high + 1])

    def used_size(self) -> int:
        return 0 if self.is_empty else self.occupied_high - self.occupied_low + 1

    def crc32(self) -> int:
        return zlib.crc32(self.span()) & 0xFFFFFFFF

    def __getitem__(self, address: int) -> int:
        return self._data[address]

    def __len__(self) -> int:
        return self.capacity

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MemoryImage):
            return NotImplemented
        return (
            self.capacity == other.capacity
            and self._data == other._data
            and self.occupied_low == other.occupied_low
            and self.occupied_high == other.occupied_high
        )

    def __repr__(self) -> str:
        if self.is_empty:
            return f"MemoryImage(capacity={self.capacity}, empty)"
        return (
            f"MemoryImage(capacity={self.capacity}, "
            f"occupied=0x{self.occupied_low:04X}..0x{self.occupied_high:04X})"
        )


def parse_record(line: str, line_number: int | None = None) -> HexRecord:
    """Разобрать одну строку HEX и проверить контрольную сумму."""
    line = line.strip()
    if not line.startswith(RECORD_START):
        raise MalformedRecordError(f"record does not start with {RECORD_START!r}: {line!r}", line_number)

    body = line[1:]
    if len(body) % 2 or not _HEX_DIGITS.issuperset(body):
        raise MalformedRecordError(f"invalid hex digits: {line!r}", line_number)

    raw = bytes.fromhex(body)
    if len(raw) < _RECORD_OVERHEAD or len(raw) != raw[0] + _RECORD_OVERHEAD:
        raise MalformedRecordError(f"record length does not match byte count: {line!r}", line_number)

    # сумма всех байт, включая саму контрольную, должна дать 0 по модулю 256
    if sum(raw) & 0xFF:
        raise ChecksumMismatchError(
            f"checksum 0x{raw[-1]:02X} does not match record: {line!r}", line_number
        )

    try:
        record_type = RecordType(raw[3])
    except ValueError:
        raise MalformedRecordError(f"unsupported record type 0x{raw[3]:02X}", line_number) from None

    return HexRecord(
        byte_count=raw[0],
        address=(raw[1] << 8) | raw[2],
        record_type=record_type,
        payload=raw[4:-1],
        checksum=raw[-1],
    )


def decode_record(record: HexRecord, state: DecoderState, image: MemoryImage,
                  line_number: int | None = None) -> DecoderState:
    """Применить одну запись к образу, вернуть новое состояние декодера."""
    rt = record.record_type
    if rt == RecordType.DATA:
        address = state.base_address + record.address
        if address + record.byte_count > image.capacity:
            raise AddressOutOfRangeError(
                f"data at 0x{address:X} (+{record.byte_count}) does not fit "
                f"into {image.capacity} bytes of flash",
                line_number,
            )
        image.write(address, record.payload)
        return state

    if rt in (RecordType.EXTENDED_SEGMENT_ADDRESS, RecordType.EXTENDED_LINEAR_ADDRESS):
        if record.byte_count != 2:
            raise MalformedRecordError(f"address record must carry 2 bytes, got {record.byte_count}", line_number)
        shift = 4 if rt == RecordType.EXTENDED_SEGMENT_ADDRESS else 16
        return replace(state, base_address=record.word << shift)

    if rt == RecordType.END_OF_FILE:
        return replace(state, finished=True)

    # START_SEGMENT_ADDRESS / START_LINEAR_ADDRESS — для AVR смысла не имеют
    return state


def decode(lines: Iterable[str] | str, flash_size: int) -> MemoryImage:
    """
    Разобрать поток строк Intel-HEX в MemoryImage размером flash_size.
    Отсутствие записи EOF в конце допустимо.
    """
    if isinstance(lines, str):
        lines = lines.splitlines()

    image = MemoryImage(flash_size)
    state = DecoderState()
    blank_line = None
    records = 0

    for number, line in enumerate(lines, start=1):
        if not line.strip():
            # пустые строки терпим только в самом хвосте файла
            if blank_line is None:
                blank_line = number
            continue
        if blank_line is not None:
            raise MalformedRecordError("empty line inside hex data", blank_line)

        record = parse_record(line, number)
        state = decode_record(record, state, image, number)
        records += 1
        if state.finished:
            break

    log.debug("decoded %d records: %r", records, image)
    return image.freeze()


def load_hex_file(path: Path, flash_size: int) -> MemoryImage:
    path = Path(path)
    with open(path, "r", encoding="ascii", errors="replace") as f:
        return decode(f, flash_size)
