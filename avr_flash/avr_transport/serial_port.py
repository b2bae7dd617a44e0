# avr_transport/serial_port.py
from __future__ import annotations

import logging
from typing import Protocol

import serial
from serial.tools import list_ports

from .. import config
from ..errors import TransportError, TransportTimeout
from ..firmware.devices import DeviceProfile, identifier_matches, match_profile

log = logging.getLogger(__name__)


class Transport(Protocol):
    """Что сессии загрузчика нужно от последовательного канала."""

    identifier: str

    @property
    def is_open(self) -> bool: ...
    def open(self) -> None: ...
    def close(self) -> None: ...
    def set_baud_rate(self, baud: int) -> None: ...
    def set_framing(self, bytesize: int, parity: str, stopbits: float) -> None: ...
    def set_dtr(self, state: bool) -> None: ...
    def set_rts(self, state: bool) -> None: ...
    def read(self, size: int) -> bytes: ...
    def write(self, data: bytes) -> None: ...


class SerialTransport:
    """
    Транспорт поверх pyserial. 8N1 без аппаратного управления потоком,
    чтение ровно N байт или TransportTimeout.
    """

    def __init__(self, port: str, baudrate: int = config.DEFAULT_BAUD_RATE,
                 timeout: float = config.READ_TIMEOUT,
                 write_timeout: float = config.WRITE_TIMEOUT,
                 dtr: bool | None = True):
        self.identifier = port
        # serial_for_url понимает и обычные имена портов, и loop:// для отладки
        self.ser = serial.serial_for_url(port, do_not_open=True)
        self.ser.baudrate = baudrate
        self.ser.bytesize = serial.EIGHTBITS
        self.ser.parity = serial.PARITY_NONE
        self.ser.stopbits = serial.STOPBITS_ONE
        self.ser.xonxoff = False
        self.ser.rtscts = False
        self.ser.dsrdtr = False
        self.ser.timeout = timeout
        self.ser.write_timeout = write_timeout
        # в загрузчике DTR трогать нельзя — None оставляет линию как есть
        if dtr is not None:
            self.ser.dtr = dtr

    @classmethod
    def connect(cls, port: str, baudrate: int = config.DEFAULT_BAUD_RATE, **kwargs) -> "SerialTransport":
        t = cls(port, baudrate, **kwargs)
        t.open()
        return t

    @property
    def is_open(self) -> bool:
        return self.ser.is_open

    def open(self) -> None:
        try:
            self.ser.open()
        except serial.SerialException as e:
            raise TransportError(f"cannot open {self.identifier}: {e}") from e
        log.debug("opened %s at %d baud", self.identifier, self.ser.baudrate)

    def close(self) -> None:
        if self.ser.is_open:
            self.ser.close()
            log.debug("closed %s", self.identifier)

    def set_baud_rate(self, baud: int) -> None:
        try:
            self.ser.baudrate = baud
        except (ValueError, serial.SerialException) as e:
            raise TransportError(f"cannot set baud rate {baud}: {e}") from e

    def set_framing(self, bytesize: int = serial.EIGHTBITS, parity: str = serial.PARITY_NONE,
                    stopbits: float = serial.STOPBITS_ONE) -> None:
        try:
            self.ser.bytesize = bytesize
            self.ser.parity = parity
            self.ser.stopbits = stopbits
        except (ValueError, serial.SerialException) as e:
            raise TransportError(f"cannot set framing: {e}") from e

    def set_dtr(self, state: bool) -> None:
        try:
            self.ser.dtr = state
        except (ValueError, serial.SerialException) as e:
            raise TransportError(f"cannot set DTR on {self.identifier}: {e}") from e

    def set_rts(self, state: bool) -> None:
        try:
            self.ser.rts = state
        except (ValueError, serial.SerialException) as e:
            raise TransportError(f"cannot set RTS on {self.identifier}: {e}") from e

    def read(self, size: int) -> bytes:
        try:
            data = self.ser.read(size)
        except serial.SerialException as e:
            raise TransportError(f"read from {self.identifier} failed: {e}") from e
        if len(data) < size:
            raise TransportTimeout(
                f"expected {size} byte(s) from {self.identifier}, got {len(data)} before timeout"
            )
        return data

    def write(self, data: bytes) -> None:
        try:
            written = self.ser.write(data)
            self.ser.flush()
        except serial.SerialTimeoutException as e:
            raise TransportTimeout(f"write to {self.identifier} timed out") from e
        except serial.SerialException as e:
            raise TransportError(f"write to {self.identifier} failed: {e}") from e
        if written is not None and written != len(data):
            raise TransportTimeout(f"short write to {self.identifier}: {written}/{len(data)}")

    def __enter__(self):
        if not self.is_open:
            self.open()
        return self

    def __exit__(self, *exc):
        self.close()

    def __repr__(self) -> str:
        return f"SerialTransport({self.identifier!r})"


# ---- Поиск устройств ----
def find_devices(vid: int, pid: int | None = None) -> list[str]:
    """Порты, чей USB VID/PID совпадает с заданным."""
    found = []
    for p in list_ports.comports():
        if p.vid is not None:
            if p.vid == vid and (pid is None or p.pid == pid):
                found.append(p.device)
        elif identifier_matches(p.hwid, vid, pid):
            found.append(p.device)
    return found


def known_ports() -> list[tuple[str, str, DeviceProfile | None]]:
    """Все порты: (device, description, профиль или None)."""
    return [(p.device, p.description, match_profile(p.hwid)) for p in list_ports.comports()]


def open_bootloader_port(port: str) -> SerialTransport:
    return SerialTransport.connect(port, config.BOOTLOADER_BAUD_RATE, dtr=None)


def open_application_port(port: str) -> SerialTransport:
    return SerialTransport.connect(port, config.DEFAULT_BAUD_RATE)
