# avr_transport/avr109.py
"""
Загрузчик AVR109 (Caterina и совместимые): вход в загрузчик «касанием»
на 1200 бод, проверка сигнатуры, запись образа блоками, выход.

Порядок шагов жёсткий — ответ каждой команды является условием следующей.
Повторов нет: внутренний указатель адреса в чипе мог уже уехать, и слепой
повтор команды запишет данные не туда.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .. import config
from ..errors import (
    BlockWriteFailed, DeviceNotReentered, ExitNotConfirmed, InvalidBlockSize,
    ProgramError, ProgrammingCancelled, TransportError, UnknownDevice,
)
from ..firmware.devices import DeviceProfile, is_valid_signature
from ..firmware.hexfile import MemoryImage
from . import serial_port
from .serial_port import Transport

log = logging.getLogger(__name__)

# ---- Команды и ответы AVR109 ----
CMD_READ_SIGNATURE = b"s"
CMD_CHECK_BLOCK_SUPPORT = b"b"
CMD_SET_ADDRESS = b"A"
CMD_SET_ADDRESS_EXT = b"H"
CMD_WRITE_LOW_BYTE = b"c"
CMD_WRITE_HIGH_BYTE = b"C"
CMD_COMMIT_PAGE = b"m"
CMD_BLOCK_LENGTH = b"B"
CMD_WRITE_BLOCK = b"F"
CMD_EXIT_BOOTLOADER = b"E"

RESP_YES = b"Y"
RESP_OK = b"\r"

SIGNATURE_LENGTH = 3
FILLER = 0xFF


class SessionState(Enum):
    IDLE = "idle"
    HANDSHAKE_SENT = "handshake_sent"
    SIGNATURE_VERIFIED = "signature_verified"
    BLOCK_MODE_KNOWN = "block_mode_known"
    WRITING = "writing"
    COMPLETE = "complete"
    FAILED = "failed"


_ORDER = [
    SessionState.IDLE,
    SessionState.HANDSHAKE_SENT,
    SessionState.SIGNATURE_VERIFIED,
    SessionState.BLOCK_MODE_KNOWN,
    SessionState.WRITING,
    SessionState.COMPLETE,
]


@dataclass(frozen=True)
class Timing:
    settle_delay: float = config.SETTLE_DELAY
    reentry_window: float = config.REENTRY_WINDOW
    poll_interval: float = config.POLL_INTERVAL


@dataclass(frozen=True)
class BlockWrite:
    """
    Одна операция записи. single_byte — нечётный стартовый байт (пишется
    командами c/C), filler — в конец блока дописан байт 0xFF до целого слова.
    """
    address: int
    length: int
    single_byte: bool = False
    filler: bool = False

    @property
    def wire_length(self) -> int:
        return self.length + (1 if self.filler else 0)

    @property
    def end(self) -> int:
        return self.address + self.length - 1


def plan_blocks(start: int, end: int, block_size: int) -> list[BlockWrite]:
    """
    Разложить диапазон [start, end] (включительно) на операции записи.
    Каждый адрес покрывается ровно один раз, по возрастанию.
    """
    if block_size <= 0 or block_size % 2:
        raise InvalidBlockSize(f"device reported unusable block size {block_size}")
    if end < start:
        return []

    ops = []
    address = start

    # флеш адресуется словами: нечётный первый байт пишем отдельно
    if address & 1:
        ops.append(BlockWrite(address, 1, single_byte=True))
        address += 1

    # хвост первого блока до границы block_size
    if address <= end and address % block_size:
        count = block_size - address % block_size
        if address + count - 1 > end:
            count = (end - address + 1) & ~1
        if count:
            ops.append(BlockWrite(address, count))
            address += count

    while end - address + 1 >= block_size:
        ops.append(BlockWrite(address, block_size))
        address += block_size

    if end - address + 1 >= 1:
        count = end - address + 1
        ops.append(BlockWrite(address, count, filler=bool(count & 1)))

    return ops


@dataclass
class ProgramResult:
    state: SessionState
    signature: bytes = b""
    block_mode: bool = False
    block_size: int = 0
    blocks: int = 0
    bytes_written: int = 0
    exit_error: ExitNotConfirmed | None = None
    cancel_deferred: bool = False
    transport: Transport | None = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.state == SessionState.COMPLETE


class BootloaderSession:
    """
    Одна попытка прошивки: один транспорт, один образ.
    После COMPLETE или FAILED сессия повторно не используется.
    """

    def __init__(self, transport: Transport, image: MemoryImage, profile: DeviceProfile, *,
                 find_devices: Callable[[int, int | None], list[str]] = serial_port.find_devices,
                 open_transport: Callable[[str], Transport] = serial_port.open_bootloader_port,
                 open_application: Callable[[str], Transport] = serial_port.open_application_port,
                 timing: Timing = Timing(),
                 cancel: threading.Event | None = None,
                 progress: Callable[[int, int], None] | None = None):
        if image.capacity > profile.flash_size:
            raise ValueError(
                f"image of {image.capacity} bytes does not fit {profile.name} "
                f"flash of {profile.flash_size} bytes"
            )
        self.transport = transport
        self.image = image
        self.profile = profile
        self.find_devices = find_devices
        self.open_transport = open_transport
        self.open_application = open_application
        self.timing = timing
        self.cancel = cancel
        self.progress = progress

        self.state = SessionState.IDLE
        self.error: ProgramError | None = None
        self.bootloader: Transport | None = None
        self.application: Transport | None = None
        self.signature = b""
        self.block_mode = False
        self.block_size = 0
        self.cursor = image.occupied_low or 0
        self.blocks = 0
        self.bytes_written = 0

    # ---- состояние ----
    def _advance(self, new_state: SessionState):
        if _ORDER.index(new_state) <= _ORDER.index(self.state):
            raise RuntimeError(f"illegal transition {self.state.name} -> {new_state.name}")
        log.debug("session: %s -> %s", self.state.name, new_state.name)
        self.state = new_state

    def _fail(self, error: ProgramError):
        log.error("programming failed in %s: %s", self.state.name, error)
        self.state = SessionState.FAILED
        self.error = error

    def _check_cancel(self):
        if self.cancel is not None and self.cancel.is_set():
            raise ProgrammingCancelled(f"cancelled in state {self.state.name}")

    def _move_cursor(self, address: int):
        if address < self.cursor:
            raise RuntimeError(f"cursor moved backwards: 0x{self.cursor:X} -> 0x{address:X}")
        self.cursor = address

    # ---- низкий уровень ----
    def _send(self, data: bytes):
        log.debug(">> %s", data[:16].hex(" "))
        self.bootloader.write(data)

    def _receive(self, size: int) -> bytes:
        data = self.bootloader.read(size)
        log.debug("<< %s", data.hex(" "))
        return data

    def _expect_ok(self, address: int):
        resp = self._receive(1)
        if resp != RESP_OK:
            raise BlockWriteFailed(address, resp)

    def _set_word_address(self, word: int, at: int):
        if word < 0x10000:
            self._send(CMD_SET_ADDRESS + word.to_bytes(2, "big"))
        else:
            self._send(CMD_SET_ADDRESS_EXT + word.to_bytes(3, "big"))
        self._expect_ok(at)

    def _set_address(self, address: int):
        self._set_word_address(address >> 1, address)

    def _write_byte(self, command: bytes, value: int, at: int):
        self._send(command + bytes([value]))
        self._expect_ok(at)

    # ---- шаги протокола ----
    def enter_bootloader(self):
        """Касание на 1200 бод, пауза, поиск платы в режиме загрузчика."""
        t = self.transport
        log.info("touching %s at %d baud", getattr(t, "identifier", t), config.TOUCH_BAUD_RATE)
        t.set_baud_rate(config.TOUCH_BAUD_RATE)
        t.set_dtr(False)
        t.close()

        # перезагрузка чипа реально занимает это время
        time.sleep(self.timing.settle_delay)

        deadline = time.monotonic() + self.timing.reentry_window
        while True:
            found = self.find_devices(self.profile.vid, self.profile.bootloader_pid)
            if len(found) == 1:
                break
            if time.monotonic() >= deadline:
                raise DeviceNotReentered(
                    f"bootloader {self.profile.vid:04X}:{self.profile.bootloader_pid:04X} "
                    f"not found (candidates: {found or 'none'})"
                )
            time.sleep(self.timing.poll_interval)

        log.info("bootloader found at %s", found[0])
        self.bootloader = self.open_transport(found[0])
        self._advance(SessionState.HANDSHAKE_SENT)

    def verify_signature(self):
        self._send(CMD_READ_SIGNATURE)
        self.signature = self._receive(SIGNATURE_LENGTH)
        if not is_valid_signature(self.signature):
            raise UnknownDevice(self.signature)
        log.info("signature %s accepted", self.signature.hex(" ").upper())
        self._advance(SessionState.SIGNATURE_VERIFIED)

    def query_block_mode(self):
        self._send(CMD_CHECK_BLOCK_SUPPORT)
        self.block_mode = self._receive(1) == RESP_YES
        if self.block_mode:
            self.block_size = int.from_bytes(self._receive(2), "big")
            if self.block_size <= 0 or self.block_size % 2:
                raise InvalidBlockSize(f"device reported unusable block size {self.block_size}")
            log.info("block mode supported, block size %d", self.block_size)
        else:
            log.warning("bootloader has no block mode, nothing will be written")
        self._advance(SessionState.BLOCK_MODE_KNOWN)

    def write_image(self):
        self._advance(SessionState.WRITING)
        image = self.image
        if self.block_mode and not image.is_empty:
            start, end = image.occupied_low, image.occupied_high
            total = end - start + 1
            for op in plan_blocks(start, end, self.block_size):
                if op.single_byte:
                    self._write_odd_byte(op.address, end)
                else:
                    self._write_block(op)
                self.blocks += 1
                self.bytes_written += op.length
                if self.progress:
                    self.progress(self.bytes_written, total)
        self._advance(SessionState.COMPLETE)

    def _write_odd_byte(self, address: int, end: int):
        self._move_cursor(address)
        self._set_address(address)
        self._write_byte(CMD_WRITE_LOW_BYTE, FILLER, address)
        self._write_byte(CMD_WRITE_HIGH_BYTE, self.image[address], address)

        # слово закрыло страницу или это был последний байт — фиксируем страницу
        if (address + 1) % self.profile.page_size == 0 or address + 1 > end:
            self._set_word_address(address >> 1, address)
            self._send(CMD_COMMIT_PAGE)
            self._expect_ok(address)
            self._set_word_address((address + 1) >> 1, address)

        self._move_cursor(address + 1)

    def _write_block(self, op: BlockWrite):
        self._move_cursor(op.address)
        payload = self.image.read(op.address, op.length)
        if op.filler:
            payload += bytes([FILLER])

        self._set_address(op.address)
        self._send(CMD_BLOCK_LENGTH + len(payload).to_bytes(2, "big"))
        self._send(CMD_WRITE_BLOCK)
        self._send(payload)
        self._expect_ok(op.address)
        self._move_cursor(op.address + len(payload))

    def exit_bootloader(self) -> ExitNotConfirmed | None:
        """
        Выйти из загрузчика и переподключиться к приложению.
        Ошибка здесь не отменяет уже сделанную запись — она возвращается, а не бросается.
        """
        error = None
        try:
            self._send(CMD_EXIT_BOOTLOADER)
            resp = self._receive(1)
            if resp != RESP_OK:
                error = ExitNotConfirmed(f"exit command answered with {resp!r}")
        except TransportError as e:
            error = ExitNotConfirmed(f"exit command not confirmed: {e}")
        finally:
            self.bootloader.close()

        time.sleep(self.timing.settle_delay)

        try:
            found = self.find_devices(self.profile.vid, self.profile.pid)
            if found:
                self.application = self.open_application(found[0])
                log.info("reconnected to application at %s", found[0])
            elif error is None:
                error = ExitNotConfirmed("application port did not come back after exit")
        except TransportError as e:
            error = error or ExitNotConfirmed(f"cannot reopen application port: {e}")

        if error is not None:
            log.warning("%s", error)
        return error

    def run(self) -> ProgramResult:
        if self.state != SessionState.IDLE:
            raise RuntimeError("BootloaderSession is single-use")
        try:
            for step in (self.enter_bootloader, self.verify_signature,
                         self.query_block_mode, self.write_image):
                self._check_cancel()
                step()
        except ProgramError as e:
            self._fail(e)
            if self.bootloader is not None:
                self.bootloader.close()
            raise

        # отмена во время записи откладывается до конца цикла и выхода из загрузчика
        cancel_deferred = self.cancel is not None and self.cancel.is_set()
        if cancel_deferred:
            log.warning("cancel requested during the write loop, finishing session first")

        exit_error = self.exit_bootloader()
        return ProgramResult(
            state=self.state,
            signature=self.signature,
            block_mode=self.block_mode,
            block_size=self.block_size,
            blocks=self.blocks,
            bytes_written=self.bytes_written,
            exit_error=exit_error,
            cancel_deferred=cancel_deferred,
            transport=self.application,
        )


def program(transport: Transport, image: MemoryImage, profile: DeviceProfile, **kwargs) -> ProgramResult:
    return BootloaderSession(transport, image, profile, **kwargs).run()
