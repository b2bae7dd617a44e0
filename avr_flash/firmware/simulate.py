# firmware/simulate.py
from __future__ import annotations

from ..errors import TransportError, TransportTimeout
from .devices import LEONARDO, DeviceProfile


class SimulatedBoard:
    """
    Очень простой симулятор платы с загрузчиком AVR109:
    - хранит флеш в памяти (стёртый = 0xFF)
    - разбирает поток команд s, b, A, H, c, C, m, B..F, E
    - запоминает все команды для проверок в тестах
    Реализует интерфейс Transport, поэтому подставляется вместо порта.
    """

    def __init__(self, profile: DeviceProfile = LEONARDO,
                 signature: bytes = bytes([0x87, 0x95, 0x1E]),
                 block_size: int = 128,
                 block_mode: bool = True,
                 fail_at: int | None = None,
                 mute_at: int | None = None,
                 confirm_exit: bool = True,
                 identifier: str = "sim://leonardo"):
        self.profile = profile
        self.signature = bytes(signature)
        self.block_size = block_size
        self.block_mode = block_mode
        self.fail_at = fail_at              # байтовый адрес блока, на котором «сломаться»
        self.mute_at = mute_at              # адрес блока, после которого плата «замолкает»
        self.confirm_exit = confirm_exit
        self.identifier = identifier

        self.flash = bytearray([0xFF] * profile.flash_size)
        self.commands: list[tuple] = []
        self.baud_rate = 57600
        self.dtr = True
        self.rts = False
        self.framing = (8, "N", 1)
        self.in_bootloader = False
        self.exited = False

        self._open = True
        self._rx = bytearray()      # от хоста к плате
        self._tx = bytearray()      # от платы к хосту
        self._word = 0              # текущий адрес в словах
        self._low_byte = 0xFF

    # ---- Transport ----
    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        # закрытие порта на 1200 бод — сигнал войти в загрузчик
        if self._open and self.baud_rate == 1200:
            self.in_bootloader = True
        self._open = False

    def set_baud_rate(self, baud: int) -> None:
        self.baud_rate = baud

    def set_framing(self, bytesize: int, parity: str, stopbits: float) -> None:
        self.framing = (bytesize, parity, stopbits)

    def set_dtr(self, state: bool) -> None:
        self.dtr = state

    def set_rts(self, state: bool) -> None:
        self.rts = state

    def write(self, data: bytes) -> None:
        if not self._open:
            raise TransportError(f"{self.identifier} is closed")
        self._rx += data
        self._process()

    def read(self, size: int) -> bytes:
        if not self._open:
            raise TransportError(f"{self.identifier} is closed")
        if len(self._tx) < size:
            raise TransportTimeout(f"expected {size} byte(s), have {len(self._tx)}")
        data = bytes(self._tx[:size])
        del self._tx[:size]
        return data

    # ---- поиск устройств для сессии ----
    def find_devices(self, vid: int, pid: int | None = None) -> list[str]:
        if vid != self.profile.vid:
            return []
        if self.in_bootloader and pid in (None, self.profile.bootloader_pid):
            return [self.identifier]
        if not self.in_bootloader and pid in (None, self.profile.pid):
            return [self.identifier]
        return []

    def reopen(self, identifier: str) -> "SimulatedBoard":
        self.baud_rate = 57600
        self.open()
        return self

    # ---- разбор команд ----
    def _take(self, size: int) -> bytes | None:
        if len(self._rx) < size:
            return None
        data = bytes(self._rx[:size])
        del self._rx[:size]
        return data

    def _process(self):
        while self._rx:
            cmd = chr(self._rx[0])
            need = {"A": 3, "H": 4, "c": 2, "C": 2}.get(cmd, 1)
            if cmd == "B":
                if len(self._rx) < 4:
                    return
                length = int.from_bytes(self._rx[1:3], "big")
                need = 4 + length
            if len(self._rx) < need:
                return
            frame = self._take(need)
            self._handle(cmd, frame[1:])

    def _handle(self, cmd: str, args: bytes):
        self.commands.append((cmd, args))
        if cmd == "s":
            self._tx += self.signature
        elif cmd == "b":
            if self.block_mode:
                self._tx += b"Y" + self.block_size.to_bytes(2, "big")
            else:
                self._tx += b"N"
        elif cmd in ("A", "H"):
            self._word = int.from_bytes(args, "big")
            self._tx += b"\r"
        elif cmd == "c":
            self._low_byte = args[0]
            self._tx += b"\r"
        elif cmd == "C":
            self._store(self._word * 2, bytes([self._low_byte, args[0]]))
            self._word += 1
            self._tx += b"\r"
        elif cmd == "m":
            self._tx += b"\r"
        elif cmd == "B":
            memtype, data = chr(args[2]), args[3:]
            address = self._word * 2
            if self.mute_at is not None and address == self.mute_at:
                return
            if memtype != "F" or (self.fail_at is not None and address == self.fail_at):
                self._tx += b"?"
                return
            self._store(address, data)
            self._word += (len(data) + 1) // 2
            self._tx += b"\r"
        elif cmd == "E":
            self.exited = True
            self.in_bootloader = False
            if self.confirm_exit:
                self._tx += b"\r"
        else:
            self._tx += b"?"

    def _store(self, address: int, data: bytes):
        end = address + len(data)
        if end > len(self.flash):
            raise TransportError(f"simulated write past flash end: 0x{end:X}")
        self.flash[address:end] = data

    def info(self) -> dict:
        return {
            "device": self.identifier,
            "profile": self.profile.name,
            "flash_size": len(self.flash),
            "commands": len(self.commands),
            "in_bootloader": self.in_bootloader,
        }
