# errors.py
"""
Иерархия исключений avr-flash.

DecodeError — всё, что ломает разбор Intel-HEX (образ целиком отбрасывается).
ProgramError — всё, что ломает сессию загрузчика AVR109.
"""
from __future__ import annotations


class AvrFlashError(Exception):
    """Базовое исключение пакета."""


# ---- Ошибки разбора HEX ----
class DecodeError(AvrFlashError, ValueError):
    def __init__(self, message: str, line_number: int | None = None):
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)
        self.line_number = line_number


class MalformedRecordError(DecodeError):
    pass


class ChecksumMismatchError(DecodeError):
    pass


class AddressOutOfRangeError(DecodeError):
    pass


# ---- Ошибки протокола ----
class ProgramError(AvrFlashError, RuntimeError):
    pass


class TransportError(ProgramError):
    pass


class TransportTimeout(TransportError):
    pass


class DeviceNotReentered(ProgramError):
    pass


class UnknownDevice(ProgramError):
    def __init__(self, signature: bytes):
        super().__init__(f"unknown device signature {signature.hex(' ').upper() or '<empty>'}")
        self.signature = bytes(signature)


class InvalidBlockSize(ProgramError):
    pass


class BlockWriteFailed(ProgramError):
    def __init__(self, address: int, response: bytes = b""):
        super().__init__(f"block write failed at 0x{address:04X} (response {response!r})")
        self.address = address
        self.response = bytes(response)


class ExitNotConfirmed(ProgramError):
    pass


class ProgrammingCancelled(ProgramError):
    pass
