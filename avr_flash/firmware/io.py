# firmware/io.py
from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable

from ..avr_transport import serial_port
from ..avr_transport.avr109 import ProgramResult, Timing, program
from .devices import DeviceProfile
from .hexfile import MemoryImage, load_hex_file
from .simulate import SimulatedBoard


# ---- Высокоуровневые операции ----
def load_firmware(path: Path, profile: DeviceProfile) -> MemoryImage:
    return load_hex_file(Path(path), profile.flash_size)


def image_info(image: MemoryImage, profile: DeviceProfile | None = None) -> dict:
    info = {
        "capacity": image.capacity,
        "empty": image.is_empty,
        "start": image.occupied_low,
        "end": image.occupied_high,
        "bytes": image.used_size(),
        "crc32": f"0x{image.crc32():08X}",
    }
    if profile is not None:
        info["profile"] = profile.name
        info["usage"] = f"{100.0 * image.used_size() / profile.flash_size:.1f}%"
    return info


def _result_dict(result: ProgramResult, source: str, target: str) -> dict:
    return {
        "source": source,
        "target": target,
        "state": result.state.value,
        "signature": result.signature.hex(" ").upper(),
        "block_mode": result.block_mode,
        "block_size": result.block_size,
        "blocks": result.blocks,
        "bytes": result.bytes_written,
        "exit_error": str(result.exit_error) if result.exit_error else None,
        "cancel_deferred": result.cancel_deferred,
    }


def flash_firmware(port: str, image: MemoryImage, profile: DeviceProfile, *,
                   source: str = "",
                   timing: Timing = Timing(),
                   cancel: threading.Event | None = None,
                   progress: Callable[[int, int], None] | None = None) -> dict:
    """Прошить образ в реальную плату на порту port."""
    # порт закрывается при любом исходе сессии
    with serial_port.open_application_port(port) as transport:
        result = program(transport, image, profile, timing=timing, cancel=cancel, progress=progress)
    if result.transport is not None:
        result.transport.close()
    return _result_dict(result, source, port)


def flash_simulated(image: MemoryImage, profile: DeviceProfile, *,
                    source: str = "",
                    board: SimulatedBoard | None = None,
                    progress: Callable[[int, int], None] | None = None) -> dict:
    """То же самое, но на симуляторе — без железа и без пауз."""
    board = board or SimulatedBoard(profile)
    result = program(
        board, image, profile,
        find_devices=board.find_devices,
        open_transport=board.reopen,
        open_application=board.reopen,
        timing=Timing(settle_delay=0, reentry_window=0, poll_interval=0),
        progress=progress,
    )
    out = _result_dict(result, source, board.identifier)
    out["board"] = board.info()
    if not image.is_empty and result.bytes_written:
        written = bytes(board.flash[image.occupied_low:image.occupied_high + 1])
        out["verified"] = written == image.span()
    return out
