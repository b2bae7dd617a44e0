import pytest

from avr_flash.avr_transport.avr109 import BootloaderSession, Timing
from avr_flash.firmware.devices import LEONARDO
from avr_flash.firmware.hexfile import MemoryImage
from avr_flash.firmware.simulate import SimulatedBoard

NO_DELAY = Timing(settle_delay=0, reentry_window=0, poll_interval=0)


def make_record(address: int, record_type: int, payload: bytes = b"") -> str:
    raw = bytes([len(payload), (address >> 8) & 0xFF, address & 0xFF, record_type]) + payload
    return ":" + (raw + bytes([-sum(raw) & 0xFF])).hex().upper()


def make_image(address: int, payload: bytes, capacity: int = LEONARDO.flash_size) -> MemoryImage:
    image = MemoryImage(capacity)
    image.write(address, payload)
    return image.freeze()


@pytest.fixture
def board():
    return SimulatedBoard(LEONARDO)


@pytest.fixture
def session_for(board):
    def _session(image, sim=None, **kwargs):
        sim = sim or board
        kwargs.setdefault("timing", NO_DELAY)
        return BootloaderSession(
            sim, image, sim.profile,
            find_devices=sim.find_devices,
            open_transport=sim.reopen,
            open_application=sim.reopen,
            **kwargs,
        )
    return _session
