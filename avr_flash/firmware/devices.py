# firmware/devices.py
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DeviceProfile:
    name: str
    vid: int
    pid: int                # PID в режиме приложения
    bootloader_pid: int     # PID, под которым плата появляется в загрузчике
    flash_size: int         # из даташита, без области загрузчика
    page_size: int


# ATmega32U4 (Leonardo): 32 КБ флеша, 4 КБ занимает Caterina
LEONARDO = DeviceProfile("leonardo", vid=0x2341, pid=0x8036, bootloader_pid=0x0036,
                         flash_size=28672, page_size=128)
LEONARDO_ORG = DeviceProfile("leonardo-org", vid=0x2A03, pid=0x8036, bootloader_pid=0x0036,
                             flash_size=28672, page_size=128)

PROFILES = [LEONARDO, LEONARDO_ORG]

# Сигнатуры, которые отдаёт загрузчик на команду 's' (порядок байт — как на проводе)
VALID_SIGNATURES = frozenset({
    bytes([0x87, 0x95, 0x1E]),
})


def get_profile(name: str) -> DeviceProfile:
    for p in PROFILES:
        if p.name == name.lower():
            return p
    known = ", ".join(p.name for p in PROFILES)
    raise KeyError(f"unknown device profile {name!r} (known: {known})")


def _id_tokens(vid: int, pid: int | None = None) -> list[str]:
    # pyserial: "USB VID:PID=2341:8036 SER=..."; Windows: "USB\\VID_2341&PID_8036\\..."
    if pid is None:
        return [f"VID:PID={vid:04X}:", f"VID_{vid:04X}"]
    return [f"VID:PID={vid:04X}:{pid:04X}", f"VID_{vid:04X}&PID_{pid:04X}"]


def identifier_matches(identifier: str, vid: int, pid: int | None = None) -> bool:
    ident = (identifier or "").upper()
    return any(token in ident for token in _id_tokens(vid, pid))


def match_profile(identifier: str) -> DeviceProfile | None:
    """Найти профиль платы по строке идентификатора USB (hwid / device id)."""
    for p in PROFILES:
        if identifier_matches(identifier, p.vid):
            return p
    return None


def is_valid_signature(signature: bytes) -> bool:
    return bytes(signature) in VALID_SIGNATURES
