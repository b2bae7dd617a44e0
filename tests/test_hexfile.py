import io

import pytest

from avr_flash.errors import (
    AddressOutOfRangeError, ChecksumMismatchError, DecodeError, MalformedRecordError,
)
from avr_flash.firmware.hexfile import (
    DecoderState, MemoryImage, RecordType, decode, decode_record, load_hex_file, parse_record,
)
from conftest import make_record

LINE_1 = ":100000000C9467010C948F010C948F010C948F0158"
LINE_2 = ":100010000C948F010C948F010C948F010C948F0120"
LINE_3 = ":100020000C948F010C948F010C9484060C94500551"

PAYLOAD_1 = bytes([0x0C, 0x94, 0x67, 0x01, 0x0C, 0x94, 0x8F, 0x01,
                   0x0C, 0x94, 0x8F, 0x01, 0x0C, 0x94, 0x8F, 0x01])


def test_parse_single_line():
    record = parse_record(LINE_1)

    assert record.byte_count == 16
    assert record.address == 0x0000
    assert record.record_type == RecordType.DATA
    assert record.payload == PAYLOAD_1
    assert record.checksum == 0x58


def test_decode_single_line():
    image = decode(LINE_1 + "\n", len(PAYLOAD_1))

    assert image.capacity == 16
    assert image.data == PAYLOAD_1
    assert (image.occupied_low, image.occupied_high) == (0, 15)


def test_decode_multi_line():
    expected = PAYLOAD_1 + bytes([
        0x0C, 0x94, 0x8F, 0x01, 0x0C, 0x94, 0x8F, 0x01, 0x0C, 0x94, 0x8F, 0x01, 0x0C, 0x94, 0x8F, 0x01,
        0x0C, 0x94, 0x8F, 0x01, 0x0C, 0x94, 0x8F, 0x01, 0x0C, 0x94, 0x84, 0x06, 0x0C, 0x94, 0x50, 0x05,
    ])
    image = decode(io.StringIO("\n".join([LINE_1, LINE_2, LINE_3]) + "\n"), 48)

    assert image.data == expected
    assert image.span() == expected
    assert image.used_size() == 48


def test_decode_short_line_at_offset():
    image = decode(":0C1280000590F491E02D0994F894FFCF44\n", 0x2000)

    assert image.read(0x1280, 12) == bytes([0x05, 0x90, 0xF4, 0x91, 0xE0, 0x2D,
                                            0x09, 0x94, 0xF8, 0x94, 0xFF, 0xCF])
    assert image.occupied_low == 0x1280
    assert image.occupied_high == 0x128B
    assert image[0x127F] == 0


def test_lowercase_hex_digits():
    assert decode(LINE_1.lower(), 16).data == PAYLOAD_1


def test_end_of_file_only():
    image = decode(":00000001FF\n", 0)

    assert image.capacity == 0
    assert image.is_empty
    assert image.occupied_low is None and image.occupied_high is None
    assert image.span() == b""


def test_records_after_eof_are_ignored():
    image = decode([LINE_1, ":00000001FF", "garbage"], 16)
    assert image.data == PAYLOAD_1


def test_missing_eof_is_accepted():
    image = decode([LINE_1], 16)
    assert image.frozen


def test_idempotent():
    text = "\n".join([LINE_1, LINE_2, LINE_3, ":00000001FF"])
    assert decode(text, 64) == decode(text, 64)


def test_last_write_wins():
    lines = [make_record(0x10, 0, b"\x01\x02"), make_record(0x11, 0, b"\xAA")]
    image = decode(lines, 32)
    assert image.read(0x10, 2) == b"\x01\xAA"


@pytest.mark.parametrize("index", range(16))
@pytest.mark.parametrize("bit", range(8))
def test_single_bit_corruption_is_detected(index, bit):
    raw = bytearray(bytes.fromhex(LINE_1[1:]))
    raw[4 + index] ^= 1 << bit
    corrupted = ":" + raw.hex().upper()

    with pytest.raises(ChecksumMismatchError):
        decode(corrupted, 16)


def test_bad_checksum_aborts_whole_decode():
    bad = LINE_2[:-2] + "21"
    with pytest.raises(ChecksumMismatchError) as exc:
        decode([LINE_1, bad, LINE_3], 48)
    assert exc.value.line_number == 2
    assert isinstance(exc.value, DecodeError)


@pytest.mark.parametrize("line", [
    "100000000C9467010C948F010C948F010C948F0158",   # без двоеточия
    ";00000001FF",
    ":00000001F",                                    # нечётное число цифр
    ":0000000G01",                                   # не hex
    ":10000000",                                     # слишком коротко
    ":0200000001FD",                                 # данных меньше, чем заявлено
    ":00000006FA",                                   # неизвестный тип записи
])
def test_malformed_records(line):
    with pytest.raises(MalformedRecordError):
        decode([line], 64)


def test_blank_line_in_the_middle_is_malformed():
    with pytest.raises(MalformedRecordError) as exc:
        decode([LINE_1, "", LINE_2], 48)
    assert exc.value.line_number == 2


def test_trailing_blank_lines_are_ignored():
    assert decode(LINE_1 + "\n\n\r\n", 16).data == PAYLOAD_1


def test_address_out_of_range():
    with pytest.raises(AddressOutOfRangeError):
        decode([LINE_1], 15)


def test_extended_segment_address():
    lines = [
        make_record(0, RecordType.EXTENDED_SEGMENT_ADDRESS, b"\x01\x00"),   # база 0x1000
        make_record(0x0010, RecordType.DATA, b"\xDE\xAD"),
    ]
    image = decode(lines, 0x2000)
    assert image.read(0x1010, 2) == b"\xDE\xAD"
    assert image.occupied_low == 0x1010


def test_extended_linear_address_persists_until_superseded():
    lines = [
        make_record(0, RecordType.EXTENDED_LINEAR_ADDRESS, b"\x00\x01"),    # база 0x10000
        make_record(0x0000, RecordType.DATA, b"\x11"),
        make_record(0x0001, RecordType.DATA, b"\x22"),
        make_record(0, RecordType.EXTENDED_LINEAR_ADDRESS, b"\x00\x00"),
        make_record(0x0000, RecordType.DATA, b"\x33"),
    ]
    image = decode(lines, 0x10002)
    assert image.read(0x10000, 2) == b"\x11\x22"
    assert image[0] == 0x33
    assert (image.occupied_low, image.occupied_high) == (0, 0x10001)


def test_extended_address_out_of_range():
    lines = [
        make_record(0, RecordType.EXTENDED_LINEAR_ADDRESS, b"\x00\x01"),
        make_record(0x0000, RecordType.DATA, b"\x11"),
    ]
    with pytest.raises(AddressOutOfRangeError):
        decode(lines, 28672)


def test_start_address_records_do_not_touch_image():
    lines = [
        make_record(0, RecordType.START_SEGMENT_ADDRESS, b"\x00\x00\x01\x00"),
        make_record(0, RecordType.START_LINEAR_ADDRESS, b"\x00\x00\x01\x00"),
        ":00000001FF",
    ]
    assert decode(lines, 16).is_empty


def test_decode_record_step_is_explicit():
    image = MemoryImage(0x200)
    state = DecoderState()

    state = decode_record(parse_record(make_record(0, RecordType.EXTENDED_SEGMENT_ADDRESS, b"\x00\x10")),
                          state, image)
    assert state.base_address == 0x100
    assert image.is_empty

    state = decode_record(parse_record(make_record(0x0002, RecordType.DATA, b"\x7F")), state, image)
    assert image[0x102] == 0x7F
    assert not state.finished


def test_frozen_image_is_read_only():
    image = decode([LINE_1], 16)
    with pytest.raises(RuntimeError):
        image.write(0, b"\x00")


def test_load_hex_file(tmp_path):
    path = tmp_path / "blink.hex"
    path.write_text("\n".join([LINE_1, LINE_2, LINE_3, ":00000001FF"]) + "\n")

    image = load_hex_file(path, 28672)
    assert image.read(0, 16) == PAYLOAD_1
    assert image.used_size() == 48
