import io

import pytest

from rvsim.memory import GuestMemoryError, PhysicalMemory

BASE = 0x80000000


@pytest.fixture
def mem():
    return PhysicalMemory(BASE, 0x1000)


@pytest.mark.parametrize("length", [1, 2, 4, 8])
def test_round_trip(mem, length):
    value = 0x0123456789ABCDEF & ((1 << (8 * length)) - 1)
    mem.write(BASE + 0x10, length, value)
    assert mem.read(BASE + 0x10, length) == value


def test_little_endian_layout(mem):
    mem.write(BASE, 4, 0x11223344)
    assert mem.read(BASE, 1) == 0x44
    assert mem.read(BASE + 3, 1) == 0x11


def test_write_truncates_data(mem):
    mem.write(BASE, 1, 0x1FF)
    assert mem.read(BASE, 2) == 0xFF


def test_unaligned_store_and_load(mem):
    buf = BASE + 0x200
    for _ in range(4):
        mem.write(buf + 3, 4, 0xAABBCCDD)
        assert mem.read(buf + 3, 4) == 0xAABBCCDD
        mem.write(buf, 1, 0)
        mem.write(buf + 1, 1, 0)


def test_out_of_bounds(mem):
    with pytest.raises(GuestMemoryError):
        mem.read(BASE + 0x1000, 1)
    with pytest.raises(GuestMemoryError):
        mem.write(BASE - 1, 1, 0)
    with pytest.raises(GuestMemoryError):
        mem.read(BASE + 0xFFE, 4)


def test_invalid_length(mem):
    with pytest.raises(GuestMemoryError):
        mem.read(BASE, 3)


def test_fetch(mem):
    mem.write(BASE + 4, 4, 0x00100073)
    assert mem.fetch(BASE + 4) == 0x00100073
    with pytest.raises(GuestMemoryError):
        mem.fetch(0)


def test_view(mem):
    mem.write(BASE, 4, 0xDEADBEEF)
    assert mem.view(BASE, 2) == [0xDEADBEEF, 0]
    assert mem.view(BASE + 0xFFC, 2) == [0, None]
    assert mem.view(BASE - 4, 1) == [None]


def test_trace_format(mem):
    stream = io.StringIO()
    mem.enable_trace(stream)
    mem.write(BASE, 2, 0x1234)
    mem.read(BASE, 1)
    assert stream.getvalue() == (
        "w 0x0000000080000000 2 1234\n"
        "r 0x0000000080000000 1 34\n"
    )


def test_load_image(mem, tmp_path):
    image = tmp_path / "prog.bin"
    image.write_bytes(b"\x13\x05\x00\x00\x73\x00\x10\x00")
    assert mem.load_image(str(image)) == 8
    assert mem.fetch(BASE) == 0x00000513
    assert mem.fetch(BASE + 4) == 0x00100073


def test_load_image_errors(mem, tmp_path):
    with pytest.raises(GuestMemoryError):
        mem.load_image("")
    with pytest.raises(GuestMemoryError):
        mem.load_image(str(tmp_path / "missing.bin"))
    big = tmp_path / "big.bin"
    big.write_bytes(bytes(0x1001))
    with pytest.raises(GuestMemoryError):
        mem.load_image(str(big))