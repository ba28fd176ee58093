"""Guest physical memory with optional access tracing."""

from __future__ import annotations

import logging
from typing import Optional, TextIO

MEM_BASE = 0x80000000
MEM_SIZE = 128 * 1024 * 1024
MASK64 = (1 << 64) - 1

_ACCESS_SIZES = (1, 2, 4, 8)

log = logging.getLogger(__name__)


class GuestMemoryError(Exception):
    """An access outside guest memory or of an unsupported width."""


class PhysicalMemory:
    """Little-endian byte-addressed memory mapped at `base`."""

    def __init__(self, base: int = MEM_BASE, size: int = MEM_SIZE):
        if size <= 0:
            raise ValueError("memory size must be positive")
        self.base = base
        self.size = size
        self.data = bytearray(size)
        self._trace: Optional[TextIO] = None

    def _offset(self, addr: int, length: int, what: str) -> int:
        offset = (addr - self.base) & MASK64
        if offset >= self.size or offset + length > self.size:
            raise GuestMemoryError(f"{what} addr {addr & MASK64:016x} out of bound.")
        return offset

    @staticmethod
    def _check_length(length: int, what: str) -> None:
        if length not in _ACCESS_SIZES:
            raise GuestMemoryError(f"Invalid len for {what}.")

    def _record(self, kind: str, addr: int, length: int, value: int) -> None:
        if self._trace is not None:
            self._trace.write(
                f"{kind} 0x{addr & MASK64:016x} {length} {value:0{2 * length}x}\n"
            )

    def read(self, addr: int, length: int) -> int:
        """Read an unsigned little-endian value of 1, 2, 4 or 8 bytes."""
        self._check_length(length, "read")
        offset = self._offset(addr, length, "Read")
        value = int.from_bytes(self.data[offset:offset + length], "little")
        self._record("r", addr, length, value)
        return value

    def write(self, addr: int, length: int, data: int) -> None:
        """Write the low `length` bytes of `data`, little-endian."""
        self._check_length(length, "write")
        offset = self._offset(addr, length, "Write")
        value = data & ((1 << (8 * length)) - 1)
        self.data[offset:offset + length] = value.to_bytes(length, "little")
        self._record("w", addr, length, value)

    def fetch(self, pc: int) -> int:
        """Fetch the 32-bit instruction word at `pc`."""
        if not pc:
            raise GuestMemoryError("PC is zero.")
        offset = self._offset(pc, 4, "Fetch")
        return int.from_bytes(self.data[offset:offset + 4], "little")

    def view(self, addr: int, count: int) -> list[Optional[int]]:
        """The `count` 32-bit words from `addr`; None where a word is inaccessible."""
        words: list[Optional[int]] = []
        end = self.base + self.size
        for n in range(count):
            word_addr = addr + 4 * n
            if word_addr < self.base or word_addr + 4 > end:
                words.append(None)
                continue
            offset = word_addr - self.base
            words.append(int.from_bytes(self.data[offset:offset + 4], "little"))
        return words

    def load_image(self, path: str) -> int:
        """Copy a raw binary image to the start of memory; return its size."""
        log.info(
            "Physical Memory Range:[%016x, %016x].", self.base, self.base + self.size - 1
        )
        if not path:
            raise GuestMemoryError("IMAGE file path wrong.")
        try:
            with open(path, "rb") as image:
                content = image.read()
        except OSError as exc:
            raise GuestMemoryError(f"Failed to read {path}.") from exc
        log.info("The image is %s, size = %d.", path, len(content))
        if len(content) > self.size:
            raise GuestMemoryError("Load image failed.")
        self.data[:len(content)] = content
        return len(content)

    def enable_trace(self, stream: TextIO) -> None:
        """Record every read and write to `stream`."""
        self._trace = stream