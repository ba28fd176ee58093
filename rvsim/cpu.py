"""RV64IM decoder and interpreter with a few host system calls."""

from __future__ import annotations

import logging
import os
import struct
import sys
from typing import Callable, Optional, TextIO

from .cache import Cache, level_miss_rates
from .isa import DecodedInstruction, InsType, Op
from .memory import GuestMemoryError, PhysicalMemory
from .perf import Profiler, ProfilerKind

MASK64 = (1 << 64) - 1
MASK32 = 0xFFFFFFFF
INT64_MIN = -(1 << 63)
INT32_MIN = -(1 << 31)

SYS_WRITE = 64
SYS_FSTAT = 80
SYS_BRK = 214

_GREEN = "\033[1;32m"
_RED = "\033[1;31m"
_RESET = "\033[0m"

log = logging.getLogger(__name__)


def _sext(value: int, bits: int) -> int:
    value &= (1 << bits) - 1
    return value - (1 << bits) if value >> (bits - 1) else value


def _bits(value: int, hi: int, lo: int) -> int:
    return (value >> lo) & ((1 << (hi - lo + 1)) - 1)


def _tdiv(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return -quotient if (a < 0) != (b < 0) else quotient


def _trem(a: int, b: int) -> int:
    return a - b * _tdiv(a, b)


_T = InsType
_PATTERN_TABLE = [
    ("??????? ????? ????? 000 ????? 0000011", Op.LB, _T.I),
    ("??????? ????? ????? 001 ????? 0000011", Op.LH, _T.I),
    ("??????? ????? ????? 010 ????? 0000011", Op.LW, _T.I),
    ("??????? ????? ????? 011 ????? 0000011", Op.LD, _T.I),
    ("??????? ????? ????? 100 ????? 0000011", Op.LBU, _T.I),
    ("??????? ????? ????? 101 ????? 0000011", Op.LHU, _T.I),
    ("??????? ????? ????? 110 ????? 0000011", Op.LWU, _T.I),
    ("??????? ????? ????? 000 ????? 0100011", Op.SB, _T.S),
    ("??????? ????? ????? 001 ????? 0100011", Op.SH, _T.S),
    ("??????? ????? ????? 010 ????? 0100011", Op.SW, _T.S),
    ("??????? ????? ????? 011 ????? 0100011", Op.SD, _T.S),
    ("??????? ????? ????? 000 ????? 0010011", Op.ADDI, _T.I),
    ("??????? ????? ????? 010 ????? 0010011", Op.SLTI, _T.I),
    ("??????? ????? ????? 011 ????? 0010011", Op.SLTIU, _T.I),
    ("??????? ????? ????? 111 ????? 0010011", Op.ANDI, _T.I),
    ("??????? ????? ????? 110 ????? 0010011", Op.ORI, _T.I),
    ("??????? ????? ????? 100 ????? 0010011", Op.XORI, _T.I),
    ("??????? ????? ????? 000 ????? 0011011", Op.ADDIW, _T.I),
    ("000000 ?????? ????? 001 ????? 0010011", Op.SLLI, _T.I),
    ("000000 ?????? ????? 101 ????? 0010011", Op.SRLI, _T.I),
    ("010000 ?????? ????? 101 ????? 0010011", Op.SRAI, _T.I),
    ("0000000 ????? ????? 001 ????? 0011011", Op.SLLIW, _T.I),
    ("0000000 ????? ????? 101 ????? 0011011", Op.SRLIW, _T.I),
    ("0100000 ????? ????? 101 ????? 0011011", Op.SRAIW, _T.I),
    ("0000000 ????? ????? 000 ????? 0110011", Op.ADD, _T.R),
    ("0100000 ????? ????? 000 ????? 0110011", Op.SUB, _T.R),
    ("0000000 ????? ????? 010 ????? 0110011", Op.SLT, _T.R),
    ("0000000 ????? ????? 011 ????? 0110011", Op.SLTU, _T.R),
    ("0000000 ????? ????? 111 ????? 0110011", Op.AND, _T.R),
    ("0000000 ????? ????? 110 ????? 0110011", Op.OR, _T.R),
    ("0000000 ????? ????? 100 ????? 0110011", Op.XOR, _T.R),
    ("0000000 ????? ????? 001 ????? 0110011", Op.SLL, _T.R),
    ("0000000 ????? ????? 101 ????? 0110011", Op.SRL, _T.R),
    ("0100000 ????? ????? 101 ????? 0110011", Op.SRA, _T.R),
    ("0000000 ????? ????? 000 ????? 0111011", Op.ADDW, _T.R),
    ("0100000 ????? ????? 000 ????? 0111011", Op.SUBW, _T.R),
    ("0000000 ????? ????? 001 ????? 0111011", Op.SLLW, _T.R),
    ("0000000 ????? ????? 101 ????? 0111011", Op.SRLW, _T.R),
    ("0100000 ????? ????? 101 ????? 0111011", Op.SRAW, _T.R),
    ("??????? ????? ????? 000 ????? 1100011", Op.BEQ, _T.SB),
    ("??????? ????? ????? 001 ????? 1100011", Op.BNE, _T.SB),
    ("??????? ????? ????? 100 ????? 1100011", Op.BLT, _T.SB),
    ("??????? ????? ????? 101 ????? 1100011", Op.BGE, _T.SB),
    ("??????? ????? ????? 110 ????? 1100011", Op.BLTU, _T.SB),
    ("??????? ????? ????? 111 ????? 1100011", Op.BGEU, _T.SB),
    ("??????? ????? ????? ??? ????? 1101111", Op.JAL, _T.J),
    ("??????? ????? ????? 000 ????? 1100111", Op.JALR, _T.I),
    ("??????? ????? ????? ??? ????? 0110111", Op.LUI, _T.U),
    ("??????? ????? ????? ??? ????? 0010111", Op.AUIPC, _T.U),
    ("0000000 00000 00000 000 00000 1110011", Op.ECALL, _T.N),
    ("0000000 00001 00000 000 00000 1110011", Op.EBREAK, _T.N),
    ("0000001 ????? ????? 000 ????? 0110011", Op.MUL, _T.R),
    ("0000001 ????? ????? 001 ????? 0110011", Op.MULH, _T.R),
    ("0000001 ????? ????? 010 ????? 0110011", Op.MULHSU, _T.R),
    ("0000001 ????? ????? 011 ????? 0110011", Op.MULHU, _T.R),
    ("0000001 ????? ????? 100 ????? 0110011", Op.DIV, _T.R),
    ("0000001 ????? ????? 101 ????? 0110011", Op.DIVU, _T.R),
    ("0000001 ????? ????? 110 ????? 0110011", Op.REM, _T.R),
    ("0000001 ????? ????? 111 ????? 0110011", Op.REMU, _T.R),
    ("0000001 ????? ????? 000 ????? 0111011", Op.MULW, _T.R),
    ("0000001 ????? ????? 100 ????? 0111011", Op.DIVW, _T.R),
    ("0000001 ????? ????? 101 ????? 0111011", Op.DIVUW, _T.R),
    ("0000001 ????? ????? 110 ????? 0111011", Op.REMW, _T.R),
    ("0000001 ????? ????? 111 ????? 0111011", Op.REMUW, _T.R),
    ("??????? ????? ????? ??? ????? ????? ??", Op.UNK, _T.N),
]


def _compile(pattern: str) -> tuple[int, int]:
    bits = pattern.replace(" ", "")
    if len(bits) != 32:
        raise ValueError(f"pattern is not 32 bits: {pattern}")
    mask = int("".join("0" if c == "?" else "1" for c in bits), 2)
    value = int(bits.replace("?", "0"), 2)
    return mask, value


_PATTERNS = [(*_compile(p), op, kind) for p, op, kind in _PATTERN_TABLE]


def _immediate(inst: int, kind: InsType) -> int:
    if kind is InsType.I:
        return _sext(_bits(inst, 31, 20), 12)
    if kind is InsType.U:
        return _sext(_bits(inst, 31, 12), 20) << 12
    if kind is InsType.J:
        return _sext(
            _bits(inst, 31, 31) << 20
            | _bits(inst, 19, 12) << 12
            | _bits(inst, 20, 20) << 11
            | _bits(inst, 30, 21) << 1,
            21,
        )
    if kind is InsType.S:
        return (_sext(_bits(inst, 31, 25), 7) << 5) | _bits(inst, 11, 7)
    if kind is InsType.SB:
        return _sext(
            _bits(inst, 31, 31) << 12
            | _bits(inst, 7, 7) << 11
            | _bits(inst, 30, 25) << 5
            | _bits(inst, 11, 8) << 1,
            13,
        )
    return 0


def decode(inst: int, pc: int, regs: list[int]) -> DecodedInstruction:
    """Decode a 32-bit word, capturing the source register values it reads."""
    inst &= MASK32
    op, kind = next((op, kind) for mask, value, op, kind in _PATTERNS if inst & mask == value)
    rd = _bits(inst, 11, 7)
    rs1 = _bits(inst, 19, 15)
    rs2 = _bits(inst, 24, 20)
    imm = _immediate(inst, kind)
    if kind is InsType.I:
        return DecodedInstruction(op, kind, pc, rd=rd, rs1=rs1, rs1_val=regs[rs1], imm=imm)
    if kind in (InsType.U, InsType.J):
        return DecodedInstruction(op, kind, pc, rd=rd, imm=imm)
    if kind in (InsType.S, InsType.SB):
        return DecodedInstruction(
            op, kind, pc, rs1=rs1, rs2=rs2, rs1_val=regs[rs1], rs2_val=regs[rs2], imm=imm
        )
    if kind is InsType.R:
        return DecodedInstruction(
            op, kind, pc, rd=rd, rs1=rs1, rs2=rs2, rs1_val=regs[rs1], rs2_val=regs[rs2]
        )
    return DecodedInstruction(op, kind, pc)


def _div(a: int, b: int) -> int:
    a, b = _sext(a, 64), _sext(b, 64)
    if b == 0:
        return -1
    if a == INT64_MIN and b == -1:
        return INT64_MIN
    return _tdiv(a, b)


def _rem(a: int, b: int) -> int:
    if b == 0:
        return a
    a, b = _sext(a, 64), _sext(b, 64)
    if a == INT64_MIN and b == -1:
        return 0
    return _trem(a, b)


def _divw(a: int, b: int) -> int:
    a, b = _sext(a, 32), _sext(b, 32)
    if b == 0:
        return -1
    if a == INT32_MIN and b == -1:
        return INT32_MIN
    return _sext(_tdiv(a, b), 32)


def _remw(a: int, b: int) -> int:
    a, b = _sext(a, 32), _sext(b, 32)
    if b == 0:
        return a
    if a == INT32_MIN and b == -1:
        return 0
    return _trem(a, b)


def _divuw(a: int, b: int) -> int:
    a, b = a & MASK32, b & MASK32
    return MASK64 if b == 0 else a // b


def _remuw(a: int, b: int) -> int:
    a, b = a & MASK32, b & MASK32
    return a if b == 0 else a % b


_REG_OPS: dict[Op, Callable[[int, int], int]] = {
    Op.ADD: lambda a, b: a + b,
    Op.SUB: lambda a, b: a - b,
    Op.SLT: lambda a, b: int(_sext(a, 64) < _sext(b, 64)),
    Op.SLTU: lambda a, b: int(a < b),
    Op.AND: lambda a, b: a & b,
    Op.OR: lambda a, b: a | b,
    Op.XOR: lambda a, b: a ^ b,
    Op.SLL: lambda a, b: a << (b & 0x3F),
    Op.SRL: lambda a, b: a >> (b & 0x3F),
    Op.SRA: lambda a, b: _sext(a, 64) >> (b & 0x3F),
    Op.ADDW: lambda a, b: _sext(a + b, 32),
    Op.SUBW: lambda a, b: _sext(a - b, 32),
    Op.SLLW: lambda a, b: _sext((a & MASK32) << (b & 0x1F), 32),
    Op.SRLW: lambda a, b: _sext((a & MASK32) >> (b & 0x1F), 32),
    Op.SRAW: lambda a, b: _sext(a, 32) >> (b & 0x1F),
    Op.MUL: lambda a, b: a * b,
    Op.MULH: lambda a, b: (_sext(a, 64) * _sext(b, 64)) >> 64,
    Op.MULHSU: lambda a, b: (_sext(a, 64) * b) >> 64,
    Op.MULHU: lambda a, b: (a * b) >> 64,
    Op.DIV: _div,
    Op.DIVU: lambda a, b: MASK64 if b == 0 else a // b,
    Op.REM: _rem,
    Op.REMU: lambda a, b: a if b == 0 else a % b,
    Op.MULW: lambda a, b: _sext(a * b, 32),
    Op.DIVW: _divw,
    Op.DIVUW: _divuw,
    Op.REMW: _remw,
    Op.REMUW: _remuw,
}

_IMM_OPS: dict[Op, Callable[[int, int], int]] = {
    Op.ADDI: lambda a, i: a + i,
    Op.SLTI: lambda a, i: int(_sext(a, 64) < i),
    Op.SLTIU: lambda a, i: int(a < (i & MASK64)),
    Op.ANDI: lambda a, i: a & i,
    Op.ORI: lambda a, i: a | i,
    Op.XORI: lambda a, i: a ^ i,
    Op.ADDIW: lambda a, i: _sext(_sext(a, 32) + _sext(i, 32), 32),
    Op.SLLI: lambda a, i: a << (i & 0x3F),
    Op.SRLI: lambda a, i: a >> (i & 0x3F),
    Op.SRAI: lambda a, i: _sext(a, 64) >> (i & 0x3F),
    Op.SLLIW: lambda a, i: _sext((a & MASK32) << (i & 0x1F), 32),
    Op.SRLIW: lambda a, i: _sext((a & MASK32) >> (i & 0x1F), 32),
    Op.SRAIW: lambda a, i: _sext(a, 32) >> (i & 0x1F),
}

# (bytes, sign-extend)
_LOADS: dict[Op, tuple[int, bool]] = {
    Op.LB: (1, True), Op.LH: (2, True), Op.LW: (4, True), Op.LD: (8, False),
    Op.LBU: (1, False), Op.LHU: (2, False), Op.LWU: (4, False),
}

_STORES: dict[Op, int] = {Op.SB: 1, Op.SH: 2, Op.SW: 4, Op.SD: 8}

_STAT_FORMAT = "<QQIIIIQQqiiqqqqqqqii"


class CPU:
    """An RV64IM hart: 32 registers and a program counter over guest memory."""

    def __init__(
        self,
        memory: PhysicalMemory,
        profiler: Optional[Profiler] = None,
        out: Optional[TextIO] = None,
    ):
        self.memory = memory
        self.profiler = profiler
        self.out = out if out is not None else sys.stdout
        self.pc = memory.base
        self.regs = [0] * 32
        self.running = True
        self.exit_code: Optional[int] = None
        self.prog_brk = memory.base + memory.size

    def step(self) -> None:
        """Fetch and execute the instruction at the program counter."""
        self.execute(self.memory.fetch(self.pc))

    def run(self) -> Optional[int]:
        """Execute until the program halts; return its exit code."""
        while self.running:
            self.step()
        return self.exit_code

    def _set(self, rd: int, value: int) -> None:
        self.regs[rd] = value & MASK64

    def execute(self, inst: int) -> None:
        """Execute one instruction word as if fetched at the current pc."""
        pc = self.pc
        ins = decode(inst, pc, self.regs)
        if self.profiler is not None:
            self.profiler.record(ins)
        next_pc = (pc + 4) & MASK64
        op = ins.op
        src1, src2, imm = ins.rs1_val, ins.rs2_val, ins.imm

        if op in _REG_OPS:
            self._set(ins.rd, _REG_OPS[op](src1, src2))
        elif op in _IMM_OPS:
            self._set(ins.rd, _IMM_OPS[op](src1, imm))
        elif op in _LOADS:
            size, signed = _LOADS[op]
            value = self.memory.read((src1 + imm) & MASK64, size)
            self._set(ins.rd, _sext(value, 8 * size) if signed else value)
        elif op in _STORES:
            self.memory.write((src1 + imm) & MASK64, _STORES[op], src2)
        elif ins.kind is InsType.SB:
            if ins.branch_taken():
                next_pc = (pc + imm) & MASK64
        elif op is Op.JAL:
            self._set(ins.rd, pc + 4)
            next_pc = (pc + imm) & MASK64
        elif op is Op.JALR:
            self._set(ins.rd, pc + 4)
            next_pc = (src1 + imm) & MASK64 & ~1
        elif op is Op.LUI:
            self._set(ins.rd, _sext(imm & 0xFFFFF000, 32))
        elif op is Op.AUIPC:
            self._set(ins.rd, pc + imm)
        elif op is Op.ECALL:
            if not self.upcall():
                self.halt(pc, 1)
        elif op is Op.EBREAK:
            self.halt(pc, self.regs[10])
        else:
            self.out.write(f"{_RED}Unknown Inst! {inst & MASK32:08x}\n{_RESET}")
            self.halt(pc, -1)

        self.regs[0] = 0
        self.pc = next_pc

    def _host_offset(self, addr: int, length: int) -> int:
        offset = (addr - self.memory.base) & MASK64
        if offset + length > self.memory.size:
            raise GuestMemoryError(f"buffer at {addr & MASK64:016x} out of bound.")
        return offset

    def upcall(self) -> bool:
        """Serve the system call selected by a7; False if it is not supported."""
        a0, a1, a2, a7 = self.regs[10], self.regs[11], self.regs[12], self.regs[17]
        if a7 == SYS_FSTAT:
            self.regs[10] = self._fstat(a0, a1)
        elif a7 == SYS_BRK:
            if a0 != 0 and (a0 - self.memory.base) & MASK64 <= self.memory.size:
                self.prog_brk = a0
            self.regs[10] = self.prog_brk & MASK64
        elif a7 == SYS_WRITE:
            self.regs[10] = self._write(a0, a1, a2)
        else:
            log.info("Unrecognized/Unimplemented ecall no %d", a7)
            return False
        return True

    def _fstat(self, fd: int, addr: int) -> int:
        try:
            st = os.fstat(_sext(fd, 32))
        except OSError:
            return MASK64
        packed = struct.pack(
            _STAT_FORMAT,
            st.st_dev & MASK64,
            st.st_ino & MASK64,
            st.st_mode & MASK32,
            st.st_nlink & MASK32,
            st.st_uid & MASK32,
            st.st_gid & MASK32,
            getattr(st, "st_rdev", 0) & MASK64,
            0,
            st.st_size,
            getattr(st, "st_blksize", 0),
            0,
            getattr(st, "st_blocks", 0),
            st.st_atime_ns // 1_000_000_000,
            st.st_atime_ns % 1_000_000_000,
            st.st_mtime_ns // 1_000_000_000,
            st.st_mtime_ns % 1_000_000_000,
            st.st_ctime_ns // 1_000_000_000,
            st.st_ctime_ns % 1_000_000_000,
            0,
            0,
        )
        offset = self._host_offset(addr, len(packed))
        self.memory.data[offset:offset + len(packed)] = packed
        return 0

    def _write(self, fd: int, addr: int, count: int) -> int:
        offset = self._host_offset(addr, count)
        payload = bytes(self.memory.data[offset:offset + count])
        fd = _sext(fd, 32)
        if fd in (1, 2):
            self.out.flush()
        try:
            return os.write(fd, payload) & MASK64
        except OSError:
            return MASK64

    def halt(self, pc: int, code: int) -> None:
        """Stop the program, printing the trap result."""
        code &= MASK64
        if code:
            self.out.write(f"{_RED}HIT BAD TRAP!\n{_RESET}")
        else:
            self.out.write(self.report())
        signed = _sext(code, 64)
        log.info("Program ended at pc %08x, with exit code %d.", pc, signed)
        self.running = False
        self.exit_code = signed

    def report(self) -> str:
        """The good-trap message with performance statistics when profiling."""
        banner = f"{_GREEN}HIT GOOD TRAP!\n{_RESET}"
        profiler = self.profiler
        if profiler is None:
            return banner
        insns = profiler.instruction_count
        cycles = profiler.cycle_count()
        if insns:
            cpi = cycles / insns
        else:
            cpi = float("inf") if cycles else float("nan")
        name = "Multicycle" if profiler.kind is ProfilerKind.MULTICYCLE else "Pipeline"
        parts = [
            banner,
            f"Performance Profiler: {name}\n",
            f"Dynamic instructions: {insns}\n",
            f"Dynamic cycles: {cycles}\n",
            f"CPI: {cpi:.2f}\n",
            profiler.misc_info(),
        ]
        if isinstance(profiler.backend, Cache):
            l1, l2, llc = level_miss_rates(profiler.backend)
            parts.append(f"L1 miss rate: {l1 * 100:.2f}%\n")
            parts.append(f"L2 miss rate: {l2 * 100:.2f}%\n")
            parts.append(f"LLC miss rate: {llc * 100:.2f}%\n")
        return "".join(parts)