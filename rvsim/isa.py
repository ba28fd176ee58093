"""RV64IM instruction identifiers and the decoded-instruction record."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Optional

MASK64 = (1 << 64) - 1


def _as_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value & 0x80000000 else value


def _as_int64(value: int) -> int:
    value &= MASK64
    return value - (1 << 64) if value & (1 << 63) else value


class Op(enum.Enum):
    """Every instruction the simulator knows, plus pipeline bubbles."""

    LB = enum.auto()
    LH = enum.auto()
    LW = enum.auto()
    LD = enum.auto()
    LBU = enum.auto()
    LHU = enum.auto()
    LWU = enum.auto()
    SB = enum.auto()
    SH = enum.auto()
    SW = enum.auto()
    SD = enum.auto()
    ADDI = enum.auto()
    SLTI = enum.auto()
    SLTIU = enum.auto()
    ANDI = enum.auto()
    ORI = enum.auto()
    XORI = enum.auto()
    ADDIW = enum.auto()
    SLLI = enum.auto()
    SRLI = enum.auto()
    SRAI = enum.auto()
    SLLIW = enum.auto()
    SRLIW = enum.auto()
    SRAIW = enum.auto()
    ADD = enum.auto()
    SUB = enum.auto()
    SLT = enum.auto()
    SLTU = enum.auto()
    AND = enum.auto()
    OR = enum.auto()
    XOR = enum.auto()
    SLL = enum.auto()
    SRL = enum.auto()
    SRA = enum.auto()
    ADDW = enum.auto()
    SUBW = enum.auto()
    SLLW = enum.auto()
    SRLW = enum.auto()
    SRAW = enum.auto()
    BEQ = enum.auto()
    BNE = enum.auto()
    BLT = enum.auto()
    BGE = enum.auto()
    BLTU = enum.auto()
    BGEU = enum.auto()
    JAL = enum.auto()
    JALR = enum.auto()
    LUI = enum.auto()
    AUIPC = enum.auto()
    ECALL = enum.auto()
    EBREAK = enum.auto()
    MUL = enum.auto()
    MULH = enum.auto()
    MULHSU = enum.auto()
    MULHU = enum.auto()
    DIV = enum.auto()
    DIVU = enum.auto()
    REM = enum.auto()
    REMU = enum.auto()
    MULW = enum.auto()
    DIVW = enum.auto()
    DIVUW = enum.auto()
    REMW = enum.auto()
    REMUW = enum.auto()
    NOP = enum.auto()
    UNK = enum.auto()


class InsType(enum.Enum):
    """Encoding format of an instruction."""

    I = "I"  # noqa: E741
    U = "U"
    S = "S"
    SB = "SB"
    J = "J"
    R = "R"
    N = "N"


# LWU is deliberately absent: it is not treated as a load for hazard checks.
_LOAD_OPS = frozenset({Op.LB, Op.LH, Op.LW, Op.LBU, Op.LHU, Op.LD})

_BRANCH_TESTS: dict[Op, Callable[[int, int], bool]] = {
    Op.BEQ: lambda a, b: a == b,
    Op.BNE: lambda a, b: a != b,
    Op.BLT: lambda a, b: _as_int64(a) < _as_int64(b),
    Op.BGE: lambda a, b: _as_int64(a) >= _as_int64(b),
    Op.BLTU: lambda a, b: a < b,
    Op.BGEU: lambda a, b: a >= b,
}


@dataclass(frozen=True)
class DecodedInstruction:
    """An instruction after decoding, with the register values it read."""

    op: Op
    kind: InsType = InsType.N
    pc: int = 0
    rd: int = 0
    rs1: int = 0
    rs2: int = 0
    rs1_val: int = 0
    rs2_val: int = 0
    imm: int = 0

    def is_load(self) -> bool:
        return self.op in _LOAD_OPS

    def immediate(self) -> Optional[int]:
        if self.kind in (InsType.I, InsType.U, InsType.S, InsType.SB, InsType.J):
            return self.imm
        return None

    def source1(self) -> Optional[int]:
        """First source register; branches report the register's value instead."""
        if self.kind in (InsType.I, InsType.S, InsType.R):
            return self.rs1
        if self.kind is InsType.SB:
            return _as_int32(self.rs1_val)
        return None

    def source2(self) -> Optional[int]:
        """Second source register; branches report the register's value instead."""
        if self.kind in (InsType.R, InsType.S):
            return self.rs2
        if self.kind is InsType.SB:
            return _as_int32(self.rs2_val)
        return None

    def dest(self) -> Optional[int]:
        if self.kind in (InsType.I, InsType.U, InsType.R, InsType.J):
            return self.rd
        return None

    def branch_taken(self) -> Optional[bool]:
        """Whether a conditional branch is taken, or None for other instructions."""
        if self.kind is not InsType.SB:
            return None
        test = _BRANCH_TESTS.get(self.op)
        if test is None:
            return None
        return test(self.rs1_val & MASK64, self.rs2_val & MASK64)


def empty_slot(op: Op) -> DecodedInstruction:
    """A format-less placeholder, used for empty or bubbled pipeline stages."""
    return DecodedInstruction(op=op, kind=InsType.N)