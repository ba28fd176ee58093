"""Cycle-level performance profilers: multicycle and five-stage pipeline models."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from typing import Optional

from .cache import MASK64, CacheLevel
from .isa import DecodedInstruction, Op, empty_slot


class ProfilerKind(enum.IntEnum):
    NONE = 0
    MULTICYCLE = 1
    PIPELINE = 2


class PredictorState(enum.Enum):
    NONE = "none"
    STRONG_TAKEN = "strong_taken"
    WEAK_TAKEN = "weak_taken"
    WEAK_NOT_TAKEN = "weak_not_taken"
    STRONG_NOT_TAKEN = "strong_not_taken"


_LOADS = (Op.LB, Op.LH, Op.LW, Op.LD, Op.LBU, Op.LHU, Op.LWU)
_STORES = (Op.SB, Op.SH, Op.SW, Op.SD)
_ALU = (
    Op.ADDI, Op.SLTI, Op.SLTIU, Op.ANDI, Op.ORI, Op.XORI,
    Op.ADDIW, Op.SLLI, Op.SRLI, Op.SRAI, Op.SLLIW, Op.SRLIW, Op.SRAIW,
    Op.ADD, Op.SUB, Op.SLT, Op.SLTU, Op.AND, Op.OR, Op.XOR,
    Op.SLL, Op.SRL, Op.SRA, Op.ADDW, Op.SUBW, Op.SLLW, Op.SRLW, Op.SRAW,
)
_BRANCHES = (Op.BEQ, Op.BNE, Op.BLT, Op.BGE, Op.BLTU, Op.BGEU)
_WIDE_MULS = (Op.MUL, Op.MULH, Op.MULHSU, Op.MULHU)
_DIVS = (Op.DIV, Op.DIVU, Op.REM, Op.REMU, Op.DIVW, Op.DIVUW, Op.REMW, Op.REMUW)

# Total cycles per instruction in the multicycle model. Unknown instructions
# carry a sentinel that throws the count far out of range.
_MULTICYCLE_CYCLES: dict[Op, int] = {
    **dict.fromkeys(_LOADS, 5),
    **dict.fromkeys(_STORES, 4),
    **dict.fromkeys(_ALU, 4),
    **dict.fromkeys(_BRANCHES, 3),
    Op.JAL: 3,
    Op.JALR: 4,
    Op.LUI: 4,
    Op.AUIPC: 4,
    **dict.fromkeys(_WIDE_MULS, 5),
    Op.MULW: 4,
    **dict.fromkeys(_DIVS, 43),
    Op.ECALL: 4,
    Op.EBREAK: 4,
    Op.NOP: 1,
    Op.UNK: -(1 << 63),
}

# Execute-stage cycles per instruction in the pipeline model.
_PIPELINE_EXEC_CYCLES: dict[Op, int] = {
    **{op: 1 for op in Op},
    **dict.fromkeys(_WIDE_MULS, 2),
    **dict.fromkeys(_DIVS, 40),
    Op.UNK: 0,
}

_FUSABLE_DIVISIONS = frozenset(
    {(Op.DIV, Op.REM), (Op.DIVU, Op.REMU), (Op.DIVW, Op.REMW), (Op.DIVUW, Op.REMUW)}
)

_ACCESS_SIZES: dict[Op, int] = {
    Op.LB: 1, Op.LBU: 1, Op.LH: 2, Op.LHU: 2, Op.LW: 4, Op.LWU: 4, Op.LD: 8,
    Op.SB: 1, Op.SH: 2, Op.SW: 4, Op.SD: 8,
}

_EMPTY = empty_slot(Op.UNK)
_BUBBLE = empty_slot(Op.NOP)


def _shares_division(first: DecodedInstruction, second: DecodedInstruction) -> bool:
    """A division followed by the matching remainder of the same operands."""
    return (
        (first.op, second.op) in _FUSABLE_DIVISIONS
        and first.rs1 == second.rs1
        and first.rs2 == second.rs2
        and first.rd != second.rs1
        and first.rd != second.rs2
    )


def _is_negative64(value: int) -> bool:
    return value < 0 or bool(value & (1 << 63))


def memory_access_cycles(backend: CacheLevel, ins: DecodedInstruction) -> int:
    """Cycles spent in the memory stage: the backend latency for loads and stores, else 1."""
    size = _ACCESS_SIZES.get(ins.op)
    if size is None:
        return 1
    addr = (ins.rs1_val + ins.imm) & MASK64
    if ins.op in _STORES:
        return backend.write(addr, size)
    return backend.read(addr, size)


class PipelineStages:
    """The IF, ID, EX, MEM and WB stages of an in-order pipeline without forwarding."""

    PHASES = 5

    def __init__(self, backend: CacheLevel):
        self.backend = backend
        self.stages: list[DecodedInstruction] = [_EMPTY] * self.PHASES
        self.ex_left = 0
        self.mem_left = 0
        self.data_hazard_stall = 0
        self.control_hazard_stall = 0

    @property
    def if_stage(self) -> DecodedInstruction:
        return self.stages[0]

    @property
    def id_stage(self) -> DecodedInstruction:
        return self.stages[1]

    @property
    def ex_stage(self) -> DecodedInstruction:
        return self.stages[2]

    @property
    def mem_stage(self) -> DecodedInstruction:
        return self.stages[3]

    @property
    def wb_stage(self) -> DecodedInstruction:
        return self.stages[4]

    def _check_idle(self) -> None:
        if self.ex_left > 0 or self.mem_left > 0:
            raise RuntimeError("hazard check while a stage is still busy")

    def _if_sources(self) -> tuple[int, int]:
        head = self.if_stage
        return head.source1() or 0, head.source2() or 0

    def is_hazard(self) -> bool:
        """Whether the instruction waiting in IF must stall this cycle."""
        self._check_idle()
        sources = self._if_sources()
        for stage in (self.id_stage, self.ex_stage):
            rd = stage.dest()
            if rd and rd in sources:
                self.data_hazard_stall += 1
                return True
        if self.id_stage.op in (Op.JALR, Op.JAL):
            self.data_hazard_stall += 1
            return True
        for stage in (self.id_stage, self.ex_stage):
            if stage.branch_taken():
                self.control_hazard_stall += 1
                return True
        return False

    def next_clock(self) -> bool:
        """Advance one cycle; return whether a new instruction can be issued."""
        self.ex_left -= 1
        self.mem_left -= 1
        if self.ex_left <= 0 and self.mem_left <= 0:
            if self.is_hazard():
                self.stages = [self.stages[0], _BUBBLE, *self.stages[1:4]]
            else:
                self.stages = [_EMPTY, *self.stages[:4]]
            self.ex_left = _PIPELINE_EXEC_CYCLES.get(self.ex_stage.op, 0)
            self.mem_left = memory_access_cycles(self.backend, self.mem_stage)
            if _shares_division(self.mem_stage, self.ex_stage):
                # The remainder reuses the division's work.
                self.ex_left = 1
        return self.can_issue()

    def flush(self) -> int:
        """Run until every stage is empty; return the cycles that took."""
        cycles = 0
        while any(stage.op is not Op.UNK for stage in self.stages):
            cycles += 1
            self.next_clock()
        return cycles

    def issue(self, ins: DecodedInstruction) -> None:
        if not self.can_issue():
            raise RuntimeError("cannot issue: the fetch stage is occupied")
        self.stages[0] = ins

    def can_issue(self) -> bool:
        return self.if_stage.op is Op.UNK


_TAKEN_STATES = frozenset({PredictorState.STRONG_TAKEN, PredictorState.WEAK_TAKEN})

_ON_TAKEN = {
    PredictorState.NONE: PredictorState.NONE,
    PredictorState.WEAK_NOT_TAKEN: PredictorState.WEAK_TAKEN,
    PredictorState.WEAK_TAKEN: PredictorState.STRONG_TAKEN,
    PredictorState.STRONG_TAKEN: PredictorState.STRONG_TAKEN,
    PredictorState.STRONG_NOT_TAKEN: PredictorState.WEAK_NOT_TAKEN,
}

_ON_NOT_TAKEN = {
    PredictorState.NONE: PredictorState.NONE,
    PredictorState.WEAK_NOT_TAKEN: PredictorState.STRONG_NOT_TAKEN,
    PredictorState.WEAK_TAKEN: PredictorState.WEAK_NOT_TAKEN,
    PredictorState.STRONG_TAKEN: PredictorState.WEAK_TAKEN,
    PredictorState.STRONG_NOT_TAKEN: PredictorState.STRONG_NOT_TAKEN,
}


class PredictingPipelineStages(PipelineStages):
    """A pipeline with forwarding and a two-bit branch predictor per PC slot."""

    PREDICTOR_TABLE_SIZE = 1024

    def __init__(self, backend: CacheLevel, table_size: int = PREDICTOR_TABLE_SIZE):
        if table_size <= 0 or table_size & (table_size - 1):
            raise ValueError("predictor table size must be a power of two")
        super().__init__(backend)
        self.predictor_table = [PredictorState.NONE] * table_size

    def _table_index(self, pc: int) -> int:
        return (pc >> 2) & (len(self.predictor_table) - 1)

    def is_hazard(self) -> bool:
        """Stall only on load-use, JALR and mispredicted branches."""
        self._check_idle()
        sources = self._if_sources()
        producer = self.id_stage
        rd = producer.dest() if producer.is_load() else None
        if rd and rd in sources:
            self.data_hazard_stall += 1
            return True
        if producer.op is Op.JALR:
            self.data_hazard_stall += 1
            return True
        # The prediction is only trained once the branch reaches EX.
        for stage, learn in ((self.id_stage, False), (self.ex_stage, True)):
            taken = stage.branch_taken()
            if taken is None:
                continue
            idx = self._table_index(stage.pc)
            state = self.predictor_table[idx]
            if state is PredictorState.NONE:
                state = (
                    PredictorState.WEAK_TAKEN
                    if _is_negative64(stage.imm)
                    else PredictorState.WEAK_NOT_TAKEN
                )
                self.predictor_table[idx] = state
            predicted = state in _TAKEN_STATES
            if learn:
                self.predictor_table[idx] = (_ON_TAKEN if taken else _ON_NOT_TAKEN)[state]
            if predicted != taken:
                self.control_hazard_stall += 1
                return True
        return False


class Profiler(ABC):
    """Counts instructions and estimates the cycles they take."""

    def __init__(self, kind: ProfilerKind, backend: CacheLevel):
        self.kind = kind
        self.backend = backend
        self.instruction_count = 0
        self._cycles = 0

    @abstractmethod
    def record(self, ins: DecodedInstruction) -> None:
        """Account for one executed instruction."""

    def cycle_count(self) -> int:
        return self._cycles

    def misc_info(self) -> str:
        """Model-specific statistics, one per line."""
        return ""


class MulticycleProfiler(Profiler):
    """Each instruction takes a fixed number of cycles plus its memory latency."""

    def __init__(self, backend: CacheLevel):
        super().__init__(ProfilerKind.MULTICYCLE, backend)
        self._last = _EMPTY

    def _add(self, cycles: int) -> None:
        self._cycles = (self._cycles + cycles) & MASK64

    def record(self, ins: DecodedInstruction) -> None:
        cost = _MULTICYCLE_CYCLES.get(ins.op)
        if cost is None:
            self._add(1)
        else:
            self._add(cost)
            if _shares_division(self._last, ins):
                self._add(-40)
        self._add(memory_access_cycles(self.backend, ins) - 1)
        self.instruction_count += 1
        self._last = ins


class PipelineProfiler(Profiler):
    """Feeds instructions through a five-stage pipeline model."""

    def __init__(self, backend: CacheLevel, pro: bool = False):
        super().__init__(ProfilerKind.PIPELINE, backend)
        self.stages = PredictingPipelineStages(backend) if pro else PipelineStages(backend)

    def record(self, ins: DecodedInstruction) -> None:
        while not self.stages.can_issue():
            self._cycles += 1
            self.stages.next_clock()
        self.stages.issue(ins)
        self.instruction_count += 1

    def cycle_count(self) -> int:
        """Drain the pipeline and return the total cycles so far."""
        self._cycles += self.stages.flush()
        return self._cycles

    def misc_info(self) -> str:
        return (
            f"Control Hazard Stall Cycles: {self.stages.control_hazard_stall}\n"
            f"Data Hazard Stall Cycles: {self.stages.data_hazard_stall}\n"
        )


def create_profiler(arch: Optional[str], backend: CacheLevel) -> Optional[Profiler]:
    """The profiler named by `arch`, or None when no profiling is wanted."""
    if arch is None:
        return None
    if arch == "multicycle":
        return MulticycleProfiler(backend)
    if arch == "pipeline":
        return PipelineProfiler(backend, pro=False)
    if arch == "pipeline_pro":
        return PipelineProfiler(backend, pro=True)
    raise ValueError(f"Unknown performance profiler: {arch}")