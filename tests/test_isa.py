import pytest

from rvsim.isa import DecodedInstruction, InsType, Op, empty_slot

ALL_ONES = (1 << 64) - 1


def branch(op, a, b):
    return DecodedInstruction(op=op, kind=InsType.SB, rs1_val=a, rs2_val=b, imm=-8)


@pytest.mark.parametrize("op", [Op.LB, Op.LH, Op.LW, Op.LD, Op.LBU, Op.LHU])
def test_loads_are_loads(op):
    assert DecodedInstruction(op=op, kind=InsType.I).is_load() is True


@pytest.mark.parametrize("op", [Op.LWU, Op.ADD, Op.SD])
def test_other_ops_are_not_loads(op):
    assert DecodedInstruction(op=op, kind=InsType.I).is_load() is False


def test_immediate_present_for_i_type():
    ins = DecodedInstruction(op=Op.ADDI, kind=InsType.I, imm=-12, rd=3, rs1=4)
    assert ins.immediate() == -12


def test_immediate_absent_for_r_and_n():
    assert DecodedInstruction(op=Op.ADD, kind=InsType.R, imm=7).immediate() is None
    assert empty_slot(Op.NOP).immediate() is None


def test_registers_of_r_type():
    ins = DecodedInstruction(op=Op.ADD, kind=InsType.R, rd=5, rs1=6, rs2=7)
    assert (ins.dest(), ins.source1(), ins.source2()) == (5, 6, 7)


def test_store_has_no_destination():
    ins = DecodedInstruction(op=Op.SW, kind=InsType.S, rd=9, rs1=2, rs2=3)
    assert ins.dest() is None
    assert ins.source1() == 2
    assert ins.source2() == 3


def test_upper_immediate_has_no_sources():
    ins = DecodedInstruction(op=Op.LUI, kind=InsType.U, rd=8, rs1=1, rs2=2)
    assert ins.source1() is None
    assert ins.source2() is None
    assert ins.dest() == 8


def test_branch_sources_report_values_truncated():
    ins = DecodedInstruction(
        op=Op.BEQ, kind=InsType.SB, rs1=1, rs2=2, rs1_val=(1 << 32) + 5, rs2_val=9
    )
    assert ins.source1() == 5
    assert ins.source2() == 9
    assert ins.dest() is None


def test_beq_and_bne():
    assert branch(Op.BEQ, 4, 4).branch_taken() is True
    assert branch(Op.BEQ, 4, 5).branch_taken() is False
    assert branch(Op.BNE, 4, 5).branch_taken() is True


def test_signed_versus_unsigned_comparison():
    assert branch(Op.BLT, ALL_ONES, 0).branch_taken() is True
    assert branch(Op.BLTU, ALL_ONES, 0).branch_taken() is False
    assert branch(Op.BGE, ALL_ONES, 0).branch_taken() is False
    assert branch(Op.BGEU, ALL_ONES, 0).branch_taken() is True


@pytest.mark.parametrize("a,b", [(0, 0), (1, 2), (ALL_ONES, 3)])
def test_blt_and_bge_are_complementary(a, b):
    assert branch(Op.BLT, a, b).branch_taken() != branch(Op.BGE, a, b).branch_taken()
    assert branch(Op.BLTU, a, b).branch_taken() != branch(Op.BGEU, a, b).branch_taken()


def test_branch_taken_none_for_non_branch():
    assert DecodedInstruction(op=Op.ADD, kind=InsType.R).branch_taken() is None
    assert DecodedInstruction(op=Op.ADD, kind=InsType.SB).branch_taken() is None


def test_empty_slot():
    slot = empty_slot(Op.UNK)
    assert slot.op is Op.UNK
    assert slot.kind is InsType.N
    assert slot.dest() is None
    assert slot.source1() is None