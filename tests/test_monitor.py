import io

import pytest

from rvsim.cpu import CPU
from rvsim.memory import PhysicalMemory
from rvsim.monitor import (
    MAX_BREAK_POINTS,
    CommandType,
    Monitor,
    parse_command,
)

BASE = 0x80000000
ADDI_X1_5 = 0x00500093
EBREAK = 0x00100073


def make_monitor(words, out=None):
    out = out if out is not None else io.StringIO()
    memory = PhysicalMemory(size=4096)
    for i, word in enumerate(words):
        memory.write(BASE + 4 * i, 4, word)
    cpu = CPU(memory, out=out)
    return Monitor(cpu, out=out), out


@pytest.mark.parametrize(
    "line, kind",
    [
        ("help", CommandType.HELP),
        ("c", CommandType.CONTINUE),
        ("q\n", CommandType.QUIT),
        ("d", CommandType.DELETE),
        ("info r", CommandType.INFO),
        ("info x", CommandType.INVALID),
        ("info", CommandType.INVALID),
        ("x 4", CommandType.INVALID),
        ("b", CommandType.INVALID),
        ("foo", CommandType.INVALID),
        ("", CommandType.INVALID),
    ],
)
def test_parse_command_types(line, kind):
    assert parse_command(line).type is kind


def test_parse_step_counts():
    assert parse_command("si").step_n == 1
    assert parse_command("si 5\n").step_n == 5
    assert parse_command("si abc").step_n == 0


def test_parse_examine_and_break_addresses():
    cmd = parse_command("x 4 80000000")
    assert cmd.type is CommandType.EXAMINE
    assert (cmd.nbytes, cmd.addr) == (4, 0x80000000)
    brk = parse_command("b 0x80000004")
    assert brk.type is CommandType.BREAK
    assert brk.addr == 0x80000004


def test_step_executes_instructions():
    monitor, _ = make_monitor([ADDI_X1_5, EBREAK])
    assert monitor.step(1) == 1
    assert monitor.cpu.regs[1] == 5
    assert monitor.cpu.pc == BASE + 4


def test_step_stops_when_program_ends():
    monitor, out = make_monitor([ADDI_X1_5, EBREAK])
    assert monitor.step(10) == 2
    assert monitor.cpu.running is False
    assert "HIT GOOD TRAP!" in out.getvalue()


def test_registers_listing():
    monitor, _ = make_monitor([ADDI_X1_5, EBREAK])
    monitor.step(1)
    lines = monitor.registers().splitlines()
    assert len(lines) == 17
    assert lines[0] == f"PC  : 0x{BASE + 4:016x}"
    assert lines[1].startswith("x0  : 0x0000000000000000\tx1  : 0x0000000000000005")


def test_examine_groups_four_words_per_line():
    monitor, _ = make_monitor([ADDI_X1_5, EBREAK])
    text = monitor.examine(BASE, 5)
    assert text == (
        "0x0000000080000000 : 00500093 00100073 00000000 00000000\n"
        "0x0000000080000010 : 00000000\n"
    )


def test_examine_below_memory_shows_nothing():
    monitor, _ = make_monitor([])
    assert monitor.examine(BASE - 4, 3) == ""


def test_examine_past_end_skips_missing_words():
    monitor, _ = make_monitor([])
    text = monitor.examine(BASE + 4096 - 4, 3)
    assert len(text.splitlines()) == 1
    assert text.count(" 00000000") == 1


def test_breakpoint_limit():
    monitor, _ = make_monitor([])
    results = [monitor.add_breakpoint(BASE + 4 * i) for i in range(MAX_BREAK_POINTS + 1)]
    assert results[:-1] == [True] * MAX_BREAK_POINTS
    assert results[-1] is False
    assert len(monitor.breakpoints) == MAX_BREAK_POINTS


def test_delete_breakpoints():
    monitor, _ = make_monitor([])
    monitor.add_breakpoint(BASE)
    monitor.add_breakpoint(BASE + 4)
    monitor.delete_breakpoints()
    assert monitor.breakpoints == []


def test_resume_stops_at_breakpoint():
    monitor, _ = make_monitor([ADDI_X1_5, ADDI_X1_5, EBREAK])
    monitor.add_breakpoint(BASE + 8)
    assert monitor.resume() is True
    assert monitor.cpu.pc == BASE + 8
    assert monitor.cpu.running is True


def test_resume_runs_to_end_without_breakpoints():
    monitor, _ = make_monitor([ADDI_X1_5, EBREAK])
    assert monitor.resume() is False
    assert monitor.cpu.running is False


def test_handle_info_prints_registers():
    monitor, out = make_monitor([ADDI_X1_5, EBREAK])
    assert monitor.handle("info r\n") is True
    assert out.getvalue() == monitor.registers()


def test_handle_invalid_prints_help():
    monitor, out = make_monitor([])
    assert monitor.handle("bogus") is True
    assert out.getvalue() == monitor.help_text()


def test_handle_quit_ends_session():
    monitor, _ = make_monitor([ADDI_X1_5, EBREAK])
    assert monitor.handle("q") is False
    assert monitor.cpu.running is True


def test_loop_runs_until_program_ends():
    out = io.StringIO()
    monitor, _ = make_monitor([ADDI_X1_5, EBREAK], out)
    assert monitor.loop(io.StringIO("si 2\nq\n"), out) == 0
    text = out.getvalue()
    assert text.startswith(monitor.help_text() + "> ")
    assert "HIT GOOD TRAP!" in text
    assert monitor.cpu.running is False


def test_loop_quit_leaves_program_running():
    out = io.StringIO()
    monitor, _ = make_monitor([ADDI_X1_5, EBREAK], out)
    assert monitor.loop(io.StringIO("q\n"), out) == 0
    assert monitor.cpu.running is True
    assert monitor.cpu.pc == BASE


def test_loop_end_of_input():
    out = io.StringIO()
    monitor, _ = make_monitor([], out)
    assert monitor.loop(io.StringIO(""), out) == 0
    assert out.getvalue().endswith("> ")


def test_loop_rejects_overlong_command():
    out = io.StringIO()
    monitor, _ = make_monitor([ADDI_X1_5, EBREAK], out)
    assert monitor.loop(io.StringIO("si " + "1" * 70 + "\n"), out) == 1
    assert monitor.cpu.pc == BASE