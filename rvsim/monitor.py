"""Interactive debugger: single stepping, breakpoints and memory inspection."""

from __future__ import annotations

import enum
import logging
import re
import sys
from dataclasses import dataclass
from typing import Optional, TextIO

from .cpu import CPU
from .memory import GuestMemoryError

BUFFER_SIZE = 64
MAX_BREAK_POINTS = 10
MASK64 = (1 << 64) - 1

HELP_MESSAGE = (
    "help: print this help message\n"
    "c: continue the stopped program\n"
    "q: exit the simulator\n"
    "si [N]: single step N times (default 1)\n"
    "info r: print register status\n"
    "b ADDR(Hex): set a breakpoint at ADDR\n"
    "d: delete all breakpoints"
    "x N ADDR(Hex): print 4N bytes at ADDR of the memory. "
)

_DECIMAL = re.compile(r"\s*([+-]?\d+)")
_HEX = re.compile(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)")

log = logging.getLogger(__name__)


class CommandType(enum.Enum):
    HELP = "help"
    CONTINUE = "continue"
    QUIT = "quit"
    STEP = "step"
    INFO = "info"
    EXAMINE = "examine"
    BREAK = "break"
    DELETE = "delete"
    INVALID = "invalid"


@dataclass(frozen=True)
class Command:
    """A parsed debugger command with its arguments."""

    type: CommandType
    step_n: int = 1
    nbytes: int = 0
    addr: int = 0


def _atoi(text: str) -> int:
    match = _DECIMAL.match(text)
    return int(match.group(1)) if match else 0


def _hex_value(text: str) -> int:
    match = _HEX.match(text)
    if match is None:
        return 0
    value = int(match.group(2), 16)
    if value > MASK64:
        return MASK64
    return (-value) & MASK64 if match.group(1) == "-" else value


def parse_command(line: str) -> Command:
    """Turn one line of debugger input into a command."""
    tokens = line.split()
    if not tokens:
        return Command(CommandType.INVALID)
    head, rest = tokens[0], tokens[1:]
    if head == "help":
        return Command(CommandType.HELP)
    if head == "c":
        return Command(CommandType.CONTINUE)
    if head == "q":
        return Command(CommandType.QUIT)
    if head == "si":
        return Command(CommandType.STEP, step_n=_atoi(rest[0]) if rest else 1)
    if head == "info":
        if rest and rest[0] == "r":
            return Command(CommandType.INFO)
        return Command(CommandType.INVALID)
    if head == "x":
        if len(rest) < 2:
            return Command(CommandType.INVALID)
        return Command(CommandType.EXAMINE, nbytes=_atoi(rest[0]), addr=_hex_value(rest[1]))
    if head == "b":
        if not rest:
            return Command(CommandType.INVALID)
        return Command(CommandType.BREAK, addr=_hex_value(rest[0]))
    if head == "d":
        return Command(CommandType.DELETE)
    return Command(CommandType.INVALID)


class Monitor:
    """Drives a CPU from debugger commands."""

    def __init__(self, cpu: CPU, out: Optional[TextIO] = None):
        self.cpu = cpu
        self.out = out if out is not None else sys.stdout
        self.breakpoints: list[int] = []

    def help_text(self) -> str:
        # Words are always assembled from guest bytes in little-endian order.
        return HELP_MESSAGE + "Show in little endian\n"

    def handle(self, line: str) -> bool:
        """Carry out one command; return whether the session goes on."""
        cmd = parse_command(line)
        kind = cmd.type
        if kind is CommandType.HELP:
            self.out.write(self.help_text())
        elif kind is CommandType.CONTINUE:
            self.resume()
        elif kind is CommandType.QUIT:
            return False
        elif kind is CommandType.STEP:
            self.step(cmd.step_n)
        elif kind is CommandType.INFO:
            self.out.write(self.registers())
        elif kind is CommandType.EXAMINE:
            self.out.write(self.examine(cmd.addr, cmd.nbytes))
            self.out.flush()
        elif kind is CommandType.BREAK:
            self.add_breakpoint(cmd.addr)
        elif kind is CommandType.DELETE:
            self.delete_breakpoints()
        else:
            log.info("Invalid Command")
            self.out.write(self.help_text())
        return self.cpu.running

    def step(self, n: int) -> int:
        """Execute up to `n` instructions; return how many ran."""
        count = 0
        for _ in range(n):
            if not self.cpu.running:
                break
            count += 1
            self.cpu.step()
        log.info("Excute %d steps successfully. PC:0x%016x", count, self.cpu.pc)
        return count

    def registers(self) -> str:
        """The program counter and all registers, two per line."""
        regs = self.cpu.regs
        lines = [f"PC  : 0x{self.cpu.pc & MASK64:016x}\n"]
        for i in range(0, len(regs), 2):
            lines.append(
                f"x{i:<2d} : 0x{regs[i]:016x}\tx{i + 1:<2d} : 0x{regs[i + 1]:016x}\n"
            )
        return "".join(lines)

    def examine(self, addr: int, count: int) -> str:
        """Up to `count` words from `addr`, four to a line."""
        memory = self.cpu.memory
        words = memory.view(addr, max(count, 0))
        if addr < memory.base:
            words = [None] * len(words)
        lines: list[str] = []
        current = ""
        shown = 0
        for n, word in enumerate(words):
            if word is None:
                continue
            if shown % 4 == 0:
                if current:
                    lines.append(current)
                current = f"0x{addr + 4 * n:016x} :"
            current += f" {word:08x}"
            shown += 1
        if current:
            lines.append(current)
        if any(word is None for word in words):
            log.info("Try to read inaccessible memory")
        return "".join(line + "\n" for line in lines)

    def add_breakpoint(self, addr: int) -> bool:
        """Stop execution at `addr`; False once the breakpoint table is full."""
        if len(self.breakpoints) >= MAX_BREAK_POINTS:
            log.warning(
                "Have reached max breakpoints. Adding 0x%016x breakpoint failed.", addr
            )
            return False
        self.breakpoints.append(addr)
        log.warning("Adding 0x%016x breakpoint succeeded.", addr)
        return True

    def delete_breakpoints(self) -> None:
        self.breakpoints.clear()
        log.info("Break Points Deleted")

    def resume(self) -> bool:
        """Run until a breakpoint or the end; True if a breakpoint was hit."""
        while self.cpu.running:
            self.cpu.step()
            if self.cpu.pc in self.breakpoints:
                log.info("Hit breakpoints 0x%016x.", self.cpu.pc)
                return True
        return False

    def loop(self, stdin: TextIO, stdout: TextIO) -> int:
        """Read and run commands until quit, end of input or program exit."""
        self.out = stdout
        stdout.write(self.help_text())
        while True:
            stdout.write("> ")
            stdout.flush()
            line = stdin.readline()
            if not line:
                return 0
            too_long = len(line) >= BUFFER_SIZE or (
                len(line) == BUFFER_SIZE - 1 and not line.endswith("\n")
            )
            if too_long:
                log.error("The command is too long for a buffer of %d bytes", BUFFER_SIZE)
                return 1
            try:
                keep_going = self.handle(line)
            except GuestMemoryError as exc:
                log.error("%s", exc)
                keep_going = self.cpu.running
            if not keep_going:
                return 0