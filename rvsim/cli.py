"""Command line for the full-system simulator."""

from __future__ import annotations

import logging
import sys
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Optional

from .cache import build_backend
from .cachesim import UsageError
from .cpu import CPU
from .memory import GuestMemoryError, PhysicalMemory
from .monitor import Monitor
from .perf import create_profiler

CLI_HELP = (
    "Usage: Simulator  --[batch|debug] [OPTIONS] image_path\n"
    "OPTIONS: \n"
    "--mem-trace: trace memory and write to memtrace.out\n"
    "--perf [multicycle|pipeline|pipeline_pro]: set performance profiler\n"
    "--cache: use cache backend\n"
)

MEM_TRACE_FILE = "memtrace.out"

_PERF_MISSING = "--perf option requires an argument."
_MODES = ("--batch", "--debug")

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class _SimOptions:
    mode: str
    image: str
    mem_trace: bool = False
    perf: Optional[str] = None
    cache: bool = False


def parse_args(argv: list[str]) -> _SimOptions:
    """Read the mode, options and image path; raise UsageError on bad usage."""
    args = list(argv)
    if not 2 <= len(args) <= 6:
        raise UsageError("wrong number of arguments")
    mode, image = args[0], args[-1]
    mem_trace = False
    cache = False
    perf: Optional[str] = None
    options = iter(args[1:-1])
    for option in options:
        if option == "--mem-trace":
            mem_trace = True
        elif option == "--perf":
            perf = next(options, None)
            if perf is None:
                raise UsageError(_PERF_MISSING)
        elif option == "--cache":
            cache = True
    if mode not in _MODES:
        raise UsageError(f"unknown mode {mode}")
    return _SimOptions(mode, image, mem_trace, perf, cache)


def main(argv: Optional[list[str]] = None) -> int:
    """Load an image and run it in batch mode or under the debugger."""
    args = sys.argv[1:] if argv is None else list(argv)
    try:
        opts = parse_args(args)
    except UsageError as exc:
        if str(exc) == _PERF_MISSING:
            print(f"Error: {_PERF_MISSING}")
        print(CLI_HELP, end="")
        return 1

    memory = PhysicalMemory()
    try:
        memory.load_image(opts.image)
    except GuestMemoryError as exc:
        log.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    backend = build_backend(opts.cache)
    try:
        profiler = create_profiler(opts.perf, backend)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    with ExitStack() as stack:
        if opts.mem_trace:
            trace = stack.enter_context(open(MEM_TRACE_FILE, "w", encoding="ascii"))
            memory.enable_trace(trace)
        cpu = CPU(memory, profiler, sys.stdout)
        try:
            if opts.mode == "--batch":
                cpu.run()
                return 0
            return Monitor(cpu).loop(sys.stdin, sys.stdout)
        except GuestMemoryError as exc:
            log.error("%s", exc)
            print(f"Error: {exc}", file=sys.stderr)
            return 1