# rvsim

A simulator for 64-bit RISC-V programs (RV64I with the M extension). It
runs a flat binary image copied to the start of a 128 MiB guest memory at
`0x80000000`, with execution starting at that address, and can at the same
time:

- count cycles with a **multicycle** model, a five-stage **pipeline** model
  without forwarding, or a pipeline with forwarding and a two-bit branch
  predictor (**pipeline_pro**);
- send the loads and stores seen by the performance model through a
  three-level cache hierarchy (L1, L2, LLC in front of DRAM) and report the
  miss rate of each level;
- write a trace of every memory read and write to `memtrace.out`.

There is also an interactive debugger with single stepping, breakpoints,
register dumps and memory inspection, and two stand-alone cache simulators
that replay memory-access traces.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Running a program

```
rvsim --batch [OPTIONS] image.bin
rvsim --debug [OPTIONS] image.bin
```

Options:

| option | effect |
| --- | --- |
| `--mem-trace` | record every memory read and write in `memtrace.out` |
| `--perf multicycle\|pipeline\|pipeline_pro` | choose the performance model |
| `--cache` | use the cache hierarchy as the memory backend of the performance model |

A program stops on `ebreak`. Exit code 0 in `a0` prints `HIT GOOD TRAP!`;
anything else prints `HIT BAD TRAP!`. An unknown instruction or an
unsupported `ecall` also stops the program with a bad trap. With a
performance model, the good trap also prints the instruction count, cycle
count and CPI, hazard stall cycles for the pipeline models, and per-level
miss rates when `--cache` is given:

```
rvsim --batch --perf pipeline --cache build/quicksort.bin
```

Each trace line has the form `r 0x<address> <size> <value>` or
`w 0x<address> <size> <value>`, the value in hexadecimal.

The `ecall` instruction supports the `write` (64), `fstat` (80) and `brk`
(214) system calls, selected by `a7`; that is enough for simple output such
as `puts`.

### Debugger commands

In `--debug` mode the simulator prints the command list and shows a `>`
prompt:

| command | effect |
| --- | --- |
| `help` | list the commands |
| `c` | continue until the next breakpoint or the end |
| `q` | leave the simulator |
| `si [N]` | execute N instructions (default 1) |
| `info r` | show the PC and all registers |
| `b ADDR` | set a breakpoint at a hexadecimal address (at most 10) |
| `d` | delete all breakpoints |
| `x N ADDR` | show N 32-bit words starting at a hexadecimal address, four per line |

An unrecognised command prints the command list again. The session ends on
`q`, at the end of input, or when the program halts.

## Cache simulators

Both tools read a trace with one access per line: an `r` or `w` followed by
a hexadecimal address, such as `r 0x80001000`. The lines written by
`--mem-trace` are accepted as they are.

A single configurable cache in front of main memory:

```
rvsim-cachesim --WriteBack --WriteAllocate --LRU 32768 64 8 memtrace.out
```

The arguments are the write policy (`--WriteBack` or `--WriteThrough`), the
write-miss policy (`--WriteAllocate` or `--NoWriteAllocate`), the eviction
policy (`--LRU`), then cache size in bytes, block size in bytes and
associativity in ways (all powers of two), and finally the trace. It prints
read and write counts, misses and the total latency.

A two-level hierarchy for comparing optimisations:

```
rvsim-cachelab memtrace.out [--opt1|--opt2|--opt3|--opt4|--opt5]
```

| option | hierarchy |
| --- | --- |
| none | plain L1 and L2 |
| `--opt1` | next-line prefetching at both levels |
| `--opt2` | non-blocking caches with miss status holding registers |
| `--opt3` | L1 with a victim buffer |
| `--opt4` | stride prefetching at both levels |
| `--opt5` | next-line prefetching combined with non-blocking caches |

Three cycles pass between accesses. It prints per-level statistics,
prefetch coverage and accuracy where they apply, main-memory traffic, and
total and average latency.

## Using it from Python

The cache models can be driven directly:

```python
from rvsim.cache import build_backend, level_miss_rates

backend = build_backend(True)
latency = backend.read(0x80000000, 8)
latency += backend.write(0x80000040, 4)
print(latency, level_miss_rates(backend))
```

`rvsim.cache.Cache`, `rvsim.prefetch.NextLinePrefetchCache`,
`rvsim.prefetch.StridePrefetchCache`, `rvsim.nonblocking.NonBlockingCache`,
`rvsim.nonblocking.VictimCache` and `rvsim.combined.CombinedCache` can be
stacked in front of `rvsim.cache.Memory` to build other hierarchies;
`rvsim.cachesim.run_trace` replays trace lines through any of them.
`rvsim.perf.create_profiler` gives the performance models on their own,
`rvsim.cpu.CPU` runs instructions over an `rvsim.memory.PhysicalMemory`, and
`rvsim.monitor.Monitor` drives a CPU from debugger commands.

## What it does not do

- It loads raw binary images only; it does not read ELF files and does not
  build guest programs. A RISC-V cross toolchain is needed to produce images.
- Only RV64I and RV64M are decoded: no compressed, atomic, floating-point,
  CSR or privileged instructions, no interrupts and no devices.
- The cache and pipeline models estimate timing only; guest data always
  comes from the flat guest memory.