# uarchsim

Building blocks for a trace-driven microarchitecture simulator: an out-of-order
core pipeline, a DRAM timing model, the queues that sit between memory levels,
readers for binary instruction trace records, and streaming decompression of
gzip, bzip2 and xz trace files. It needs nothing beyond the standard library.

## Install

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

### `uarchsim.util`

- `get_span(items, size)`: the first `size` items as a list (`ValueError` if
  `size` is negative).
- `get_span_p(items, predicate, size=None)`: the leading items, at most `size`,
  that satisfy `predicate`.
- `extract_if(items, predicate)`: returns `(kept, extracted)`, each in the
  original order.
- `transform_while_n(queue, size, test, transform)`: removes the leading span
  that passes `test` (at most `size` items) from a list or deque and returns the
  transformed items.

### `uarchsim.trace_instruction`

- `InputInstr` and `CloudsuiteInstr`: fixed-size little-endian trace records
  with `from_bytes`, `to_bytes`, `SIZE` and `opcode_bytes`. The cloudsuite
  record has four destination registers and memory operands and an `asid` pair.
  Array fields must have exactly the right length, or `ValueError` is raised.
- `read_instructions(stream, cloudsuite=False)`: yields records from any object
  with `read(n)`, stopping at the end; a trailing partial record is dropped.
- `REG_STACK_POINTER`, `REG_FLAGS`, `REG_INSTRUCTION_POINTER`: the register
  numbers used to recognise stack and branch behaviour.

### `uarchsim.decompress`

- `Codec`: `BZIP2`, `GZIP` or `XZ`.
- `compress(data, codec)`: compress bytes in one of those formats.
- `InflatingStream(source, codec)`: reads decompressed bytes from a path or a
  binary stream. `read(count)` returns up to `count` bytes; `eof()` tells whether
  the last read came up short, `gcount()` how many bytes it returned, and
  `bytes_read()` the total handed out. It is a context manager and closes files
  it opened itself.
- `Repeatable(factory, *args)`: calls the object built by `factory(*args)`, and
  when that object reports `eof()`, prints `*** Reached end of trace: (...)` and
  builds a fresh one from the same arguments. Its own `eof()` is always `False`.

### `uarchsim.channel`

- `AccessType`: `LOAD`, `RFO`, `PREFETCH`, `WRITE`, `TRANSLATION`.
- `Request`, `Response` (with `Response.from_request`), and `CacheQueueStats`.
- `Channel(rq_size, pq_size, wq_size, offset_bits, match_offset)`: holds the
  `rq`, `pq` and `wq` deques, the `returned` deque of responses, `sim_stats` and
  `roi_stats`, and reports occupancy and configured sizes of each queue.
- `Deadlock`: exception carrying the number of the CPU that stopped progressing.

### `uarchsim.dram`

- `cycles(time, io_freq)`: a time in microseconds times a frequency in MHz,
  rounded up to whole cycles and never below zero.
- `DramConfig`: block size, channel/rank/bank/row/column counts, channel width,
  queue sizes and the write-queue high and low watermarks.
- `MemoryController(freq_scale, io_freq, t_rp, t_rcd, t_cas, turnaround,
  upper_levels=(), config=None)`: timings are given in nanoseconds. Each
  `operate()` call pulls requests from the upper `Channel` queues, merges and
  forwards colliding requests, switches between read and write mode by the
  watermarks, schedules banks with row-buffer hit/miss timing, and puts finished
  reads on the requesting channel's `returned` queue. During warmup (the
  default) reads are answered at once and writes dropped. It also offers
  `add_rq`, `add_wq`, the address decoders `get_channel`, `get_bank`,
  `get_column`, `get_rank`, `get_row`, `size()`, `initialize()` (prints the
  memory size), `begin_phase()` and `end_phase()`.
- `DramChannel`, `DramRequest`, `BankRequest`, `DramStats`.

### `uarchsim.instr`

- `BranchType` and `Stage` (`NONE`, `INFLIGHT`, `COMPLETED`).
- `Instruction`: an instruction in the core, with `num_mem_ops()`.
- `LSQEntry`: a load or store; `finish(rob)` counts a completed memory
  operation on its instruction in an id-ordered ROB.
- `CacheBus(cpu, lower_level)`: `issue_read` and `issue_write` stamp a packet
  as an untranslated load or write from this CPU and pass it to
  `lower_level.add_rq` or `lower_level.add_wq`.

### `uarchsim.stats`

- `CpuStats` (with `instrs()` and `cycles()`), `CacheStats`, `PhaseInfo`,
  `PhaseStats`.
- `cpu_stats_to_json`, `cache_stats_to_json`, `dram_stats_to_json`,
  `phase_stats_to_json`: JSON-ready mappings; averages with a zero divisor
  become `null`.
- `JsonPrinter(stream).print(phases)`: writes the phases as one compact JSON
  array with sorted keys.

### `uarchsim.cpu`

- `CoreConfig`: widths, buffer sizes, latencies, decoded-instruction-buffer
  geometry and the heartbeat period.
- `O3CPU(cpu, l1i_queue, l1d_queue, config=None, branch_predictor=None,
  btb=None, l1i_cache=None, instr_log=None)`: feed `Instruction` objects into
  `input_queue` and call `operate()` once per cycle, advancing `current_cycle`
  yourself. Each call runs retire, complete, execute, schedule, memory return,
  load/store queue, dispatch, decode, promote-to-decode, fetch, decoded
  instruction buffer lookup and instruction intake, and returns the progress
  made. Every instruction taken in is logged as one line to `instr_log`
  (standard error by default). A heartbeat line is printed every
  `stat_printing_period` retired instructions unless `show_heartbeat` is false.
  Stage methods such as `fetch_instruction` and `retire_rob` can also be called
  on their own.

## Example

```python
import io
from uarchsim.decompress import Codec, InflatingStream, compress
from uarchsim.trace_instruction import InputInstr, read_instructions

records = [InputInstr(ip=0x400000 + 4 * i) for i in range(3)]
packed = compress(b"".join(r.to_bytes() for r in records), Codec.XZ)

with InflatingStream(io.BytesIO(packed), Codec.XZ) as stream:
    for instr in read_instructions(stream):
        print(hex(instr.ip))
```

## What it does not do

- There is no command-line program and no configuration loader; you assemble
  cores, queues and the memory controller in Python and drive the cycles.
- There is no cache model, no page-table walker and no virtual memory.
  `Channel` only holds queues: it has no `add_rq`/`add_wq` admission or
  collision checking of its own, so the `l1i_queue` and `l1d_queue` given to
  `O3CPU` must be objects you supply with `add_rq`, `add_wq` and a `returned`
  deque.
- No branch predictor or BTB is included. Without them every branch is
  predicted not taken with no target. Supplied objects are used through
  `initialize()`, `predict_branch(ip)` and `last_branch_result(ip, target,
  taken, type)` for a predictor, and `initialize()`, `prediction(ip)` returning
  `(target, always_taken)` and `update(ip, target, taken, type)` for a BTB.
- Nothing turns trace records into `Instruction` objects or runs whole
  warmup and simulation phases; only JSON output of statistics is provided,
  not a plain-text report.