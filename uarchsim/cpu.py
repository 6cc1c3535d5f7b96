"""The out-of-order core: fetch, decode, dispatch, schedule, execute, memory and retire."""

from __future__ import annotations

import copy
import sys
import time
from bisect import bisect_left
from collections import OrderedDict, defaultdict, deque
from dataclasses import dataclass
from itertools import islice
from typing import Any, Optional, TextIO

from .channel import Request
from .instr import BranchType, CacheBus, Instruction, LSQEntry, Stage
from .stats import CpuStats
from .trace_instruction import REG_FLAGS, REG_INSTRUCTION_POINTER, REG_STACK_POINTER
from .util import get_span, get_span_p

UINT64_MAX = 2**64 - 1

_START = time.monotonic()


def _elapsed_text() -> str:
    seconds = int(time.monotonic() - _START)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d} hr {minutes:02d} min {secs:02d} sec"


def _ratio(num: float, den: float) -> float:
    if den == 0:
        return float("nan") if num == 0 else float("inf")
    return num / den


@dataclass(frozen=True)
class CoreConfig:
    """Widths, buffer sizes and latencies of one core."""

    ifetch_buffer_size: int = 64
    decode_buffer_size: int = 32
    dispatch_buffer_size: int = 32
    rob_size: int = 352
    lq_size: int = 128
    sq_size: int = 72
    fetch_width: int = 6
    decode_width: int = 6
    dispatch_width: int = 6
    scheduler_size: int = 128
    exec_width: int = 4
    lq_width: int = 2
    sq_width: int = 2
    retire_width: int = 5
    branch_mispredict_penalty: int = 1
    decode_latency: int = 1
    dispatch_latency: int = 1
    scheduling_latency: int = 0
    exec_latency: int = 0
    dib_sets: int = 32
    dib_ways: int = 8
    dib_window: int = 16
    l1i_bandwidth: int = 1
    l1d_bandwidth: int = 1
    block_size: int = 64
    stat_printing_period: int = 10_000_000

    @property
    def log2_block_size(self) -> int:
        return self.block_size.bit_length() - 1


class _DecodedInstructionBuffer:
    """A set-associative LRU table of recently decoded instruction windows."""

    def __init__(self, sets: int, ways: int, window: int) -> None:
        self._sets = [OrderedDict() for _ in range(max(sets, 1))]
        self._ways = ways
        self._shift = window.bit_length() - 1

    def _locate(self, ip: int) -> tuple[OrderedDict, int]:
        key = ip >> self._shift
        return self._sets[key % len(self._sets)], key

    def check_hit(self, ip: int) -> bool:
        ways, key = self._locate(ip)
        if key in ways:
            ways.move_to_end(key)
            return True
        return False

    def fill(self, ip: int) -> None:
        ways, key = self._locate(ip)
        ways[key] = True
        ways.move_to_end(key)
        while len(ways) > self._ways:
            ways.popitem(last=False)


class O3CPU:
    """An out-of-order core fed from ``input_queue`` and backed by an L1I and an L1D.

    Without a branch predictor every branch is predicted not taken; without a
    BTB no target is ever predicted.
    """

    def __init__(
        self,
        cpu: int,
        l1i_queue: Any,
        l1d_queue: Any,
        config: Optional[CoreConfig] = None,
        branch_predictor: Any = None,
        btb: Any = None,
        l1i_cache: Any = None,
        instr_log: Optional[TextIO] = None,
    ) -> None:
        self.cpu = cpu
        self.config = config or CoreConfig()
        self.l1i_bus = CacheBus(cpu, l1i_queue)
        self.l1d_bus = CacheBus(cpu, l1d_queue)
        self.branch_predictor = branch_predictor
        self.btb = btb
        self.l1i = l1i_cache
        self.instr_log = instr_log

        cfg = self.config
        self.dib = _DecodedInstructionBuffer(cfg.dib_sets, cfg.dib_ways, cfg.dib_window)
        self.current_cycle = 0
        self.warmup = True
        self.show_heartbeat = True

        self.input_queue: deque[Instruction] = deque()
        self.ifetch_buffer: deque[Instruction] = deque()
        self.decode_buffer: deque[Instruction] = deque()
        self.dispatch_buffer: deque[Instruction] = deque()
        self.rob: deque[Instruction] = deque()
        self.lq: list[Optional[LSQEntry]] = [None] * cfg.lq_size
        self.sq: deque[LSQEntry] = deque()
        self.reg_producers: defaultdict[int, list[Instruction]] = defaultdict(list)

        self.num_retired = 0
        self.fetch_resume_cycle = 0
        self.next_print_instruction = cfg.stat_printing_period
        self.last_heartbeat_instr = 0
        self.last_heartbeat_cycle = 0
        self.begin_phase_instr = 0
        self.begin_phase_cycle = 0
        self.finish_phase_instr = 0
        self.finish_phase_cycle = 0
        self.sim_stats = CpuStats()
        self.roi_stats = CpuStats()

    # ----------------------------------------------------------------- cycle

    def operate(self) -> int:
        """Run every pipeline stage once, back to front; return the progress made."""
        progress = 0
        progress += self.retire_rob()
        progress += self.complete_inflight_instruction()
        progress += self.execute_instruction()
        progress += self.schedule_instruction()
        progress += self.handle_memory_return()
        progress += self.operate_lsq()

        progress += self.dispatch_instruction()
        progress += self.decode_instruction()
        progress += self.promote_to_decode()

        progress += self.fetch_instruction()
        progress += self.check_dib()
        self.initialize_instruction()

        if self.show_heartbeat and self.num_retired >= self.next_print_instruction:
            heartbeat_ipc = _ratio(self.num_retired - self.last_heartbeat_instr, self.current_cycle - self.last_heartbeat_cycle)
            phase_ipc = _ratio(self.num_retired - self.begin_phase_instr, self.current_cycle - self.begin_phase_cycle)
            print(
                f"Heartbeat CPU {self.cpu} instructions: {self.num_retired} cycles: {self.current_cycle} "
                f"heartbeat IPC: {heartbeat_ipc:.4g} cumulative IPC: {phase_ipc:.4g} "
                f"(Simulation time: {_elapsed_text()})"
            )
            self.next_print_instruction += self.config.stat_printing_period
            self.last_heartbeat_instr = self.num_retired
            self.last_heartbeat_cycle = self.current_cycle

        return progress

    def initialize(self) -> None:
        if self.branch_predictor is not None:
            self.branch_predictor.initialize()
        if self.btb is not None:
            self.btb.initialize()

    def begin_phase(self) -> None:
        self.begin_phase_instr = self.num_retired
        self.begin_phase_cycle = self.current_cycle
        self.sim_stats = CpuStats(
            name=f"CPU {self.cpu}", begin_instrs=self.num_retired, begin_cycles=self.current_cycle
        )

    def end_phase(self, finished_cpu: int) -> None:
        self.sim_stats.end_instrs = self.num_retired
        self.sim_stats.end_cycles = self.current_cycle
        if finished_cpu == self.cpu:
            self.finish_phase_instr = self.num_retired
            self.finish_phase_cycle = self.current_cycle
            self.roi_stats = copy.deepcopy(self.sim_stats)

    # ----------------------------------------------------------------- front end

    def _log_instruction(self, instr: Instruction) -> None:
        stream = self.instr_log or sys.stderr
        opcode = "".join(f" {b:02x}" for b in instr.opcode)
        stream.write(
            f"{BranchType(instr.branch_type).trace_code:x} proc {instr.thread_id:x} [0] 1.1 1 instructions: "
            f"{instr.ip:x} func module insn: {opcode}\n"
        )

    def initialize_instruction(self) -> None:
        """Move instructions from the input queue into the fetch buffer, predicting branches."""
        cfg = self.config
        to_read = min(cfg.fetch_width, cfg.ifetch_buffer_size - len(self.ifetch_buffer))
        while self.current_cycle >= self.fetch_resume_cycle and to_read > 0 and self.input_queue:
            to_read -= 1
            instr = self.input_queue[0]
            self._log_instruction(instr)
            if self.do_init_instruction(instr):
                to_read = 0
            self.ifetch_buffer.append(self.input_queue.popleft())
            instr.event_cycle = self.current_cycle

    @staticmethod
    def _fold_stack_pointer(instr: Instruction) -> None:
        if REG_STACK_POINTER not in instr.destination_registers:
            return
        reads_other = any(
            r not in (REG_STACK_POINTER, REG_FLAGS, REG_INSTRUCTION_POINTER) for r in instr.source_registers
        )
        has_memory = bool(instr.destination_memory or instr.source_memory)
        if instr.is_branch or has_memory or not reads_other:
            instr.destination_registers = [r for r in instr.destination_registers if r != REG_STACK_POINTER]

    def do_predict_branch(self, instr: Instruction) -> bool:
        """Predict the instruction's control flow; return whether fetch must stop this cycle."""
        stop_fetch = False
        self.sim_stats.total_branch_types[instr.branch_type] += 1
        if self.btb is not None:
            predicted_target, always_taken = self.btb.prediction(instr.ip)
        else:
            predicted_target, always_taken = 0, False
        predicted_taken = self.branch_predictor is not None and self.branch_predictor.predict_branch(instr.ip)
        instr.branch_prediction = bool(predicted_taken or always_taken)
        if not instr.branch_prediction:
            predicted_target = 0

        if instr.is_branch:
            if self.l1i is not None:
                self.l1i.impl_prefetcher_branch_operate(instr.ip, instr.branch_type, predicted_target)

            conditional = instr.branch_type in (BranchType.BRANCH_CONDITIONAL, BranchType.BRANCH_OTHER)
            if predicted_target != instr.branch_target or (
                conditional and bool(instr.branch_taken) != instr.branch_prediction
            ):
                self.sim_stats.total_rob_occupancy_at_branch_mispredict += len(self.rob)
                self.sim_stats.branch_type_misses[instr.branch_type] += 1
                if not self.warmup:
                    self.fetch_resume_cycle = UINT64_MAX
                    stop_fetch = True
                    instr.branch_mispredicted = True
            else:
                stop_fetch = bool(instr.branch_taken)

            if self.btb is not None:
                self.btb.update(instr.ip, instr.branch_target, instr.branch_taken, instr.branch_type)
            if self.branch_predictor is not None:
                self.branch_predictor.last_branch_result(
                    instr.ip, instr.branch_target, instr.branch_taken, instr.branch_type
                )

        return stop_fetch

    def do_init_instruction(self, instr: Instruction) -> bool:
        """Prepare an instruction for fetch; return whether fetch must stop this cycle."""
        if self.warmup:
            instr.source_registers.clear()
            instr.destination_registers.clear()
        self._fold_stack_pointer(instr)
        return self.do_predict_branch(instr)

    def check_dib(self) -> int:
        """Look up the next unchecked instructions in the decoded instruction buffer."""
        start = next((i for i, x in enumerate(self.ifetch_buffer) if not x.dib_checked), len(self.ifetch_buffer))
        window = get_span(islice(self.ifetch_buffer, start, None), self.config.fetch_width)
        for instr in window:
            if self.dib.check_hit(instr.ip):
                instr.fetched = Stage.COMPLETED
                instr.decoded = Stage.COMPLETED
                instr.event_cycle = self.current_cycle
            instr.dib_checked = Stage.COMPLETED
        return len(window)

    def fetch_instruction(self) -> int:
        """Issue fetch requests to the L1I, one per cache block, up to the L1I bandwidth."""
        items = list(self.ifetch_buffer)
        shift = self.config.log2_block_size

        def ready_from(pos: int) -> int:
            return next(
                (i for i in range(pos, len(items)) if items[i].dib_checked == Stage.COMPLETED and not items[i].fetched),
                len(items),
            )

        progress = 0
        begin = ready_from(0)
        to_read = self.config.l1i_bandwidth
        while to_read > 0 and begin < len(items):
            end = next(
                (i + 1 for i in range(begin, len(items) - 1) if (items[i].ip >> shift) != (items[i + 1].ip >> shift)),
                len(items),
            )
            group = items[begin:end]
            if self._do_fetch_instruction(group):
                for instr in group:
                    instr.fetched = Stage.INFLIGHT
                progress += 1
            begin = ready_from(end)
            to_read -= 1
        return progress

    def _do_fetch_instruction(self, group: list[Instruction]) -> bool:
        first = group[0]
        packet = Request(v_address=first.ip, instr_id=first.instr_id, ip=first.ip, instr_depend_on_me=list(group))
        return self.l1i_bus.issue_read(packet)

    def promote_to_decode(self) -> int:
        """Move fetched instructions into the decode buffer."""
        cfg = self.config
        bandwidth = max(0, min(cfg.fetch_width, cfg.decode_buffer_size - len(self.decode_buffer)))
        cycle = self.current_cycle
        window = get_span_p(
            self.ifetch_buffer, lambda x: x.fetched == Stage.COMPLETED and x.event_cycle <= cycle, bandwidth
        )
        for instr in window:
            instr.event_cycle = cycle + (0 if (self.warmup or instr.decoded) else cfg.decode_latency)
            self.decode_buffer.append(self.ifetch_buffer.popleft())
        return len(window)

    def decode_instruction(self) -> int:
        """Decode ready instructions and move them to the dispatch buffer."""
        cfg = self.config
        bandwidth = max(0, min(cfg.decode_width, cfg.dispatch_buffer_size - len(self.dispatch_buffer)))
        cycle = self.current_cycle
        window = get_span_p(self.decode_buffer, lambda x: x.event_cycle <= cycle, bandwidth)
        for instr in window:
            self.dib.fill(instr.ip)
            if instr.branch_mispredicted:
                direct = instr.branch_type in (BranchType.BRANCH_DIRECT_JUMP, BranchType.BRANCH_DIRECT_CALL)
                conditional = instr.branch_type in (BranchType.BRANCH_CONDITIONAL, BranchType.BRANCH_OTHER)
                if direct or (conditional and bool(instr.branch_taken) == bool(instr.branch_prediction)):
                    instr.branch_mispredicted = False
                    self.fetch_resume_cycle = cycle + cfg.branch_mispredict_penalty
            instr.event_cycle = cycle + (0 if self.warmup else cfg.dispatch_latency)
            self.dispatch_buffer.append(self.decode_buffer.popleft())
        return len(window)

    # ----------------------------------------------------------------- back end

    def dispatch_instruction(self) -> int:
        """Move decoded instructions into the ROB while the ROB, LQ and SQ have room."""
        cfg = self.config
        bandwidth = cfg.dispatch_width
        while (
            bandwidth > 0
            and self.dispatch_buffer
            and self.dispatch_buffer[0].event_cycle < self.current_cycle
            and len(self.rob) != cfg.rob_size
            and sum(x is None for x in self.lq) >= len(self.dispatch_buffer[0].source_memory)
            and len(self.dispatch_buffer[0].destination_memory) + len(self.sq) <= cfg.sq_size
        ):
            self.rob.append(self.dispatch_buffer.popleft())
            self._do_memory_scheduling(self.rob[-1])
            bandwidth -= 1
        return cfg.dispatch_width - bandwidth

    def _do_memory_scheduling(self, instr: Instruction) -> None:
        for smem in instr.source_memory:
            slot = next((i for i, x in enumerate(self.lq) if x is None), None)
            if slot is None:
                raise RuntimeError("load queue is full")
            entry = LSQEntry(instr.instr_id, smem, instr.ip, instr.asid, event_cycle=UINT64_MAX)
            self.lq[slot] = entry

            stores = [s for s in self.sq if s.virtual_address == smem]
            if stores:
                store = max(stores, key=lambda s: s.instr_id)
                if store.fetch_issued:
                    self.lq[slot] = None
                    instr.completed_mem_ops += 1
                else:
                    if store.instr_id >= instr.instr_id:
                        raise RuntimeError("forwarding store must precede the load")
                    store.lq_depend_on_me.append(slot)
                    entry.producer_id = store.instr_id

        for dmem in instr.destination_memory:
            self.sq.append(LSQEntry(instr.instr_id, dmem, instr.ip, instr.asid, event_cycle=UINT64_MAX))

    def schedule_instruction(self) -> int:
        """Record register dependencies for unscheduled instructions in the ROB."""
        search_bw = self.config.scheduler_size
        progress = 0
        for instr in self.rob:
            if search_bw <= 0:
                break
            if instr.scheduled == Stage.NONE:
                self._do_scheduling(instr)
                progress += 1
            if instr.executed == Stage.NONE:
                search_bw -= 1
        return progress

    def _do_scheduling(self, instr: Instruction) -> None:
        for src in instr.source_registers:
            producers = self.reg_producers[src]
            if producers:
                prior = producers[-1]
                dependents = prior.registers_instrs_depend_on_me
                if not dependents or dependents[-1].instr_id != instr.instr_id:
                    dependents.append(instr)
                    instr.num_reg_dependent += 1

        for dreg in instr.destination_registers:
            producers = self.reg_producers[dreg]
            ids = [x.instr_id for x in producers]
            producers.insert(bisect_left(ids, instr.instr_id), instr)

        instr.scheduled = Stage.COMPLETED
        instr.event_cycle = self.current_cycle + (0 if self.warmup else self.config.scheduling_latency)

    def execute_instruction(self) -> int:
        """Begin execution of ready instructions, up to the execute width."""
        width = self.config.exec_width
        exec_bw = width
        for instr in self.rob:
            if exec_bw <= 0:
                break
            if (
                instr.scheduled == Stage.COMPLETED
                and instr.executed == Stage.NONE
                and instr.num_reg_dependent == 0
                and instr.event_cycle <= self.current_cycle
            ):
                self._do_execution(instr)
                exec_bw -= 1
        return width - exec_bw

    def _do_execution(self, instr: Instruction) -> None:
        ready = self.current_cycle + (0 if self.warmup else self.config.exec_latency)
        instr.executed = Stage.INFLIGHT
        instr.event_cycle = ready
        for entry in self.lq:
            if entry is not None and entry.instr_id == instr.instr_id:
                entry.event_cycle = ready
        for entry in self.sq:
            if entry.instr_id == instr.instr_id:
                entry.event_cycle = ready

    def operate_lsq(self) -> int:
        """Finish executed stores, write back retired stores and issue ready loads."""
        cfg = self.config
        cycle = self.current_cycle
        store_bw = cfg.sq_width
        complete_id = self.rob[0].instr_id if self.rob else UINT64_MAX

        unfetched = next((i for i, x in enumerate(self.sq) if not x.fetch_issued), len(self.sq))
        to_fetch = get_span_p(
            islice(self.sq, unfetched, None), lambda x: not x.fetch_issued and x.event_cycle <= cycle, store_bw
        )
        store_bw -= len(to_fetch)
        for entry in to_fetch:
            self._do_finish_store(entry)
            entry.fetch_issued = True
            entry.event_cycle = cycle

        completed = get_span_p(
            self.sq,
            lambda x: x.instr_id < complete_id and x.event_cycle <= cycle and self._do_complete_store(x),
            store_bw,
        )
        store_bw -= len(completed)
        for _ in completed:
            self.sq.popleft()

        load_bw = cfg.lq_width
        for entry in self.lq:
            if (
                load_bw > 0
                and entry is not None
                and entry.producer_id == UINT64_MAX
                and not entry.fetch_issued
                and entry.event_cycle < cycle
            ):
                if self._execute_load(entry):
                    load_bw -= 1
                    entry.fetch_issued = True

        return (cfg.sq_width - store_bw) + (cfg.lq_width - load_bw)

    def _do_finish_store(self, store: LSQEntry) -> None:
        store.finish(self.rob)
        for slot in store.lq_depend_on_me:
            dependent = self.lq[slot]
            if dependent is None or dependent.producer_id != store.instr_id:
                raise RuntimeError("dependent load is no longer waiting on this store")
            dependent.finish(self.rob)
            self.lq[slot] = None

    def _do_complete_store(self, store: LSQEntry) -> bool:
        packet = Request(v_address=store.virtual_address, instr_id=store.instr_id, ip=store.ip)
        return self.l1d_bus.issue_write(packet)

    def _execute_load(self, load: LSQEntry) -> bool:
        packet = Request(v_address=load.virtual_address, instr_id=load.instr_id, ip=load.ip)
        return self.l1d_bus.issue_read(packet)

    def _do_complete_execution(self, instr: Instruction) -> None:
        for dreg in instr.destination_registers:
            producers = self.reg_producers[dreg]
            pos = next((i for i, x in enumerate(producers) if x.instr_id == instr.instr_id), None)
            if pos is None:
                raise RuntimeError(f"instruction {instr.instr_id} is not a producer of register {dreg}")
            del producers[pos]

        instr.executed = Stage.COMPLETED
        for dependent in instr.registers_instrs_depend_on_me:
            dependent.num_reg_dependent -= 1
            if dependent.num_reg_dependent < 0:
                raise RuntimeError("register dependency count went negative")
            if dependent.num_reg_dependent == 0:
                dependent.scheduled = Stage.COMPLETED

        if instr.branch_mispredicted:
            self.fetch_resume_cycle = self.current_cycle + self.config.branch_mispredict_penalty

    def complete_inflight_instruction(self) -> int:
        """Complete executing instructions whose memory operations are done."""
        width = self.config.exec_width
        complete_bw = width
        for instr in self.rob:
            if complete_bw <= 0:
                break
            if (
                instr.executed == Stage.INFLIGHT
                and instr.event_cycle <= self.current_cycle
                and instr.completed_mem_ops == instr.num_mem_ops()
            ):
                self._do_complete_execution(instr)
                complete_bw -= 1
        return width - complete_bw

    def handle_memory_return(self) -> int:
        """Consume responses from the L1I and L1D."""
        cfg = self.config
        shift = cfg.log2_block_size
        progress = 0

        l1i_returned = self.l1i_bus.lower_level.returned
        l1i_bw = cfg.fetch_width
        to_read = cfg.l1i_bandwidth
        while l1i_bw > 0 and to_read > 0 and l1i_returned:
            response = l1i_returned[0]
            deps = response.instr_depend_on_me
            while l1i_bw > 0 and deps:
                fetched = deps[0]
                if (fetched.ip >> shift) == (response.v_address >> shift) and fetched.fetched != Stage.NONE:
                    fetched.fetched = Stage.COMPLETED
                    l1i_bw -= 1
                    progress += 1
                del deps[0]
            if not deps:
                l1i_returned.popleft()
                progress += 1
            to_read -= 1

        l1d_returned = self.l1d_bus.lower_level.returned
        served = 0
        for response in islice(l1d_returned, cfg.l1d_bandwidth):
            for slot, entry in enumerate(self.lq):
                if (
                    entry is not None
                    and entry.fetch_issued
                    and (entry.virtual_address >> shift) == (response.v_address >> shift)
                ):
                    entry.finish(self.rob)
                    self.lq[slot] = None
                    progress += 1
            progress += 1
            served += 1
        for _ in range(served):
            l1d_returned.popleft()

        return progress

    def retire_rob(self) -> int:
        """Retire completed instructions from the head of the ROB."""
        window = get_span_p(self.rob, lambda x: x.executed == Stage.COMPLETED, self.config.retire_width)
        for _ in window:
            self.rob.popleft()
        self.num_retired += len(window)
        return len(window)