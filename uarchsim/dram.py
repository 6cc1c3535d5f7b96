"""A DRAM controller with per-channel read and write queues and bank scheduling."""

from __future__ import annotations

import math
from collections import deque
from collections.abc import Iterable, MutableSequence
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from .channel import CacheQueueStats, Channel, Request, Response
from .util import get_span_p

UINT32_MAX = 0xFFFF_FFFF
UINT64_MAX = 2**64 - 1


def cycles(time: float, io_freq: float) -> int:
    """Convert a time into a whole number of clock cycles, rounding up."""
    return max(math.ceil(time * io_freq), 0)


def _lg2(n: int) -> int:
    return n.bit_length() - 1


def _bitmask(bits: int) -> int:
    return (1 << bits) - 1


@dataclass(frozen=True)
class DramConfig:
    """Geometry and queue sizes of the off-chip memory."""

    block_size: int = 64
    channels: int = 1
    ranks: int = 1
    banks: int = 8
    rows: int = 65536
    columns: int = 128
    channel_width: int = 8
    rq_size: int = 64
    wq_size: int = 64
    write_high_wm: int = 56
    write_low_wm: int = 48

    @property
    def log2_block_size(self) -> int:
        return _lg2(self.block_size)


@dataclass
class DramStats:
    """Counters for one DRAM channel."""

    name: str = ""
    dbus_cycle_congested: int = 0
    dbus_count_congested: int = 0
    wq_row_buffer_hit: int = 0
    wq_row_buffer_miss: int = 0
    rq_row_buffer_hit: int = 0
    rq_row_buffer_miss: int = 0
    wq_full: int = 0


@dataclass
class DramRequest:
    """A request waiting in a DRAM channel queue."""

    scheduled: bool = False
    forward_checked: bool = False
    asid: tuple[int, int] = (0xFF, 0xFF)
    pf_metadata: int = 0
    address: int = 0
    v_address: int = 0
    data: int = 0
    event_cycle: int = 0
    instr_depend_on_me: list[Any] = field(default_factory=list)
    to_return: list[deque] = field(default_factory=list)

    @classmethod
    def from_request(cls, request: Request) -> "DramRequest":
        # The virtual address is deliberately taken from the physical one.
        return cls(
            asid=tuple(request.asid),
            pf_metadata=request.pf_metadata,
            address=request.address,
            v_address=request.address,
            data=request.data,
            instr_depend_on_me=list(request.instr_depend_on_me),
        )


@dataclass(eq=False)
class BankRequest:
    """The state of one bank and the queue slot it is serving."""

    valid: bool = False
    row_buffer_hit: bool = False
    open_row: int = UINT32_MAX
    event_cycle: int = 0
    queue: Optional[list] = None
    slot: int = 0

    @property
    def packet(self) -> Optional[DramRequest]:
        return None if self.queue is None else self.queue[self.slot]


def _deliver(req: DramRequest, data: Optional[int] = None) -> None:
    for ret in req.to_return:
        ret.append(
            Response(
                req.address,
                req.v_address,
                req.data if data is None else data,
                req.pf_metadata,
                list(req.instr_depend_on_me),
            )
        )


def _union_program_order(first: Iterable[Any], second: Iterable[Any]) -> list[Any]:
    merged: dict[int, Any] = {}
    for instr in (*first, *second):
        merged.setdefault(instr.instr_id, instr)
    return sorted(merged.values(), key=lambda x: x.instr_id)


def _union_identity(first: Iterable[Any], second: Iterable[Any]) -> list[Any]:
    result = list(first)
    for item in second:
        if not any(item is x for x in result):
            result.append(item)
    return result


def _drop_front(queue: MutableSequence, count: int) -> None:
    if isinstance(queue, deque):
        for _ in range(count):
            queue.popleft()
    else:
        del queue[:count]


class DramChannel:
    """One independent DRAM channel with fixed-size read and write queues."""

    def __init__(self, rq_size: int, wq_size: int, num_banks: int, offset_bits: int) -> None:
        self.rq: list[Optional[DramRequest]] = [None] * rq_size
        self.wq: list[Optional[DramRequest]] = [None] * wq_size
        self.bank_request = [BankRequest() for _ in range(num_banks)]
        self.active_request: Optional[BankRequest] = None
        self.write_mode = False
        self.dbus_cycle_available = 0
        self.offset_bits = offset_bits
        self.sim_stats = DramStats()
        self.roi_stats = DramStats()

    def _matcher(self, address: int):
        shift = self.offset_bits
        return lambda pkt: pkt is not None and (pkt.address >> shift) == (address >> shift)

    def check_collision(self) -> None:
        """Merge duplicate writes, forward writes to reads, and merge duplicate reads."""
        for i, entry in enumerate(self.wq):
            if entry is None or entry.forward_checked:
                continue
            matches = self._matcher(entry.address)
            if any(map(matches, self.wq[:i])) or any(map(matches, self.wq[i + 1:])):
                self.wq[i] = None
            else:
                entry.forward_checked = True

        for i, entry in enumerate(self.rq):
            if entry is None or entry.forward_checked:
                continue
            matches = self._matcher(entry.address)
            write = next(filter(matches, self.wq), None)
            if write is not None:
                _deliver(entry, data=write.data)
                self.rq[i] = None
                continue
            found = next(filter(matches, self.rq[:i]), None)
            if found is None:
                found = next(filter(matches, self.rq[i + 1:]), None)
            if found is not None:
                found.instr_depend_on_me = _union_program_order(found.instr_depend_on_me, entry.instr_depend_on_me)
                found.to_return = _union_identity(found.to_return, entry.to_return)
                self.rq[i] = None
            else:
                entry.forward_checked = True


class MemoryController:
    """Schedules requests from upper levels onto DRAM channels and banks."""

    def __init__(
        self,
        freq_scale: float,
        io_freq: int,
        t_rp: float,
        t_rcd: float,
        t_cas: float,
        turnaround: float,
        upper_levels: Iterable[Channel] = (),
        config: Optional[DramConfig] = None,
    ) -> None:
        self.config = config or DramConfig()
        self.freq_scale = freq_scale
        self.io_freq = io_freq
        self.queues: list[Channel] = list(upper_levels)
        self.current_cycle = 0
        self.warmup = True
        self.t_rp = cycles(t_rp / 1000, io_freq)
        self.t_rcd = cycles(t_rcd / 1000, io_freq)
        self.t_cas = cycles(t_cas / 1000, io_freq)
        self.dbus_turn_around_time = cycles(turnaround / 1000, io_freq)
        self.dbus_return_time = cycles(
            math.ceil(self.config.block_size) / math.ceil(self.config.channel_width), 1
        )
        cfg = self.config
        self.channels = [
            DramChannel(cfg.rq_size, cfg.wq_size, cfg.ranks * cfg.banks, cfg.log2_block_size)
            for _ in range(cfg.channels)
        ]

    def operate(self) -> int:
        """Advance every channel by one cycle and return the amount of progress made."""
        progress = 0
        now = self.current_cycle
        cfg = self.config

        self.initiate_requests()

        for channel in self.channels:
            if self.warmup:
                for i, entry in enumerate(channel.rq):
                    if entry is not None:
                        _deliver(entry)
                        progress += 1
                        channel.rq[i] = None
                for i, entry in enumerate(channel.wq):
                    if entry is not None:
                        progress += 1
                    channel.wq[i] = None

            channel.check_collision()

            # Finish the request on the data bus
            active = channel.active_request
            if active is not None and active.event_cycle <= now:
                pkt = active.packet
                if pkt is not None:
                    _deliver(pkt)
                    active.queue[active.slot] = None
                active.valid = False
                channel.active_request = None
                progress += 1

            wq_occu = sum(x is not None for x in channel.wq)
            rq_occu = sum(x is not None for x in channel.rq)

            # Change modes if the queues are unbalanced
            if (
                not channel.write_mode
                and (wq_occu >= cfg.write_high_wm or (rq_occu == 0 and wq_occu > 0))
            ) or (
                channel.write_mode
                and (wq_occu == 0 or (rq_occu > 0 and wq_occu < cfg.write_low_wm))
            ):
                for bank in channel.bank_request:
                    if bank is not channel.active_request and bank.valid:
                        if bank.event_cycle < now + self.t_cas:
                            bank.open_row = UINT32_MAX
                        bank.valid = False
                        pkt = bank.packet
                        if pkt is not None:
                            pkt.scheduled = False
                            pkt.event_cycle = now

                if channel.active_request is not None:
                    channel.dbus_cycle_available = channel.active_request.event_cycle + self.dbus_turn_around_time
                else:
                    channel.dbus_cycle_available = now + self.dbus_turn_around_time

                channel.write_mode = not channel.write_mode

            # Look for requests to put on the bus
            valid_banks = [b for b in channel.bank_request if b.valid]
            if valid_banks:
                nxt = min(valid_banks, key=lambda b: b.event_cycle)
                if nxt.event_cycle <= now:
                    if channel.active_request is None and channel.dbus_cycle_available <= now:
                        channel.active_request = nxt
                        nxt.event_cycle = now + self.dbus_return_time
                        stats = channel.sim_stats
                        if nxt.row_buffer_hit:
                            if channel.write_mode:
                                stats.wq_row_buffer_hit += 1
                            else:
                                stats.rq_row_buffer_hit += 1
                        elif channel.write_mode:
                            stats.wq_row_buffer_miss += 1
                        else:
                            stats.rq_row_buffer_miss += 1
                        progress += 1
                    else:
                        if channel.active_request is not None:
                            channel.sim_stats.dbus_cycle_congested += channel.active_request.event_cycle - now
                        else:
                            channel.sim_stats.dbus_cycle_congested += channel.dbus_cycle_available - now
                        channel.sim_stats.dbus_count_congested += 1

            # Look for queued packets that have not been scheduled
            queue = channel.wq if channel.write_mode else channel.rq
            pending = [(i, p) for i, p in enumerate(queue) if p is not None and not p.scheduled]
            if pending:
                slot, pkt = min(pending, key=lambda item: item[1].event_cycle)
                if pkt.event_cycle <= now:
                    row = self.get_row(pkt.address)
                    idx = self.get_rank(pkt.address) * cfg.banks + self.get_bank(pkt.address)
                    bank = channel.bank_request[idx]
                    if not bank.valid:
                        hit = bank.open_row == row
                        bank.valid = True
                        bank.row_buffer_hit = hit
                        bank.open_row = row
                        bank.event_cycle = now + self.t_cas + (0 if hit else self.t_rp + self.t_rcd)
                        bank.queue = queue
                        bank.slot = slot
                        pkt.scheduled = True
                        pkt.event_cycle = UINT64_MAX
                        progress += 1

        return progress

    def initialize(self) -> None:
        cfg = self.config
        dram_size = self.size() // 1024 // 1024
        if dram_size > 1024:
            size_text = f"{dram_size // 1024} GiB"
        else:
            size_text = f"{dram_size} MiB"
        print(
            f"Off-chip DRAM Size: {size_text} Channels: {cfg.channels} "
            f"Width: {8 * cfg.channel_width}-bit Data Race: {self.io_freq} MT/s"
        )

    def begin_phase(self) -> None:
        for idx, chan in enumerate(self.channels):
            chan.sim_stats = DramStats(name=f"Channel {idx}")
        for upper in self.queues:
            upper.roi_stats = CacheQueueStats()
            upper.sim_stats = CacheQueueStats()

    def end_phase(self, finished_cpu: int) -> None:
        for chan in self.channels:
            chan.roi_stats = replace(chan.sim_stats)

    def initiate_requests(self) -> None:
        """Move as many leading packets from the upper levels' queues as the channels accept."""
        for upper in self.queues:
            for queue in (upper.rq, upper.pq):
                accepted = get_span_p(queue, lambda pkt, ul=upper: self.add_rq(pkt, ul))
                _drop_front(queue, len(accepted))
            accepted = get_span_p(upper.wq, self.add_wq)
            _drop_front(upper.wq, len(accepted))

    def add_rq(self, packet: Request, upper: Channel) -> bool:
        channel = self.channels[self.get_channel(packet.address)]
        slot = next((i for i, x in enumerate(channel.rq) if x is None), None)
        if slot is None:
            return False
        entry = DramRequest.from_request(packet)
        entry.forward_checked = False
        entry.event_cycle = self.current_cycle
        if packet.response_requested:
            entry.to_return = [upper.returned]
        channel.rq[slot] = entry
        return True

    def add_wq(self, packet: Request) -> bool:
        channel = self.channels[self.get_channel(packet.address)]
        slot = next((i for i, x in enumerate(channel.wq) if x is None), None)
        if slot is None:
            channel.sim_stats.wq_full += 1
            return False
        entry = DramRequest.from_request(packet)
        entry.forward_checked = False
        entry.event_cycle = self.current_cycle
        channel.wq[slot] = entry
        return True

    # Address layout: | row | rank | column | bank | channel | block offset |

    def get_channel(self, address: int) -> int:
        cfg = self.config
        shift = cfg.log2_block_size
        return (address >> shift) & _bitmask(_lg2(cfg.channels))

    def get_bank(self, address: int) -> int:
        cfg = self.config
        shift = _lg2(cfg.channels) + cfg.log2_block_size
        return (address >> shift) & _bitmask(_lg2(cfg.banks))

    def get_column(self, address: int) -> int:
        cfg = self.config
        shift = _lg2(cfg.banks) + _lg2(cfg.channels) + cfg.log2_block_size
        return (address >> shift) & _bitmask(_lg2(cfg.columns))

    def get_rank(self, address: int) -> int:
        cfg = self.config
        shift = _lg2(cfg.banks) + _lg2(cfg.columns) + _lg2(cfg.channels) + cfg.log2_block_size
        return (address >> shift) & _bitmask(_lg2(cfg.ranks))

    def get_row(self, address: int) -> int:
        cfg = self.config
        shift = (
            _lg2(cfg.ranks) + _lg2(cfg.banks) + _lg2(cfg.columns) + _lg2(cfg.channels) + cfg.log2_block_size
        )
        return (address >> shift) & _bitmask(_lg2(cfg.rows))

    def size(self) -> int:
        cfg = self.config
        return cfg.channels * cfg.ranks * cfg.banks * cfg.rows * cfg.columns * cfg.block_size