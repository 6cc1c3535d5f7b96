"""Instructions in flight through the core, load/store queue entries and the core's cache ports."""

from __future__ import annotations

import enum
from bisect import bisect_left
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from .channel import AccessType, Request

UINT64_MAX = 2**64 - 1
UINT8_MAX = 0xFF


class BranchType(enum.IntEnum):
    """Classification of an instruction's control flow."""

    NOT_BRANCH = 0
    BRANCH_DIRECT_JUMP = 1
    BRANCH_INDIRECT = 2
    BRANCH_CONDITIONAL = 3
    BRANCH_DIRECT_CALL = 4
    BRANCH_INDIRECT_CALL = 5
    BRANCH_RETURN = 6
    BRANCH_OTHER = 7

    @property
    def trace_code(self) -> int:
        """The numeric code written to the instruction log for this branch type."""
        return _TRACE_CODES[self]


_TRACE_CODES = {
    BranchType.NOT_BRANCH: 0,
    BranchType.BRANCH_CONDITIONAL: 1,
    BranchType.BRANCH_INDIRECT_CALL: 2,
    BranchType.BRANCH_DIRECT_CALL: 3,
    BranchType.BRANCH_INDIRECT: 4,
    BranchType.BRANCH_DIRECT_JUMP: 5,
    BranchType.BRANCH_RETURN: 6,
    BranchType.BRANCH_OTHER: 7,
}


class Stage(enum.IntEnum):
    """Progress of an instruction through one pipeline step."""

    NONE = 0
    INFLIGHT = 1
    COMPLETED = 2


@dataclass(eq=False)
class Instruction:
    """An instruction as modelled by the out-of-order core."""

    instr_id: int = 0
    ip: int = 0
    event_cycle: int = 0
    thread_id: int = 0

    is_branch: bool = False
    branch_taken: bool = False
    branch_prediction: bool = False
    branch_mispredicted: bool = False
    branch_type: BranchType = BranchType.NOT_BRANCH
    branch_target: int = 0

    asid: tuple[int, int] = (UINT8_MAX, UINT8_MAX)

    dib_checked: Stage = Stage.NONE
    fetched: Stage = Stage.NONE
    decoded: Stage = Stage.NONE
    scheduled: Stage = Stage.NONE
    executed: Stage = Stage.NONE

    num_reg_dependent: int = 0
    completed_mem_ops: int = 0

    destination_registers: list[int] = field(default_factory=list)
    source_registers: list[int] = field(default_factory=list)
    destination_memory: list[int] = field(default_factory=list)
    source_memory: list[int] = field(default_factory=list)

    registers_instrs_depend_on_me: list["Instruction"] = field(default_factory=list)

    opcode: bytes = b""

    def num_mem_ops(self) -> int:
        """Number of memory operations (loads plus stores) this instruction performs."""
        return len(self.destination_memory) + len(self.source_memory)


@dataclass(eq=False)
class LSQEntry:
    """One load or store waiting in the load/store queue."""

    instr_id: int = 0
    virtual_address: int = 0
    ip: int = 0
    asid: tuple[int, int] = (UINT8_MAX, UINT8_MAX)
    event_cycle: int = 0
    fetch_issued: bool = False
    producer_id: int = UINT64_MAX
    lq_depend_on_me: list[Any] = field(default_factory=list)

    def finish(self, rob: Sequence[Instruction]) -> Instruction:
        """Record completion of this memory operation on its instruction in the ROB.

        The ROB must be ordered by instruction id. Returns the updated instruction.
        """
        pos = bisect_left(rob, self.instr_id, key=lambda x: x.instr_id)
        if pos == len(rob) or rob[pos].instr_id != self.instr_id:
            raise LookupError(f"instruction {self.instr_id} is not in the ROB")
        entry = rob[pos]
        if entry.completed_mem_ops >= entry.num_mem_ops():
            raise ValueError(f"instruction {self.instr_id} has no outstanding memory operations")
        entry.completed_mem_ops += 1
        return entry


@dataclass
class CacheBus:
    """The port through which a core issues reads and writes to a cache below it."""

    cpu: int
    lower_level: Any

    def _prepare(self, packet: Request, access: AccessType) -> Request:
        return replace(
            packet,
            address=packet.v_address,
            is_translated=False,
            cpu=self.cpu,
            type=access,
            instr_depend_on_me=list(packet.instr_depend_on_me),
        )

    def issue_read(self, packet: Request) -> bool:
        """Send a load to the lower level's read queue; return whether it was accepted."""
        return self.lower_level.add_rq(self._prepare(packet, AccessType.LOAD))

    def issue_write(self, packet: Request) -> bool:
        """Send a store to the lower level's write queue; return whether it was accepted."""
        pkt = self._prepare(packet, AccessType.WRITE)
        pkt.response_requested = False
        return self.lower_level.add_wq(pkt)