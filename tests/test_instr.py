from collections import deque

import pytest

from uarchsim.channel import AccessType, Request
from uarchsim.instr import (
    BranchType,
    CacheBus,
    Instruction,
    LSQEntry,
    Stage,
    UINT64_MAX,
)


class _Recorder:
    def __init__(self, accept=True):
        self.accept = accept
        self.rq = []
        self.wq = []

    def add_rq(self, packet):
        self.rq.append(packet)
        return self.accept

    def add_wq(self, packet):
        self.wq.append(packet)
        return self.accept


def test_num_mem_ops_counts_loads_and_stores():
    instr = Instruction(source_memory=[0x10, 0x20, 0x30], destination_memory=[0x40])
    assert instr.num_mem_ops() == len(instr.source_memory) + len(instr.destination_memory)
    assert Instruction().num_mem_ops() == 0


def test_instruction_defaults_are_not_started():
    instr = Instruction()
    assert instr.fetched == Stage.NONE
    assert instr.executed == Stage.NONE
    assert instr.branch_type is BranchType.NOT_BRANCH


def test_stage_ordering():
    instr = Instruction()
    assert instr.fetched < Stage.INFLIGHT < Stage.COMPLETED
    assert instr.executed < Stage.COMPLETED


@pytest.mark.parametrize(
    "branch_type, code",
    [
        (BranchType.NOT_BRANCH, 0),
        (BranchType.BRANCH_CONDITIONAL, 1),
        (BranchType.BRANCH_INDIRECT_CALL, 2),
        (BranchType.BRANCH_DIRECT_CALL, 3),
        (BranchType.BRANCH_INDIRECT, 4),
        (BranchType.BRANCH_DIRECT_JUMP, 5),
        (BranchType.BRANCH_RETURN, 6),
        (BranchType.BRANCH_OTHER, 7),
    ],
)
def test_trace_codes(branch_type, code):
    assert branch_type.trace_code == code


def test_trace_codes_are_distinct():
    codes = {Instruction(branch_type=t).branch_type.trace_code for t in BranchType}
    assert codes == set(range(len(BranchType)))


def test_lsq_entry_defaults():
    entry = LSQEntry(instr_id=5, virtual_address=0xBEEF)
    assert entry.producer_id == UINT64_MAX
    assert entry.fetch_issued is False
    assert entry.lq_depend_on_me == []


def test_finish_increments_matching_rob_entry():
    rob = deque(Instruction(instr_id=i, source_memory=[0x100 * i]) for i in range(1, 6))
    entry = LSQEntry(instr_id=3, virtual_address=0x300)
    finished = entry.finish(rob)
    assert finished is rob[2]
    assert rob[2].completed_mem_ops == 1
    assert all(x.completed_mem_ops == 0 for x in rob if x is not rob[2])


def test_finish_missing_instruction_raises():
    rob = deque([Instruction(instr_id=1, source_memory=[1]), Instruction(instr_id=4, source_memory=[2])])
    with pytest.raises(LookupError):
        LSQEntry(instr_id=2).finish(rob)
    with pytest.raises(LookupError):
        LSQEntry(instr_id=9).finish(rob)


def test_finish_beyond_mem_ops_raises():
    rob = [Instruction(instr_id=7, destination_memory=[0x70])]
    entry = LSQEntry(instr_id=7)
    entry.finish(rob)
    with pytest.raises(ValueError):
        entry.finish(rob)
    assert rob[0].completed_mem_ops == rob[0].num_mem_ops()


def test_issue_read_prepares_packet():
    lower = _Recorder()
    bus = CacheBus(cpu=2, lower_level=lower)
    packet = Request(v_address=0xDEADBEEF, instr_id=11, ip=0xCAFE)
    assert bus.issue_read(packet) is True
    sent = lower.rq[0]
    assert sent.address == 0xDEADBEEF
    assert sent.is_translated is False
    assert sent.cpu == 2
    assert sent.type is AccessType.LOAD
    assert sent.response_requested is True
    assert packet.address == 0
    assert lower.wq == []


def test_issue_read_reports_rejection():
    bus = CacheBus(cpu=0, lower_level=_Recorder(accept=False))
    assert bus.issue_read(Request(v_address=0x40)) is False


def test_issue_write_prepares_packet():
    lower = _Recorder()
    bus = CacheBus(cpu=1, lower_level=lower)
    packet = Request(v_address=0x1234, instr_id=3)
    assert bus.issue_write(packet) is True
    sent = lower.wq[0]
    assert sent.address == 0x1234
    assert sent.type is AccessType.WRITE
    assert sent.response_requested is False
    assert sent.cpu == 1
    assert packet.response_requested is True
    assert lower.rq == []