import dataclasses

import pytest

from uarchsim.channel import (
    ACCESS_TYPE_NAMES,
    AccessType,
    CacheQueueStats,
    Channel,
    Deadlock,
    Request,
    Response,
)


def test_access_type_order():
    names = [ACCESS_TYPE_NAMES[Request(type=t).type] for t in AccessType]
    assert names == ["LOAD", "RFO", "PREFETCH", "WRITE", "TRANSLATION"]
    assert [int(Request(type=t).type) for t in AccessType] == list(range(len(AccessType)))


def test_request_defaults():
    req = Request()
    assert req.is_translated is True
    assert req.response_requested is True
    assert req.forward_checked is False
    assert req.asid == (255, 255)
    assert req.cpu == 2**32 - 1
    assert req.type is AccessType.LOAD
    assert req.instr_depend_on_me == []


def test_request_dependency_lists_are_independent():
    a, b = Request(), Request()
    a.instr_depend_on_me.append(object())
    assert b.instr_depend_on_me == []


def test_response_from_request_copies_fields():
    req = Request(address=0xDEADBEEF, v_address=0xCAFEBABE, data=7, pf_metadata=3)
    dep = object()
    req.instr_depend_on_me.append(dep)
    resp = Response.from_request(req)
    assert resp.address == 0xDEADBEEF
    assert resp.v_address == 0xCAFEBABE
    assert resp.data == 7
    assert resp.pf_metadata == 3
    assert resp.instr_depend_on_me == [dep]


def test_response_dependencies_are_copied():
    req = Request(instr_depend_on_me=[object()])
    resp = Response.from_request(req)
    resp.instr_depend_on_me.clear()
    assert len(req.instr_depend_on_me) == 1


def test_default_channel_is_unbounded():
    chan = Channel()
    assert chan.rq_size() == 2**64 - 1
    assert chan.pq_size() == 2**64 - 1
    assert chan.wq_size() == 2**64 - 1


@pytest.mark.parametrize("size", [1, 8, 32, 256])
def test_rq_size(size):
    assert Channel(size, 32, 32, 0, False).rq_size() == size


@pytest.mark.parametrize("size", [1, 8, 32, 256])
def test_wq_size(size):
    assert Channel(32, 32, size, 0, False).wq_size() == size


@pytest.mark.parametrize("size", [1, 8, 32, 256])
def test_pq_size(size):
    assert Channel(32, size, 32, 0, False).pq_size() == size


def test_initial_occupancy_is_zero():
    chan = Channel(32, 32, 32, 6, False)
    assert (chan.rq_occupancy(), chan.pq_occupancy(), chan.wq_occupancy()) == (0, 0, 0)


def test_occupancy_follows_queues():
    chan = Channel(32, 32, 32, 6, False)
    chan.rq.append(Request(address=0xDEADBEEF))
    chan.wq.extend([Request(), Request()])
    assert chan.rq_occupancy() == 1
    assert chan.wq_occupancy() == 2
    assert chan.pq_occupancy() == 0


def test_stats_start_at_zero_and_are_separate():
    chan = Channel()
    assert all(v == 0 for v in dataclasses.asdict(chan.sim_stats).values())
    chan.sim_stats.rq_access += 1
    assert chan.roi_stats.rq_access == 0
    assert chan.sim_stats == CacheQueueStats(rq_access=1)


def test_deadlock_carries_cpu():
    assert Deadlock(3).which == 3
    with pytest.raises(Deadlock) as info:
        raise Deadlock(5)
    assert info.value.which == 5