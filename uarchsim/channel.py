"""Request queues that connect levels of the memory hierarchy."""

from __future__ import annotations

import enum
from collections import deque
from dataclasses import dataclass, field
from typing import Any

SIZE_MAX = 2**64 - 1
UINT8_MAX = 0xFF
UINT32_MAX = 0xFFFF_FFFF


class Deadlock(Exception):
    """Raised when a CPU stops making forward progress."""

    def __init__(self, which: int) -> None:
        super().__init__(f"deadlock detected on CPU {which}")
        self.which = which


class AccessType(enum.IntEnum):
    """Kinds of memory access carried by a request."""

    LOAD = 0
    RFO = 1
    PREFETCH = 2
    WRITE = 3
    TRANSLATION = 4


ACCESS_TYPE_NAMES = tuple(t.name for t in AccessType)


@dataclass
class CacheQueueStats:
    """Counters kept for the queues of one channel."""

    rq_access: int = 0
    rq_merged: int = 0
    rq_full: int = 0
    rq_to_cache: int = 0
    pq_access: int = 0
    pq_merged: int = 0
    pq_full: int = 0
    pq_to_cache: int = 0
    wq_access: int = 0
    wq_merged: int = 0
    wq_full: int = 0
    wq_to_cache: int = 0
    wq_forward: int = 0


@dataclass
class Request:
    """A packet travelling towards a lower level."""

    forward_checked: bool = False
    is_translated: bool = True
    response_requested: bool = True
    asid: tuple[int, int] = (UINT8_MAX, UINT8_MAX)
    type: AccessType = AccessType.LOAD
    pf_metadata: int = 0
    cpu: int = UINT32_MAX
    address: int = 0
    v_address: int = 0
    data: int = 0
    instr_id: int = 0
    ip: int = 0
    instr_depend_on_me: list[Any] = field(default_factory=list)


@dataclass
class Response:
    """A packet travelling back towards the requester."""

    address: int
    v_address: int
    data: int
    pf_metadata: int = 0
    instr_depend_on_me: list[Any] = field(default_factory=list)

    @classmethod
    def from_request(cls, request: Request) -> "Response":
        return cls(
            request.address,
            request.v_address,
            request.data,
            request.pf_metadata,
            list(request.instr_depend_on_me),
        )


class Channel:
    """Read, prefetch and write queues plus the queue of returned responses."""

    def __init__(
        self,
        rq_size: int = SIZE_MAX,
        pq_size: int = SIZE_MAX,
        wq_size: int = SIZE_MAX,
        offset_bits: int = 0,
        match_offset: bool = False,
    ) -> None:
        self._rq_size = rq_size
        self._pq_size = pq_size
        self._wq_size = wq_size
        self.offset_bits = offset_bits
        self.match_offset_bits = match_offset
        self.rq: deque[Request] = deque()
        self.pq: deque[Request] = deque()
        self.wq: deque[Request] = deque()
        self.returned: deque[Response] = deque()
        self.sim_stats = CacheQueueStats()
        self.roi_stats = CacheQueueStats()

    def rq_occupancy(self) -> int:
        return len(self.rq)

    def wq_occupancy(self) -> int:
        return len(self.wq)

    def pq_occupancy(self) -> int:
        return len(self.pq)

    def rq_size(self) -> int:
        return self._rq_size

    def wq_size(self) -> int:
        return self._wq_size

    def pq_size(self) -> int:
        return self._pq_size