"""Simulation phases, their statistics, and JSON output of those statistics."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, TextIO

from .channel import AccessType
from .dram import DramStats
from .instr import BranchType

_BRANCH_TYPES = (
    BranchType.BRANCH_DIRECT_JUMP,
    BranchType.BRANCH_INDIRECT,
    BranchType.BRANCH_CONDITIONAL,
    BranchType.BRANCH_DIRECT_CALL,
    BranchType.BRANCH_INDIRECT_CALL,
    BranchType.BRANCH_RETURN,
)

_ACCESS_TYPES = (
    AccessType.LOAD,
    AccessType.RFO,
    AccessType.PREFETCH,
    AccessType.WRITE,
    AccessType.TRANSLATION,
)


def _per_branch_type() -> list[int]:
    return [0] * len(BranchType)


def _per_access_type() -> list[Any]:
    return [0] * len(AccessType)


@dataclass
class CpuStats:
    """Counters collected by one core over a phase."""

    name: str = ""
    begin_instrs: int = 0
    begin_cycles: int = 0
    end_instrs: int = 0
    end_cycles: int = 0
    total_rob_occupancy_at_branch_mispredict: int = 0
    total_branch_types: list[int] = field(default_factory=_per_branch_type)
    branch_type_misses: list[int] = field(default_factory=_per_branch_type)

    def instrs(self) -> int:
        """Instructions retired during the phase."""
        return self.end_instrs - self.begin_instrs

    def cycles(self) -> int:
        """Cycles elapsed during the phase."""
        return self.end_cycles - self.begin_cycles


@dataclass
class CacheStats:
    """Counters collected by one cache over a phase."""

    name: str = ""
    pf_requested: int = 0
    pf_issued: int = 0
    pf_useful: int = 0
    pf_useless: int = 0
    pf_fill: int = 0
    hits: list[Any] = field(default_factory=_per_access_type)
    misses: list[Any] = field(default_factory=_per_access_type)
    total_miss_latency: int = 0
    avg_miss_latency: float = 0.0


@dataclass
class PhaseInfo:
    """Description of one simulation phase."""

    name: str
    is_warmup: bool
    length: int
    trace_index: list[int] = field(default_factory=list)
    trace_names: list[str] = field(default_factory=list)


@dataclass
class PhaseStats:
    """Everything measured during one phase."""

    name: str = ""
    trace_names: list[str] = field(default_factory=list)
    roi_cpu_stats: list[CpuStats] = field(default_factory=list)
    sim_cpu_stats: list[CpuStats] = field(default_factory=list)
    roi_cache_stats: list[CacheStats] = field(default_factory=list)
    sim_cache_stats: list[CacheStats] = field(default_factory=list)
    roi_dram_stats: list[DramStats] = field(default_factory=list)
    sim_dram_stats: list[DramStats] = field(default_factory=list)


def _ratio(numerator: float, denominator: float) -> Optional[float]:
    """Divide the ceilings of both values; a non-finite result is written as null."""
    num = math.ceil(numerator)
    den = math.ceil(denominator)
    if den == 0:
        return None
    return num / den


def _finite(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def cpu_stats_to_json(stats: CpuStats) -> dict[str, Any]:
    """JSON-ready mapping for a core's statistics."""
    misses = stats.branch_type_misses
    total_mispredictions = sum(misses[t] for t in _BRANCH_TYPES)
    return {
        "instructions": stats.instrs(),
        "cycles": stats.cycles(),
        "Avg ROB occupancy at mispredict": _ratio(
            stats.total_rob_occupancy_at_branch_mispredict, total_mispredictions
        ),
        "mispredict": {t.name: misses[t] for t in _BRANCH_TYPES},
    }


def cache_stats_to_json(stats: CacheStats) -> dict[str, Any]:
    """JSON-ready mapping for a cache's statistics."""
    result: dict[str, Any] = {
        "prefetch requested": stats.pf_requested,
        "prefetch issued": stats.pf_issued,
        "useful prefetch": stats.pf_useful,
        "useless prefetch": stats.pf_useless,
        "miss latency": _finite(stats.avg_miss_latency),
    }
    for t in _ACCESS_TYPES:
        result.setdefault(t.name, {"hit": stats.hits[t], "miss": stats.misses[t]})
    return result


def dram_stats_to_json(stats: DramStats) -> dict[str, Any]:
    """JSON-ready mapping for a DRAM channel's statistics."""
    return {
        "RQ ROW_BUFFER_HIT": stats.rq_row_buffer_hit,
        "RQ ROW_BUFFER_MISS": stats.rq_row_buffer_miss,
        "WQ ROW_BUFFER_HIT": stats.wq_row_buffer_hit,
        "WQ ROW_BUFFER_MISS": stats.wq_row_buffer_miss,
        "AVG DBUS CONGESTED CYCLE": _ratio(stats.dbus_cycle_congested, stats.dbus_count_congested),
    }


def _region_to_json(
    cpu_stats: Iterable[CpuStats], dram_stats: Iterable[DramStats], cache_stats: Iterable[CacheStats]
) -> dict[str, Any]:
    region: dict[str, Any] = {
        "cores": [cpu_stats_to_json(s) for s in cpu_stats],
        "DRAM": [dram_stats_to_json(s) for s in dram_stats],
    }
    for cache in cache_stats:
        region.setdefault(cache.name, cache_stats_to_json(cache))
    return region


def phase_stats_to_json(stats: PhaseStats) -> dict[str, Any]:
    """JSON-ready mapping for a whole phase."""
    return {
        "name": stats.name,
        "traces": list(stats.trace_names),
        "roi": _region_to_json(stats.roi_cpu_stats, stats.roi_dram_stats, stats.roi_cache_stats),
        "sim": _region_to_json(stats.sim_cpu_stats, stats.sim_dram_stats, stats.sim_cache_stats),
    }


class JsonPrinter:
    """Writes phase statistics to a text stream as a compact JSON array."""

    def __init__(self, stream: TextIO) -> None:
        self.stream = stream

    def print(self, stats: Iterable[PhaseStats]) -> None:
        document = [phase_stats_to_json(s) for s in stats]
        self.stream.write(
            json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
        )