import io
import json

import pytest

from uarchsim.dram import DramStats
from uarchsim.instr import BranchType
from uarchsim.stats import (
    CacheStats,
    CpuStats,
    JsonPrinter,
    PhaseInfo,
    PhaseStats,
    cache_stats_to_json,
    cpu_stats_to_json,
    dram_stats_to_json,
    phase_stats_to_json,
)


def _sample_phase():
    cpu = CpuStats(name="CPU 0", end_instrs=1000, end_cycles=2000)
    cache = CacheStats(name="cpu0_L1D", pf_issued=4)
    dram = DramStats(name="Channel 0", rq_row_buffer_hit=5)
    return PhaseStats(
        name="Simulation",
        trace_names=["a.xz"],
        roi_cpu_stats=[cpu],
        sim_cpu_stats=[cpu],
        roi_cache_stats=[cache],
        sim_cache_stats=[cache],
        roi_dram_stats=[dram],
        sim_dram_stats=[dram],
    )


def test_cpu_instrs_and_cycles():
    stats = CpuStats(end_instrs=1000, end_cycles=2500)
    assert stats.instrs() == 1000
    assert stats.cycles() == 2500


def test_cpu_instrs_zero_when_phase_empty():
    stats = CpuStats(begin_instrs=42, end_instrs=42, begin_cycles=7, end_cycles=7)
    assert stats.instrs() == 0
    assert stats.cycles() == 0


def test_cpu_json_keys_and_mispredicts():
    stats = CpuStats(end_instrs=100, end_cycles=200)
    stats.branch_type_misses[BranchType.BRANCH_CONDITIONAL] = 3
    stats.branch_type_misses[BranchType.BRANCH_RETURN] = 1
    out = cpu_stats_to_json(stats)
    assert set(out) == {"instructions", "cycles", "Avg ROB occupancy at mispredict", "mispredict"}
    assert out["instructions"] == 100
    assert out["mispredict"]["BRANCH_CONDITIONAL"] == 3
    assert out["mispredict"]["BRANCH_RETURN"] == 1
    assert set(out["mispredict"]) == {
        "BRANCH_DIRECT_JUMP",
        "BRANCH_INDIRECT",
        "BRANCH_CONDITIONAL",
        "BRANCH_DIRECT_CALL",
        "BRANCH_INDIRECT_CALL",
        "BRANCH_RETURN",
    }


def test_cpu_json_average_rob_occupancy():
    stats = CpuStats(total_rob_occupancy_at_branch_mispredict=10)
    stats.branch_type_misses[BranchType.BRANCH_INDIRECT] = 4
    assert cpu_stats_to_json(stats)["Avg ROB occupancy at mispredict"] == pytest.approx(2.5)


def test_cpu_json_ignores_not_branch_misses():
    stats = CpuStats()
    stats.branch_type_misses[BranchType.NOT_BRANCH] = 9
    out = cpu_stats_to_json(stats)
    assert out["Avg ROB occupancy at mispredict"] is None
    assert "NOT_BRANCH" not in out["mispredict"]


def test_cache_json_contents():
    stats = CacheStats(name="LLC", pf_requested=8, pf_issued=6, pf_useful=2, pf_useless=1, avg_miss_latency=12.5)
    stats.hits[0] = 11
    stats.misses[3] = 7
    out = cache_stats_to_json(stats)
    assert out["prefetch requested"] == 8
    assert out["prefetch issued"] == 6
    assert out["useful prefetch"] == 2
    assert out["useless prefetch"] == 1
    assert out["miss latency"] == 12.5
    assert out["LOAD"] == {"hit": 11, "miss": 0}
    assert out["WRITE"] == {"hit": 0, "miss": 7}
    assert {"RFO", "PREFETCH", "TRANSLATION"} <= set(out)


def test_cache_json_nan_latency_is_null():
    out = cache_stats_to_json(CacheStats(avg_miss_latency=float("nan")))
    assert out["miss latency"] is None


def test_dram_json_contents():
    stats = DramStats(rq_row_buffer_hit=1, rq_row_buffer_miss=2, wq_row_buffer_hit=3, wq_row_buffer_miss=4,
                      dbus_cycle_congested=12, dbus_count_congested=4)
    out = dram_stats_to_json(stats)
    assert out["RQ ROW_BUFFER_HIT"] == 1
    assert out["RQ ROW_BUFFER_MISS"] == 2
    assert out["WQ ROW_BUFFER_HIT"] == 3
    assert out["WQ ROW_BUFFER_MISS"] == 4
    assert out["AVG DBUS CONGESTED CYCLE"] == pytest.approx(3.0)


def test_dram_json_without_congestion_is_null():
    assert dram_stats_to_json(DramStats())["AVG DBUS CONGESTED CYCLE"] is None


def test_phase_json_structure():
    out = phase_stats_to_json(_sample_phase())
    assert out["name"] == "Simulation"
    assert out["traces"] == ["a.xz"]
    for region in ("roi", "sim"):
        assert set(out[region]) == {"cores", "DRAM", "cpu0_L1D"}
        assert out[region]["cores"][0]["instructions"] == 1000
        assert out[region]["DRAM"][0]["RQ ROW_BUFFER_HIT"] == 5
        assert out[region]["cpu0_L1D"]["prefetch issued"] == 4


def test_phase_json_does_not_overwrite_reserved_names():
    phase = _sample_phase()
    phase.roi_cache_stats = [CacheStats(name="cores")]
    out = phase_stats_to_json(phase)
    assert out["roi"]["cores"] == [cpu_stats_to_json(phase.roi_cpu_stats[0])]
    assert out["roi"]["cores"][0]["instructions"] == 1000


def test_json_printer_round_trip():
    stream = io.StringIO()
    phases = [_sample_phase(), PhaseStats(name="Warmup")]
    JsonPrinter(stream).print(phases)
    text = stream.getvalue()
    parsed = json.loads(text)
    assert [p["name"] for p in parsed] == ["Simulation", "Warmup"]
    assert parsed[0] == phase_stats_to_json(phases[0])
    assert ": " not in text and ", " not in text


def test_json_printer_sorts_keys():
    stream = io.StringIO()
    JsonPrinter(stream).print([_sample_phase()])
    parsed = json.loads(stream.getvalue())
    assert list(parsed[0]) == sorted(parsed[0])
    assert list(parsed[0]["roi"]) == sorted(parsed[0]["roi"])


def test_json_printer_writes_null_for_undefined_ratios():
    stream = io.StringIO()
    JsonPrinter(stream).print([_sample_phase()])
    assert "null" in stream.getvalue()
    parsed = json.loads(stream.getvalue())
    assert parsed[0]["roi"]["DRAM"][0]["AVG DBUS CONGESTED CYCLE"] is None


def test_phase_info_holds_traces():
    info = PhaseInfo("Warmup", True, 500, [0, 1], ["x.xz", "y.xz"])
    assert info.is_warmup is True
    assert info.trace_names[info.trace_index[1]] == "y.xz"