"""Tests for knowledge_graph/memory_governor.py"""

import asyncio

import pytest

from knowledge_graph.memory_governor import MemoryGovernor, PressureLevel


def test_sample_reports_usage(make_governor):
    governor = make_governor(0.5)

    sample = governor.sample()

    assert sample.used_bytes == 500
    assert sample.limit_bytes == 1000
    assert sample.usage_ratio == pytest.approx(0.5)
    assert sample.usage_percent == pytest.approx(50.0)
    assert sample.level == PressureLevel.NORMAL
    assert governor.last_sample is sample


@pytest.mark.parametrize("ratio,level", [
    (0.1, PressureLevel.NORMAL),
    (0.75, PressureLevel.WARNING),
    (0.89, PressureLevel.WARNING),
    (0.9, PressureLevel.CRITICAL),
    (1.2, PressureLevel.CRITICAL),
])
def test_classification_thresholds(make_governor, ratio, level):
    assert make_governor(ratio).sample().level == level


def test_admit_compares_against_callers_ratio(make_governor):
    governor = make_governor(0.6)
    assert governor.admit(0.85) is True
    assert governor.admit(0.6) is False
    assert governor.admit(0.5) is False


def test_critical_notifies_components_and_survives_failing_callback(make_governor):
    governor = make_governor(0.95)
    seen = []

    def broken(level):
        raise RuntimeError("nope")

    governor.register_component("broken", on_memory_pressure=broken)
    governor.register_component("cache", on_memory_pressure=seen.append)

    governor.sample()

    assert seen == ["critical"]


def test_warning_does_not_notify_components(make_governor):
    governor = make_governor(0.8)
    seen = []
    governor.register_component("cache", on_memory_pressure=seen.append)

    assert governor.sample().level == PressureLevel.WARNING
    assert seen == []


def test_registration_last_wins_and_unregister(make_governor):
    governor = make_governor(0.95)
    first, second = [], []
    governor.register_component("cache", on_memory_pressure=first.append)
    governor.register_component("cache", on_memory_pressure=second.append)

    governor.sample()

    assert first == [] and second == ["critical"]
    assert governor.unregister_component("cache") is True
    assert governor.unregister_component("cache") is False


def test_clear_all_calls_clear_cache(make_governor):
    governor = make_governor(0.1)
    cleared = []
    governor.register_component("a", clear_cache=lambda: cleared.append("a"))
    governor.register_component("b")

    governor.clear_all()

    assert cleared == ["a"]


def test_stats_include_components_and_last_sample(make_governor):
    governor = make_governor(0.3)
    governor.register_component("cache", memory_usage=lambda: {"entries": 3})
    governor.register_component("silent")

    assert governor.stats()["last_sample"] is None
    governor.sample()
    stats = governor.stats()

    assert stats["last_sample"]["usage_percent"] == pytest.approx(30.0)
    assert stats["last_sample"]["level"] == "normal"
    assert stats["components"] == {"cache": {"entries": 3}, "silent": None}


def test_invalid_thresholds_rejected():
    with pytest.raises(ValueError):
        MemoryGovernor(warning_threshold=0.9, critical_threshold=0.5, memory_reader=lambda: (1, 10))


def test_default_reader_measures_this_process():
    governor = MemoryGovernor(warning_threshold=0.99, critical_threshold=0.999)

    sample = governor.sample()

    assert sample.used_bytes > 0
    assert sample.limit_bytes >= sample.used_bytes
    assert 0 < sample.usage_ratio <= 1


def test_emergency_clear_runs_after_notifying(make_governor):
    governor = make_governor(0.95, emergency_clear=True)
    calls = []
    governor.register_component(
        "cache",
        on_memory_pressure=lambda level: calls.append(("pressure", level)),
        clear_cache=lambda: calls.append(("clear",)),
    )

    governor.sample()

    assert calls == [("pressure", "critical"), ("clear",)]


def test_emergency_clear_is_off_by_default_and_skips_warning(make_governor):
    cleared = []
    quiet = MemoryGovernor(warning_threshold=0.75, critical_threshold=0.9, memory_reader=lambda: (950, 1000))
    quiet.register_component("cache", clear_cache=lambda: cleared.append("quiet"))
    warm = make_governor(0.8, emergency_clear=True)
    warm.register_component("cache", clear_cache=lambda: cleared.append("warm"))

    quiet.sample()
    warm.sample()

    assert cleared == []


# ---------------------------------------------------------------------------
# Background monitoring
# ---------------------------------------------------------------------------

def test_monitoring_samples_on_interval_until_stopped(make_governor):
    governor = make_governor(0.2, 0.95)
    seen = []
    governor.register_component("cache", on_memory_pressure=seen.append)

    async def scenario():
        task = governor.start_monitoring(0.01)
        assert governor.start_monitoring(0.01) is task
        for _ in range(200):
            if seen:
                break
            await asyncio.sleep(0.01)
        await governor.stop_monitoring()
        return task

    task = asyncio.run(scenario())

    assert seen and seen[0] == "critical"
    assert governor._read.calls >= 2
    assert task.done()
    assert governor.monitoring is False


def test_monitoring_disabled_for_non_positive_interval(make_governor):
    governor = make_governor(0.2)

    async def scenario():
        started = governor.start_monitoring(0)
        await governor.stop_monitoring()
        return started

    assert asyncio.run(scenario()) is None
    assert governor.last_sample is None


def test_monitoring_survives_reader_errors(make_governor):
    reads = []

    def flaky_reader():
        reads.append(1)
        if len(reads) == 1:
            raise OSError("proc unavailable")
        return 100, 1000

    governor = MemoryGovernor(warning_threshold=0.75, critical_threshold=0.9, memory_reader=flaky_reader)

    async def scenario():
        governor.start_monitoring(0.01)
        for _ in range(200):
            if governor.last_sample is not None:
                break
            await asyncio.sleep(0.01)
        await governor.stop_monitoring()

    asyncio.run(scenario())

    assert len(reads) >= 2
    assert governor.last_sample.usage_percent == pytest.approx(10.0)
