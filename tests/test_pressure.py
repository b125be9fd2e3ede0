from types import SimpleNamespace

import pytest

from myydh.config.models import ProcessLoadSettings
from myydh.monitoring.pressure import PressureMonitor, PressureSample


class FakeProcess:
    def memory_info(self):
        return SimpleNamespace(rss=2048, data=1024)


def test_zero_thresholds_disable_checks():
    monitor = PressureMonitor(ProcessLoadSettings())
    sample = PressureSample(
        event_loop_delay=10_000, event_loop_utilization=1.0, heap_used_bytes=10**12, rss_bytes=10**12
    )
    assert monitor.exceeded(sample) == []
    assert not monitor.record_sample(sample)


def test_pressure_engages_and_recovers():
    monitor = PressureMonitor(
        ProcessLoadSettings(max_event_loop_delay=100, max_rss_bytes=1000)
    )
    assert monitor.record_sample(PressureSample(event_loop_delay=250, rss_bytes=10))
    assert monitor.under_pressure
    assert monitor.breaches == ["event_loop_delay"]

    assert monitor.record_sample(PressureSample(event_loop_delay=5, rss_bytes=5000))
    assert monitor.breaches == ["rss_bytes"]

    assert not monitor.record_sample(PressureSample(event_loop_delay=5, rss_bytes=10))
    assert not monitor.under_pressure


def test_thresholds_are_exclusive():
    monitor = PressureMonitor(ProcessLoadSettings(max_heap_used_bytes=1000))
    assert not monitor.record_sample(PressureSample(heap_used_bytes=1000))
    assert monitor.record_sample(PressureSample(heap_used_bytes=1001))


@pytest.mark.asyncio
async def test_sample_once_reads_process_memory():
    monitor = PressureMonitor(ProcessLoadSettings(sample_interval=0.01), process=FakeProcess())
    sample = await monitor.sample_once()
    assert sample.heap_used_bytes == 1024
    assert sample.rss_bytes == 2048
    assert sample.event_loop_delay >= 0
    assert 0 <= sample.event_loop_utilization <= 1


@pytest.mark.asyncio
async def test_start_only_when_enabled():
    idle = PressureMonitor(ProcessLoadSettings())
    idle.start()
    assert idle._task is None

    active = PressureMonitor(
        ProcessLoadSettings(max_rss_bytes=10**15, sample_interval=0.01), process=FakeProcess()
    )
    active.start()
    assert active._task is not None
    await active.stop()
    assert active._task is None
