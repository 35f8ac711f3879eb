import threading

from glaunch.monitor import MemoryMonitor, MonitorSample

from conftest import FakeProvider, gpu, proc

CHILD_GROUP = 4242


def _provider(**kwargs):
    return FakeProvider(
        [gpu(0, 1000), gpu(1, 1000), gpu(2, 1000)],
        processes={
            0: [proc(4242, CHILD_GROUP, 300), proc(4250, CHILD_GROUP, 200), proc(77, 77, 9999)],
            1: [proc(4251, CHILD_GROUP, 1000)],
            2: [proc(4252, CHILD_GROUP, 5000)],
        },
        **kwargs,
    )


def test_sample_sums_child_group_across_selected_devices():
    monitor = MemoryMonitor(pgid=CHILD_GROUP, device_ids=[0, 1], interval=1, provider=_provider())
    sample = monitor.sample()
    # device 2 is not selected; pid 77 is someone else's job
    assert sample.total_attributed_memory == 1500


def test_failing_device_contributes_zero(caplog):
    provider = _provider(broken={1})
    monitor = MemoryMonitor(pgid=CHILD_GROUP, device_ids=[0, 1, 2], interval=1, provider=provider)
    assert monitor.sample().total_attributed_memory == 5500
    assert "device 1" in caplog.text


def test_timestamps_never_go_backwards():
    readings = iter([1000.0, 990.0, 1005.0])
    monitor = MemoryMonitor(pgid=CHILD_GROUP, device_ids=[0], interval=1,
                            provider=_provider(), clock=lambda: next(readings))
    stamps = [monitor.sample().timestamp for _ in range(3)]
    assert stamps == [1000.0, 1000.0, 1005.0]


def test_background_thread_emits_until_stopped():
    samples = []
    got_two = threading.Event()

    def emit(sample):
        samples.append(sample)
        if len(samples) >= 2:
            got_two.set()

    monitor = MemoryMonitor(pgid=CHILD_GROUP, device_ids=[0], interval=0.01,
                            provider=_provider(), emit=emit)
    thread = monitor.start()
    assert thread.daemon
    assert got_two.wait(5)
    monitor.stop(timeout=5)
    assert not thread.is_alive()
    assert all(s.total_attributed_memory == 500 for s in samples)


def test_sample_describe_mentions_readable_size():
    sample = MonitorSample(timestamp=0.0, total_attributed_memory=3 * 1024 ** 3)
    assert sample.describe().endswith("3072MiB GPU memory in use")
