import threading

import pytest

from rpo_probe.load import BackgroundLoad, burn_cycles


class FakeProcess:
    def __init__(self, target, args, name, daemon):
        self.target = target
        self.args = args
        self.name = name
        self.daemon = daemon
        self.started = False
        self.alive = False
        self.terminated = False
        self.stuck = False

    def start(self):
        self.started = True
        self.alive = True

    def join(self, timeout=None):
        if not self.stuck and self.args[1].is_set():
            self.alive = False

    def is_alive(self):
        return self.alive

    def terminate(self):
        self.terminated = True
        self.alive = False


class FakeContext:
    def __init__(self):
        self.processes = []

    def Event(self):
        return threading.Event()

    def Process(self, **kwargs):
        process = FakeProcess(**kwargs)
        self.processes.append(process)
        return process


def test_burn_cycles_returns_once_stopped():
    stop = threading.Event()
    stop.set()
    burn_cycles(50, stop)


def test_burn_cycles_stops_from_another_thread():
    stop = threading.Event()
    timer = threading.Timer(0.05, stop.set)
    timer.start()
    burn_cycles(50, stop, cycle=0.01)
    timer.join()
    assert stop.is_set()


def test_start_and_stop():
    ctx = FakeContext()
    load = BackgroundLoad(context=ctx)
    started = load.start(target_cpu=40, cores=1)
    assert started["status"] == "started"
    assert started["workers"] == 1
    assert started["targetCpuPercent"] == 40
    (process,) = ctx.processes
    assert process.started and process.daemon
    assert process.name == "warm-up-01"
    assert process.args[0] == 40
    assert load.status()["active"] is True

    assert load.start()["status"] == "already_running"

    assert load.stop() == {"status": "stopped", "workers": 1}
    assert not process.terminated
    assert load.stop() == {"status": "not_running"}
    assert load.status()["active"] is False


def test_unresponsive_worker_is_terminated():
    ctx = FakeContext()
    load = BackgroundLoad(context=ctx)
    load.start(target_cpu=90)
    ctx.processes[0].stuck = True
    load.stop(timeout=0.01)
    assert ctx.processes[0].terminated


@pytest.mark.parametrize("target_cpu, cores", [(0, 1), (101, 1), (50, 0)])
def test_invalid_load_requests(target_cpu, cores):
    ctx = FakeContext()
    with pytest.raises(ValueError):
        BackgroundLoad(context=ctx).start(target_cpu, cores)
    assert ctx.processes == []
