"""Shared fixtures: an in-memory device provider standing in for NVML."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import textwrap
from pathlib import Path

import pytest

from glaunch.devices import DeviceProcess, DeviceSnapshot
from glaunch.errors import TelemetryError

TESTS = Path(__file__).resolve().parent
SRC = TESTS.parent / "src"


class FakeProvider:
    """Devices and processes held in dicts; ids listed in `broken` fail every query."""

    def __init__(self, devices=(), processes=None, broken=()):
        self.devices = {d.id: d for d in devices}
        self.running = dict(processes or {})
        self.broken = set(broken)
        self.snapshot_calls = 0
        self.process_calls = 0

    def list_devices(self):
        return list(self.devices)

    def handle_for(self, device_id):
        if device_id in self.broken:
            raise TelemetryError(f"device {device_id} is lost")
        return device_id

    def snapshot(self, handle):
        self.snapshot_calls += 1
        if handle in self.broken:
            raise TelemetryError(f"device {handle} is lost")
        return self.devices[handle]

    def processes(self, handle):
        self.process_calls += 1
        if handle in self.broken:
            raise TelemetryError(f"device {handle} is lost")
        return list(self.running.get(handle, []))


def gpu(id, free, total=16000, name="Fake GPU"):
    return DeviceSnapshot(id=id, name=name, free_memory=free, total_memory=total,
                          used_memory=total - free)


def proc(pid, pgid, used):
    return DeviceProcess(pid=pid, process_group_id=pgid, memory_used=used)


def run_in_fresh_interpreter(script, *args, timeout=60):
    """
    Run script in a new interpreter that can import glaunch and these helpers.
    For code that rewires fds 1 and 2 or replaces the process image.
    """
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC), str(TESTS), env.get("PYTHONPATH")]))
    return subprocess.run(
        [sys.executable, "-c", textwrap.dedent(script), *map(str, args)],
        capture_output=True, text=True, timeout=timeout, env=env,
    )


@pytest.fixture
def three_gpus():
    return [gpu(0, 2000), gpu(1, 8000), gpu(2, 5000)]


@pytest.fixture
def provider(three_gpus):
    return FakeProvider(three_gpus)


@pytest.fixture(autouse=True)
def isolated_defaults(monkeypatch, tmp_path):
    """Keep the user's real defaults file and GLAUNCH_* variables out of tests."""
    monkeypatch.setenv("GLAUNCH_CONFIG", str(tmp_path / "no-such-config.json"))
    for var in ("GLAUNCH_POLICY", "GLAUNCH_WAIT_TIMEOUT", "GLAUNCH_WAIT_INTERVAL"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(autouse=True)
def restore_root_logger():
    """The entry points reconfigure the root logger; put the runner's handlers back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
