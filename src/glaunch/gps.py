"""
gps — GPU Process Status
========================

Lists every compute process on the local GPUs, one block per process:

  [4242] python train.py --lr 0.1
  [4242]   Owner:
  [4242]     Effective UID: 1000 (alice)
  ...
  [4242]   GPU memory: running on 2 device(s), 18432MiB in use
  [4242]     on device 0 (NVIDIA A100): 9216MiB / 40960MiB, 22.500%

Devices come from the same telemetry backends glaunch uses. Process details
(command line, owners, CPU time, resident memory) come from psutil; whatever
cannot be read is left out of the block and logged at WARNING.
"""

from __future__ import annotations
import argparse
import logging
import pwd
import shlex
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import psutil  # type: ignore

from . import __version__
from .cli import configure_logging
from .devices import DeviceProvider, DeviceSnapshot, discover_provider, shutdown_provider
from .errors import GlaunchError, TelemetryError
from .units import readable_duration, readable_size

log = logging.getLogger(__name__)


# ─── Records ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DeviceUsage:
    device:      DeviceSnapshot
    memory_used: int

    @property
    def share(self) -> float:
        """Percent of the device's memory held by the process."""
        if self.device.total_memory <= 0:
            return 0.0
        return self.memory_used / self.device.total_memory * 100


@dataclass(frozen=True)
class Owner:
    role:  str      # Effective / Real / Saved
    uid:   int
    login: str


@dataclass
class ProcessReport:
    pid:         int
    command:     list[str] = field(default_factory=list)
    owners:      list[Owner] = field(default_factory=list)
    user_time:   Optional[float] = None      # seconds of CPU time
    system_time: Optional[float] = None
    elapsed:     Optional[float] = None      # seconds since the process started
    cpu_memory:  Optional[int] = None        # resident bytes
    devices:     list[DeviceUsage] = field(default_factory=list)

    @property
    def gpu_memory(self) -> int:
        return sum(d.memory_used for d in self.devices)

    def render(self) -> list[str]:
        tag = f"[{self.pid}]"
        lines = [f"{tag} {shlex.join(self.command)}" if self.command else f"{tag} unknown command line"]

        if self.owners:
            lines.append(f"{tag}   Owner:")
            for owner in self.owners:
                label = f"{owner.role} UID:"
                lines.append(f"{tag}     {label:<15} {owner.uid} ({owner.login})")

        timing = [("Usermode:", self.user_time), ("Kernelmode:", self.system_time),
                  ("Wall-clock:", self.elapsed)]
        if any(value is not None for _, value in timing):
            lines.append(f"{tag}   Timing:")
            for label, value in timing:
                if value is not None:
                    seconds = int(value)
                    lines.append(f"{tag}     {label:<12} {seconds} second(s) ({readable_duration(seconds)})")

        if self.cpu_memory is not None:
            lines.append(f"{tag}   CPU memory: {readable_size(self.cpu_memory)}")

        lines.append(
            f"{tag}   GPU memory: running on {len(self.devices)} device(s), "
            f"{readable_size(self.gpu_memory)} in use"
        )
        for usage in self.devices:
            device = usage.device
            lines.append(
                f"{tag}     on device {device.id} ({device.name}): "
                f"{readable_size(usage.memory_used)} / {readable_size(device.total_memory)}, "
                f"{usage.share:.3f}%"
            )
        return lines


# ─── Collection ───────────────────────────────────────────────────────────────

def login_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _read(pid: int, what: str, getter: Callable):
    try:
        return getter()
    except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
        log.warning(f"[pid={pid}] cannot get {what}: {e}")
        return None


def inspect_process(pid: int, clock: Callable[[], float] = time.time) -> ProcessReport:
    """Everything psutil can tell about pid. Missing fields stay None / empty."""
    report = ProcessReport(pid=pid)
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess as e:
        log.warning(f"[pid={pid}] {e}")
        return report

    with proc.oneshot():
        report.command = _read(pid, "command line", proc.cmdline) or []

        uids = _read(pid, "owner", proc.uids)
        if uids is not None:
            report.owners = [
                Owner(role, uid, login_name(uid))
                for role, uid in (("Effective", uids.effective), ("Real", uids.real),
                                  ("Saved", uids.saved))
            ]

        times = _read(pid, "timing", proc.cpu_times)
        if times is not None:
            report.user_time, report.system_time = times.user, times.system

        started = _read(pid, "start time", proc.create_time)
        if started is not None:
            report.elapsed = max(0.0, clock() - started)

        memory = _read(pid, "memory information", proc.memory_info)
        if memory is not None:
            report.cpu_memory = memory.rss
    return report


def collect_processes(
    provider: DeviceProvider,
    inspect:  Optional[Callable[[int], ProcessReport]] = None,
) -> list[ProcessReport]:
    """
    One report per pid computing on any device, ordered by pid.
    A device whose queries fail is logged and skipped.
    """
    inspect = inspect or inspect_process
    reports: dict[int, ProcessReport] = {}
    for position, handle in enumerate(provider.list_devices()):
        try:
            device  = provider.snapshot(handle)
            running = provider.processes(handle)
        except TelemetryError as e:
            log.warning(f"skipping device #{position}: {e}")
            continue
        for proc in running:
            if proc.pid not in reports:
                reports[proc.pid] = inspect(proc.pid)
            reports[proc.pid].devices.append(DeviceUsage(device, proc.memory_used))
    return [reports[pid] for pid in sorted(reports)]


# ─── Entry point ──────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gps",
        description="List compute processes running on the local GPUs",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    try:
        provider = discover_provider()
        try:
            reports = collect_processes(provider)
        finally:
            shutdown_provider(provider)
    except GlaunchError as e:
        log.error(str(e))
        return e.exit_code

    if not reports:
        print("no compute processes running")
    for report in reports:
        print("\n".join(report.render()))
        print()
    return 0


if __name__ == "__main__":
    sys.exit(main())
