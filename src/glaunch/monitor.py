"""
Memory Monitor
==============

Samples how much GPU memory the launched program is using, every
`interval` seconds, for as long as the supervisor lives.

Attribution is by process group: the supervised child leads its own group,
so anything it forks (data loader workers, torchrun ranks, …) is counted
too. A program that moves its workers into a different process group
escapes this accounting and the reported figure undercounts.

Runs on a daemon thread; it never blocks the thread waiting for the child,
and goes away with the process if nobody calls stop().
"""

from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from .devices import DeviceProvider
from .errors import TelemetryError
from .units import readable_size

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitorSample:
    timestamp:               float    # wall clock, seconds since epoch
    total_attributed_memory: int      # bytes, summed across the selected devices

    def describe(self) -> str:
        stamp = time.strftime("%Y %B %d %H:%M:%S", time.localtime(self.timestamp))
        return f"[{stamp}] {readable_size(self.total_attributed_memory)} GPU memory in use"


def log_sample(sample: MonitorSample):
    log.info(sample.describe())


@dataclass
class MemoryMonitor:
    pgid:       int
    device_ids: Sequence[int]
    interval:   float
    provider:   DeviceProvider
    emit:       Callable[[MonitorSample], None] = log_sample
    clock:      Callable[[], float] = time.time

    _stop:           threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _thread:         Optional[threading.Thread] = field(default=None, init=False, repr=False)
    _last_timestamp: float = field(default=float("-inf"), init=False, repr=False)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"memory-monitor-{self.pgid}",
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _run(self):
        while not self._stop.wait(self.interval):
            self.emit(self.sample())

    def sample(self) -> MonitorSample:
        """Query every selected device once and total the child group's usage."""
        total = 0
        for device_id in self.device_ids:
            try:
                handle = self.provider.handle_for(device_id)
                processes = self.provider.processes(handle)
            except TelemetryError as e:
                log.warning(f"[monitor] device {device_id}: {e}, skipping")
                continue
            total += sum(p.memory_used for p in processes if p.process_group_id == self.pgid)

        # Wall clock may step backwards (NTP); samples must not.
        timestamp = max(self.clock(), self._last_timestamp)
        self._last_timestamp = timestamp
        return MonitorSample(timestamp=timestamp, total_attributed_memory=total)
