"""
Device Telemetry
================

Reads the local GPUs through pynvml (NVML bindings). Falls back to parsing
nvidia-smi when the NVML library cannot be loaded from Python.

Both backends answer the same four questions:
  - which devices exist           list_devices()
  - how do I address device N     handle_for(N)
  - how much memory does it have  snapshot(handle)
  - who is computing on it        processes(handle)

Any of these may fail for one device without affecting the others;
collect_snapshot() turns such failures into a logged, skipped device.
"""

from __future__ import annotations
import logging
import os
import subprocess
import threading
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

from .errors import TelemetryError
from .units import readable_size

log = logging.getLogger(__name__)

_MiB = 1024 * 1024

# ─── Records ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DeviceSnapshot:
    id:           int     # NVML index, also what CUDA_VISIBLE_DEVICES takes
    name:         str
    free_memory:  int     # bytes
    total_memory: int
    used_memory:  int = 0

    def describe(self) -> str:
        return (
            f"{self.id} ({self.name}): "
            f"{readable_size(self.free_memory)} free / {readable_size(self.total_memory)}"
        )


@dataclass(frozen=True)
class DeviceProcess:
    pid:              int
    process_group_id: int
    memory_used:      int     # bytes


class DeviceProvider(Protocol):
    def list_devices(self) -> Sequence[Any]: ...
    def handle_for(self, device_id: int) -> Any: ...
    def snapshot(self, handle: Any) -> DeviceSnapshot: ...
    def processes(self, handle: Any) -> list[DeviceProcess]: ...


def _process_group_of(pid: int) -> Optional[int]:
    # The pid may already be gone, or live in another pid namespace.
    try:
        return os.getpgid(pid)
    except OSError:
        return None


# ─── pynvml backend ───────────────────────────────────────────────────────────

class NvmlProvider:
    """NVML through pynvml. nvmlInit happens once, on first use."""

    def __init__(self):
        import pynvml  # type: ignore
        self._nvml = pynvml
        self._init_lock = threading.Lock()
        self._initialized = False

    def _ensure_init(self):
        with self._init_lock:
            if not self._initialized:
                try:
                    self._nvml.nvmlInit()
                except self._nvml.NVMLError as e:
                    raise TelemetryError(f"nvmlInit failed: {e}") from e
                self._initialized = True

    def shutdown(self):
        with self._init_lock:
            if self._initialized:
                self._nvml.nvmlShutdown()
                self._initialized = False

    def list_devices(self) -> list[Any]:
        self._ensure_init()
        try:
            count = self._nvml.nvmlDeviceGetCount()
        except self._nvml.NVMLError as e:
            raise TelemetryError(f"nvmlDeviceGetCount failed: {e}") from e

        handles = []
        for i in range(count):
            try:
                handles.append(self._nvml.nvmlDeviceGetHandleByIndex(i))
            except self._nvml.NVMLError as e:
                log.warning(f"failed to open device {i}: {e}, skipping")
        return handles

    def handle_for(self, device_id: int) -> Any:
        self._ensure_init()
        try:
            return self._nvml.nvmlDeviceGetHandleByIndex(device_id)
        except self._nvml.NVMLError as e:
            raise TelemetryError(f"failed to open device {device_id}: {e}") from e

    def snapshot(self, handle: Any) -> DeviceSnapshot:
        nvml = self._nvml
        try:
            index = nvml.nvmlDeviceGetIndex(handle)
            name  = nvml.nvmlDeviceGetName(handle)
            mem   = nvml.nvmlDeviceGetMemoryInfo(handle)
        except nvml.NVMLError as e:
            raise TelemetryError(f"device query failed: {e}") from e

        if isinstance(name, bytes):
            name = name.decode()
        return DeviceSnapshot(
            id           = index,
            name         = name,
            free_memory  = mem.free,
            total_memory = mem.total,
            used_memory  = mem.used,
        )

    def processes(self, handle: Any) -> list[DeviceProcess]:
        nvml = self._nvml
        try:
            running = nvml.nvmlDeviceGetComputeRunningProcesses(handle)
        except nvml.NVMLError as e:
            raise TelemetryError(f"failed to list processes: {e}") from e

        result = []
        for proc in running:
            pgid = _process_group_of(proc.pid)
            if pgid is None:
                continue
            result.append(DeviceProcess(
                pid              = proc.pid,
                process_group_id = pgid,
                # usedGpuMemory is None when the driver cannot attribute memory (e.g. under WDDM/MIG)
                memory_used      = proc.usedGpuMemory or 0,
            ))
        return result


# ─── nvidia-smi backend ───────────────────────────────────────────────────────

class NvidiaSmiProvider:
    """Same queries answered by nvidia-smi's CSV output. Handles are device indices."""

    def __init__(self, executable: str = "nvidia-smi", timeout: float = 10):
        self.executable = executable
        self.timeout    = timeout

    def _query(self, *args: str) -> list[list[str]]:
        try:
            result = subprocess.run(
                [self.executable, *args, "--format=csv,noheader,nounits"],
                capture_output=True, text=True, timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise TelemetryError(f"{self.executable} failed: {e}") from e
        if result.returncode != 0:
            raise TelemetryError(
                f"{self.executable} exit {result.returncode}: {result.stderr.strip()[:300]}"
            )
        return [
            [p.strip() for p in line.split(",")]
            for line in result.stdout.strip().splitlines()
            if line.strip()
        ]

    def list_devices(self) -> list[int]:
        return [int(row[0]) for row in self._query("--query-gpu=index")]

    def handle_for(self, device_id: int) -> int:
        return device_id

    def snapshot(self, handle: int) -> DeviceSnapshot:
        rows = self._query(
            "--query-gpu=index,name,memory.total,memory.free,memory.used", "-i", str(handle),
        )
        if not rows or len(rows[0]) < 5:
            raise TelemetryError(f"unexpected nvidia-smi output for device {handle}")
        index, name, total, free, used = rows[0][:5]
        try:
            return DeviceSnapshot(
                id           = int(index),
                name         = name,
                free_memory  = int(free) * _MiB,
                total_memory = int(total) * _MiB,
                used_memory  = int(used) * _MiB,
            )
        except ValueError as e:
            raise TelemetryError(f"unparsable memory figures for device {handle}: {rows[0]}") from e

    def processes(self, handle: int) -> list[DeviceProcess]:
        rows = self._query("--query-compute-apps=pid,used_memory", "-i", str(handle))
        result = []
        for row in rows:
            if len(row) < 2 or not row[0].isdigit():
                continue
            pid = int(row[0])
            pgid = _process_group_of(pid)
            if pgid is None:
                continue
            used = int(row[1]) * _MiB if row[1].isdigit() else 0   # "[N/A]" on some drivers
            result.append(DeviceProcess(pid=pid, process_group_id=pgid, memory_used=used))
        return result


# ─── Discovery ────────────────────────────────────────────────────────────────

def discover_provider() -> DeviceProvider:
    """
    Pick a telemetry backend for this host.
    Tries pynvml first, falls back to nvidia-smi. Raises TelemetryError if neither works.
    """
    try:
        provider = NvmlProvider()
        provider.list_devices()
        return provider
    except Exception as e:
        log.warning(f"pynvml unavailable: {e} — trying nvidia-smi fallback")

    provider = NvidiaSmiProvider()
    provider.list_devices()
    log.info("using nvidia-smi for device telemetry")
    return provider


def shutdown_provider(provider: DeviceProvider):
    """Release the backend, for providers that hold one (NVML)."""
    shutdown = getattr(provider, "shutdown", None)
    if shutdown is not None:
        shutdown()


def collect_snapshot(provider: DeviceProvider) -> list[DeviceSnapshot]:
    """
    Snapshot every device the provider knows about.
    Devices whose query fails are logged and left out of this snapshot.
    """
    snapshots = []
    for position, handle in enumerate(provider.list_devices()):
        try:
            snapshots.append(provider.snapshot(handle))
        except TelemetryError as e:
            log.warning(f"skipping device #{position}: {e}")
    for device in snapshots:
        log.debug(device.describe())
    return snapshots
