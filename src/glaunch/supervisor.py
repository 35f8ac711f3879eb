"""
Process Supervisor
==================

Starts the user's program pinned to the selected GPUs.

Two modes:
  - direct:      glaunch exec()s the program in place. Used when nothing is
                 left to supervise (no --time, --watch-memory or --log).
  - supervised:  the program runs as a child. It leads its own process group
                 and is sent SIGKILL by the kernel if glaunch dies first
                 (Linux PR_SET_PDEATHSIG). glaunch waits for it, optionally
                 samples its GPU memory, and turns the wait status into an
                 exit code.

PR_SET_PDEATHSIG is advisory. The kernel clears it when the program execs a
set-user-id / set-group-id binary or one with file capabilities, and it only
reaches the direct child, not the grandchildren. As a fallback, SIGTERM,
SIGHUP and SIGINT received by glaunch while it waits are forwarded to the
child's whole process group (and to descendants that left the group); a
second such signal escalates to SIGKILL.

Exit codes:
  child exited normally    the child's own code
  child killed by signal   EXIT_KILLED
  anything else            EXIT_UNKNOWN (logged as an error)
"""

from __future__ import annotations
import ctypes
import ctypes.util
import logging
import os
import shlex
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Sequence, Union

import psutil  # type: ignore

from .devices import DeviceProvider
from .errors import EXIT_KILLED, EXIT_UNKNOWN, LaunchError
from .monitor import MemoryMonitor, MonitorSample, log_sample
from .units import readable_duration

log = logging.getLogger(__name__)

VISIBLE_DEVICES_VAR = "CUDA_VISIBLE_DEVICES"
PR_SET_PDEATHSIG    = 1          # <linux/prctl.h>

FORWARDED_SIGNALS = (signal.SIGTERM, signal.SIGHUP, signal.SIGINT)

# ─── Termination outcome ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExitedNormally:
    code: int

    @property
    def exit_code(self) -> int:
        return self.code

    def describe(self) -> str:
        return f"program exited with code {self.code}"


@dataclass(frozen=True)
class KilledBySignal:
    signal: int

    @property
    def exit_code(self) -> int:
        return EXIT_KILLED

    def describe(self) -> str:
        try:
            name = signal.Signals(self.signal).name
        except ValueError:
            name = "unknown"
        return f"program killed with signal {self.signal} ({name})"


@dataclass(frozen=True)
class Unknown:
    status: int

    @property
    def exit_code(self) -> int:
        return EXIT_UNKNOWN

    def describe(self) -> str:
        return f"program terminated with unrecognised wait status {self.status:#x}"


TerminationOutcome = Union[ExitedNormally, KilledBySignal, Unknown]


def termination_outcome(status: int) -> TerminationOutcome:
    """Decode a raw waitpid() status."""
    if os.WIFEXITED(status):
        return ExitedNormally(os.WEXITSTATUS(status))
    if os.WIFSIGNALED(status):
        return KilledBySignal(os.WTERMSIG(status))
    return Unknown(status)


@dataclass(frozen=True)
class LaunchResult:
    outcome: TerminationOutcome
    elapsed: Optional[float] = None    # seconds, only when timing was requested

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code


# ─── Environment ──────────────────────────────────────────────────────────────

def child_environment(
    device_ids: Sequence[int],
    base: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """Environment for the program: the parent's, scoped to the selected devices."""
    env = dict(os.environ if base is None else base)
    env[VISIBLE_DEVICES_VAR] = ",".join(str(i) for i in device_ids)
    # NVML numbers devices by PCI bus; CUDA must agree unless the user says otherwise.
    env.setdefault("CUDA_DEVICE_ORDER", "PCI_BUS_ID")
    return env


def _flush_stdio():
    sys.stdout.flush()
    sys.stderr.flush()


# ─── Child setup ──────────────────────────────────────────────────────────────

def _load_prctl() -> Optional[Callable[..., int]]:
    if not sys.platform.startswith("linux"):
        return None
    try:
        libc = ctypes.CDLL(ctypes.util.find_library("c") or "libc.so.6", use_errno=True)
        return libc.prctl
    except (OSError, AttributeError) as e:
        log.warning(f"[supervisor] prctl unavailable ({e}); child will not die with glaunch")
        return None


def _child_preexec(parent_death_signal: bool) -> Callable[[], None]:
    # Resolved in the parent: nothing in the hook below may allocate or log.
    prctl = _load_prctl() if parent_death_signal else None
    parent_pid = os.getpid()

    def preexec():
        os.setpgid(0, 0)
        if prctl is not None:
            prctl(PR_SET_PDEATHSIG, signal.SIGKILL, 0, 0, 0)
            # glaunch may have died between fork and prctl; the signal would never come.
            if os.getppid() != parent_pid:
                os._exit(EXIT_KILLED)
    return preexec


# ─── Child handle ─────────────────────────────────────────────────────────────

@dataclass
class ChildHandle:
    pid:     int
    pgid:    int
    process: subprocess.Popen = field(repr=False)

    def wait(self) -> TerminationOutcome:
        """Block until the child terminates and reap it. The handle is dead afterwards."""
        _, status = os.waitpid(self.pid, 0)
        outcome = termination_outcome(status)
        if isinstance(outcome, ExitedNormally):
            self.process.returncode = outcome.code
        elif isinstance(outcome, KilledBySignal):
            self.process.returncode = -outcome.signal
        return outcome


def spawn(
    command: Sequence[str],
    env: Mapping[str, str],
    parent_death_signal: bool = True,
) -> ChildHandle:
    """Start command as the leader of a new process group."""
    log.info(f"[supervisor] executing: {shlex.join(command)}")
    _flush_stdio()
    try:
        process = subprocess.Popen(
            list(command),
            env        = dict(env),
            preexec_fn = _child_preexec(parent_death_signal),
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise LaunchError(f"failed to exec {command[0]}: {e}") from e
    # setpgid(0, 0) ran in the child, so its group id is its pid.
    return ChildHandle(pid=process.pid, pgid=process.pid, process=process)


def exec_direct(command: Sequence[str], env: Mapping[str, str]):
    """Replace glaunch with command. Returns only by raising LaunchError."""
    log.info(f"[supervisor] executing: {shlex.join(command)}")
    _flush_stdio()
    try:
        os.execvpe(command[0], list(command), dict(env))
    except OSError as e:
        raise LaunchError(f"failed to exec {command[0]}: {e}") from e


# ─── Group kill fallback ──────────────────────────────────────────────────────

def signal_child_tree(child: ChildHandle, sig: int):
    """
    Send sig to the child's process group and to any descendant that moved
    out of it.
    """
    stragglers = []
    try:
        for proc in psutil.Process(child.pid).children(recursive=True):
            try:
                if os.getpgid(proc.pid) != child.pgid:
                    stragglers.append(proc)
            except OSError:
                continue
    except psutil.NoSuchProcess:
        log.debug(f"[supervisor] child {child.pid} exited before its tree was listed")

    try:
        os.killpg(child.pgid, sig)
    except ProcessLookupError:
        log.debug(f"[supervisor] process group {child.pgid} already gone")

    for proc in stragglers:
        try:
            proc.send_signal(sig)
        except psutil.NoSuchProcess:
            continue


class _ForwardSignals:
    """While active, relay termination signals aimed at glaunch to the child's tree."""

    def __init__(self, child: ChildHandle):
        self.child = child
        self.received = 0
        self._previous: dict[int, object] = {}

    def _handle(self, signum, frame):
        self.received += 1
        sig = signum if self.received == 1 else signal.SIGKILL
        log.warning(
            f"[supervisor] received {signal.Signals(signum).name}, "
            f"sending {signal.Signals(sig).name} to process group {self.child.pgid}"
        )
        signal_child_tree(self.child, sig)

    def __enter__(self):
        # signal.signal only works on the main thread
        if threading.current_thread() is threading.main_thread():
            for sig in FORWARDED_SIGNALS:
                self._previous[sig] = signal.signal(sig, self._handle)
        return self

    def __exit__(self, *exc):
        for sig, previous in self._previous.items():
            signal.signal(sig, previous)
        self._previous.clear()
        return False


# ─── Launch ───────────────────────────────────────────────────────────────────

def launch(
    command:        Sequence[str],
    device_ids:     Sequence[int],
    direct:         bool = False,
    timing:         bool = False,
    watch_interval: float = 0,
    provider:       Optional[DeviceProvider] = None,
    emit_sample:    Callable[[MonitorSample], None] = log_sample,
    environ:        Optional[Mapping[str, str]] = None,
) -> LaunchResult:
    """
    Run command on device_ids and report how it ended.

    In direct mode this never returns: the current process becomes the command.
    """
    if not command:
        raise LaunchError("no program to launch")
    env = child_environment(device_ids, environ)

    if direct:
        exec_direct(command, env)

    start = time.monotonic()
    child = spawn(command, env)

    monitor = None
    if watch_interval > 0 and provider is not None:
        monitor = MemoryMonitor(
            pgid       = child.pgid,
            device_ids = list(device_ids),
            interval   = watch_interval,
            provider   = provider,
            emit       = emit_sample,
        )
        monitor.start()

    with _ForwardSignals(child):
        outcome = child.wait()
    elapsed = time.monotonic() - start

    if monitor is not None:
        monitor.stop(timeout=0)

    if isinstance(outcome, Unknown):
        log.error(f"[supervisor] {outcome.describe()}")
    else:
        log.info(f"[supervisor] {outcome.describe()}")

    if timing:
        log.info(f"[supervisor] elapsed time: {readable_duration(elapsed)}")
        return LaunchResult(outcome=outcome, elapsed=elapsed)
    return LaunchResult(outcome=outcome)
