"""
Admission Control
=================

Waits until the device pool can satisfy a SelectionRequest.

This is best-effort: nothing is reserved, so another job may grab the same
memory between our check and our launch. Concurrent glaunch invocations can
both see the same free memory and both proceed.
"""

from __future__ import annotations
import logging
import time
from typing import Callable, Sequence

from .devices import DeviceSnapshot
from .errors import AdmissionTimeout
from .selection import SelectionRequest, SelectionResult, select
from .units import readable_duration

log = logging.getLogger(__name__)

SnapshotFn = Callable[[], Sequence[DeviceSnapshot]]


def sleep_until(deadline: float,
                clock: Callable[[], float] = time.monotonic,
                sleep: Callable[[float], None] = time.sleep):
    """Block until clock() reaches deadline, resuming any sleep that returns early."""
    remaining = deadline - clock()
    while remaining > 0:
        sleep(remaining)
        remaining = deadline - clock()


def wait_for_devices(
    request:       SelectionRequest,
    timeout:       float,
    poll_interval: float,
    snapshot_fn:   SnapshotFn,
    clock:         Callable[[], float] = time.monotonic,
    sleep:         Callable[[float], None] = time.sleep,
) -> SelectionResult:
    """
    Poll snapshot_fn() until select() is satisfied or timeout seconds pass.

    Returns as soon as a poll succeeds, without sleeping. A timeout of 0 means
    exactly one check. Raises AdmissionTimeout carrying the last partial result.
    """
    start = clock()
    while True:
        result = select(snapshot_fn(), request)
        if result.satisfied:
            return result

        elapsed = clock() - start
        if elapsed >= timeout:
            raise AdmissionTimeout(
                f"not enough devices with sufficient memory: "
                f"wanted {request.count}, {len(result.device_ids)} qualified",
                last_result=result,
            )

        remaining = timeout - elapsed
        pause = min(poll_interval, remaining)
        log.info(
            f"[admission] {len(result.device_ids)}/{request.count} device(s) qualify, "
            f"retrying in {readable_duration(pause)} "
            f"({readable_duration(remaining)} left)"
        )
        sleep_until(clock() + pause, clock=clock, sleep=sleep)
