"""
Device Selection
================

Pure decision logic: given one telemetry snapshot and what the user asked
for, which devices should the program run on?

  1. Keep devices with strictly more free memory than the budget
  2. Sort them by free memory, largest first (stable, so ties keep
     the provider's enumeration order)
  3. WorstFit takes from the front of that list, BestFit from the back

WorstFit leaves the most headroom on every chosen device. BestFit packs the
program onto the tightest devices that still fit, keeping roomy devices
free for bigger jobs.
"""

from __future__ import annotations
import enum
from dataclasses import dataclass
from typing import Optional, Sequence

from .devices import DeviceSnapshot
from .errors import ConfigurationError


class SelectionPolicy(enum.Enum):
    BEST_FIT  = "BestFit"
    WORST_FIT = "WorstFit"

    @classmethod
    def parse(cls, name: str) -> "SelectionPolicy":
        key = name.strip().lower().replace("-", "").replace("_", "")
        if key in ("best", "bestfit"):
            return cls.BEST_FIT
        if key in ("worst", "worstfit"):
            return cls.WORST_FIT
        raise ConfigurationError(f"invalid policy {name!r} (expected best or worst)")


@dataclass(frozen=True)
class SelectionRequest:
    count:        int = 1
    memory_floor: Optional[int] = None     # bytes; None means any amount will do
    policy:       SelectionPolicy = SelectionPolicy.WORST_FIT

    def __post_init__(self):
        if self.count < 1:
            raise ConfigurationError(f"device count must be positive, got {self.count}")
        if self.memory_floor is not None and self.memory_floor < 0:
            raise ConfigurationError(f"memory budget must not be negative, got {self.memory_floor}")

    def admits(self, device: DeviceSnapshot) -> bool:
        # Strictly greater: a device with exactly the budget free leaves no slack for
        # measurement error, so it does not qualify.
        return self.memory_floor is None or device.free_memory > self.memory_floor


@dataclass(frozen=True)
class SelectionResult:
    device_ids: tuple[int, ...]
    satisfied:  bool


def select(snapshot: Sequence[DeviceSnapshot], request: SelectionRequest) -> SelectionResult:
    qualifying = sorted(
        (d for d in snapshot if request.admits(d)),
        key=lambda d: d.free_memory,
        reverse=True,
    )
    if len(qualifying) < request.count:
        return SelectionResult(tuple(d.id for d in qualifying), satisfied=False)

    if request.policy is SelectionPolicy.BEST_FIT:
        chosen = qualifying[len(qualifying) - request.count:]
    else:
        chosen = qualifying[:request.count]
    return SelectionResult(tuple(d.id for d in chosen), satisfied=True)
