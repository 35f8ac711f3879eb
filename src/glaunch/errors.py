"""
Errors
======

Every failure glaunch reports to the user is one of these. Each class carries
the exit code the command line maps it to. Only the entry points (``cli.main``,
``cli.run`` for launch failures, ``gps.main``) perform that mapping; everything
else just raises.
"""

from __future__ import annotations
import errno
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .selection import SelectionResult


def _negated(code: int) -> int:
    """Exit status a process gets from ``return -code`` in ``main``."""
    return (-code) & 0xFF


# ─── Exit codes ───────────────────────────────────────────────────────────────

EXIT_OK          = 0
EXIT_RESOURCE    = 1                          # pipe / telemetry init failure
EXIT_CONFIG      = 2                          # argparse convention
EXIT_NO_DEVICES  = _negated(errno.ENOMEM)     # admission timed out
EXIT_KILLED      = _negated(errno.EINTR)      # child killed by a signal
EXIT_UNKNOWN     = _negated(errno.EAGAIN)     # unrecognised wait status
EXIT_EXEC_FAILED = _negated(errno.ENOEXEC)    # could not spawn / exec


# ─── Exceptions ───────────────────────────────────────────────────────────────

class GlaunchError(Exception):
    """Base for every failure glaunch turns into an exit code."""
    exit_code: int = EXIT_RESOURCE


class ConfigurationError(GlaunchError, ValueError):
    """Bad option value or conflicting options. Raised before any device access."""
    exit_code = EXIT_CONFIG


class TelemetryError(GlaunchError):
    """A device backend query failed."""
    exit_code = EXIT_RESOURCE


class AdmissionTimeout(GlaunchError, TimeoutError):
    """Not enough devices qualified before the wait deadline."""
    exit_code = EXIT_NO_DEVICES

    def __init__(self, message: str, last_result: "SelectionResult | None" = None):
        super().__init__(message)
        self.last_result = last_result


class LaunchError(GlaunchError):
    """The target command could not be spawned or exec'd."""
    exit_code = EXIT_EXEC_FAILED


class RelayError(GlaunchError):
    """The output relay (pipe + tee) could not be set up."""
    exit_code = EXIT_RESOURCE
