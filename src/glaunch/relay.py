"""
Output Relay
============

Duplicates everything written to stdout/stderr into a log file.

  glaunch ──┐
            ├─► pipe ──► tee LOGFILE ──► original terminal
  child   ──┘                 └────────► LOGFILE

Must be installed before the child is spawned so the child inherits the
redirected descriptors. Uses coreutils `tee`; if it cannot be started we
fail rather than run without the log the user asked for.
"""

from __future__ import annotations
import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from typing import Optional

from .errors import RelayError

log = logging.getLogger(__name__)


@dataclass
class RelayHandle:
    path: str
    tee:  subprocess.Popen

    def close(self, timeout: Optional[float] = 10):
        """
        Drop our ends of the pipe and wait for tee to drain.
        Anything written to stdout/stderr afterwards is discarded.
        """
        sys.stdout.flush()
        sys.stderr.flush()
        devnull = os.open(os.devnull, os.O_WRONLY)
        try:
            os.dup2(devnull, sys.stdout.fileno())
            os.dup2(devnull, sys.stderr.fileno())
        finally:
            os.close(devnull)
        try:
            self.tee.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            # Someone else (an orphaned grandchild) still holds the pipe open.
            # stderr is already gone, so this only reaches handlers writing elsewhere.
            log.warning(f"[relay] tee (pid {self.tee.pid}) still running after {timeout}s")


def install_output_relay(path: str, tee_executable: str = "tee") -> RelayHandle:
    # Fail here, not inside tee where the error would only reach the terminal.
    try:
        open(path, "w").close()
    except OSError as e:
        raise RelayError(f"cannot open log file {path}: {e}") from e

    sys.stdout.flush()
    sys.stderr.flush()

    try:
        read_fd, write_fd = os.pipe()
    except OSError as e:
        raise RelayError(f"failed to make pipe: {e}") from e

    try:
        # Own session: a Ctrl-C aimed at the job must not kill tee before it drains.
        tee = subprocess.Popen(
            [tee_executable, path],
            stdin=read_fd,
            start_new_session=True,
        )
    except OSError as e:
        os.close(read_fd)
        os.close(write_fd)
        raise RelayError(f"cannot start {tee_executable}: {e}") from e

    os.close(read_fd)
    os.dup2(write_fd, sys.stdout.fileno())
    os.dup2(write_fd, sys.stderr.fileno())
    os.close(write_fd)

    log.debug(f"[relay] stdout/stderr duplicated to {path} (tee pid {tee.pid})")
    return RelayHandle(path=path, tee=tee)
