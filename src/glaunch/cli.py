"""
glaunch — Main Entry Point
==========================

Startup sequence:
  1. Parse options (fail before touching any device)
  2. Open device telemetry (pynvml, else nvidia-smi)
  3. Wait until enough devices have enough free memory
  4. Optionally duplicate stdout/stderr into the log file
  5. Launch the program on the chosen devices and report how it ended

Every failure surfaces here as a typed exception and is turned into the exit
code listed in glaunch.errors. Launch failures are reported by run() itself,
while stderr still reaches the log file.
"""

from __future__ import annotations
import logging
import sys
from typing import Optional, Sequence

from . import __version__
from .admission import wait_for_devices
from .config import LaunchConfig, parse_args
from .devices import DeviceProvider, collect_snapshot, discover_provider, shutdown_provider
from .errors import EXIT_KILLED, GlaunchError
from .relay import RelayHandle, install_output_relay
from .supervisor import launch

log = logging.getLogger("glaunch")


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level   = logging.DEBUG if verbose else logging.INFO,
        format  = "[%(asctime)s] %(levelname)s %(name)s — %(message)s",
        datefmt = "%Y-%m-%dT%H:%M:%S",
        stream  = sys.stderr,
        force   = True,
    )


def run(config: LaunchConfig, provider: Optional[DeviceProvider] = None) -> int:
    """Admission, launch and supervision for an already-parsed config."""
    config.dump()
    if provider is None:
        provider = discover_provider()

    selection = wait_for_devices(
        request       = config.request,
        timeout       = config.wait_timeout,
        poll_interval = config.wait_interval,
        snapshot_fn   = lambda: collect_snapshot(provider),
    )
    log.info(f"running on GPU: {', '.join(str(i) for i in selection.device_ids)}")

    relay: Optional[RelayHandle] = None
    if config.log_path:
        relay = install_output_relay(config.log_path)

    if config.direct_exec:
        shutdown_provider(provider)

    try:
        result = launch(
            command        = config.command,
            device_ids     = selection.device_ids,
            direct         = config.direct_exec,
            timing         = config.timing,
            watch_interval = config.watch_memory,
            provider       = provider,
        )
    except GlaunchError as e:
        # Reported here: once the relay is closed stderr leads nowhere.
        log.error(str(e))
        return e.exit_code
    finally:
        if relay is not None:
            relay.close()
        shutdown_provider(provider)
    return result.exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    configure_logging()
    log.debug(f"glaunch {__version__}")
    try:
        config = parse_args(argv)
        if config.verbose:
            logging.getLogger().setLevel(logging.DEBUG)
        return run(config)
    except GlaunchError as e:
        log.error(str(e))
        return e.exit_code
    except KeyboardInterrupt:
        log.error("interrupted before launch")
        return EXIT_KILLED


if __name__ == "__main__":
    sys.exit(main())
