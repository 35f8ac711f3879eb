"""
Configuration
=============

Turns the command line (plus optional defaults) into a LaunchConfig.

Precedence, lowest to highest:
  1. built-in defaults
  2. JSON defaults file ($GLAUNCH_CONFIG, else ~/.config/glaunch/config.json)
  3. GLAUNCH_POLICY / GLAUNCH_WAIT_TIMEOUT / GLAUNCH_WAIT_INTERVAL
  4. command-line options

The defaults file uses option names as keys, e.g.

  {"policy": "best", "wait_interval": "5m", "memory_budget": "10GiB"}
"""

from __future__ import annotations
import argparse
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from . import __version__
from .errors import ConfigurationError
from .selection import SelectionPolicy, SelectionRequest
from .units import parse_duration, parse_size, readable_duration, readable_size

log = logging.getLogger(__name__)

CONFIG_PATH = Path.home() / ".config" / "glaunch" / "config.json"

DEFAULT_WAIT_TIMEOUT  = 3600     # seeded when only --wait-interval is given
DEFAULT_WAIT_INTERVAL = 60       # seeded when only --wait-timeout is given

ENV_OVERRIDES = {
    "GLAUNCH_POLICY":        "policy",
    "GLAUNCH_WAIT_TIMEOUT":  "wait_timeout",
    "GLAUNCH_WAIT_INTERVAL": "wait_interval",
}


@dataclass
class LaunchConfig:
    command:       list[str]
    gpu_count:     int = 1
    memory_budget: Optional[int] = None            # bytes per device
    policy:        SelectionPolicy = SelectionPolicy.WORST_FIT
    timing:        bool = False
    log_path:      Optional[str] = None
    watch_memory:  int = 0                         # seconds between samples, 0 = off
    wait_timeout:  int = 0                         # 0 = a single check, no waiting
    wait_interval: int = 0
    verbose:       bool = False

    @property
    def request(self) -> SelectionRequest:
        return SelectionRequest(
            count        = self.gpu_count,
            memory_floor = self.memory_budget,
            policy       = self.policy,
        )

    @property
    def direct_exec(self) -> bool:
        """Nothing to supervise: glaunch can exec the program in place."""
        return not self.timing and self.watch_memory == 0 and not self.log_path

    def dump(self):
        log.debug("========== configuration dump ==========")
        log.debug(f"  gpu_count:     {self.gpu_count}")
        log.debug(f"  memory_budget: "
                  f"{readable_size(self.memory_budget) if self.memory_budget is not None else 'none'}")
        log.debug(f"  policy:        {self.policy.value}")
        log.debug(f"  timing:        {self.timing}")
        log.debug(f"  log_path:      {self.log_path or ''}")
        log.debug(f"  watch_memory:  {readable_duration(self.watch_memory) if self.watch_memory else 'off'}")
        log.debug(f"  wait_timeout:  {readable_duration(self.wait_timeout)}")
        log.debug(f"  wait_interval: {readable_duration(self.wait_interval)}")
        log.debug("========== configuration dump ==========")


# ─── Defaults file / environment ──────────────────────────────────────────────

def load_config(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a JSON object")
    return data


def default_config_path(environ: Mapping[str, str]) -> Path:
    override = environ.get("GLAUNCH_CONFIG")
    return Path(override).expanduser() if override else CONFIG_PATH


def gather_defaults(environ: Mapping[str, str], path: Optional[Path] = None) -> dict[str, Any]:
    """Raw (unparsed) option defaults from the defaults file and the environment."""
    raw = load_config(path or default_config_path(environ))
    unknown = set(raw) - set(_CONVERTERS) - {"time", "log", "verbose"}
    if unknown:
        raise ConfigurationError(f"unknown key(s) in defaults file: {', '.join(sorted(unknown))}")
    for var, key in ENV_OVERRIDES.items():
        if environ.get(var):
            raw[key] = environ[var]
    return raw


# ─── Argument parsing ─────────────────────────────────────────────────────────

def _as_type(parser):
    """Adapt a ConfigurationError-raising parser for argparse's type= hook."""
    def convert(text):
        try:
            return parser(str(text))
        except ConfigurationError as e:
            raise argparse.ArgumentTypeError(str(e)) from e
    convert.__name__ = parser.__name__
    return convert


def _positive_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError as e:
        raise ConfigurationError(f"cannot convert {text!r} to a number") from e
    if value < 1:
        raise ConfigurationError(f"expected a positive number, got {value}")
    return value


_CONVERTERS = {
    "gpus":          _positive_int,
    "memory_budget": parse_size,
    "policy":        SelectionPolicy.parse,
    "watch_memory":  parse_duration,
    "wait_timeout":  parse_duration,
    "wait_interval": parse_duration,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="glaunch",
        description="Launch computational process on proper GPUs regards to memory availability",
        epilog="If PROGRAM starts with '--', put '--' before it to end option parsing.",
        allow_abbrev=False,
    )
    parser.add_argument("--gpus", type=_as_type(_positive_int), default=1, metavar="GPU_COUNT",
                        help="number of GPUs to run PROGRAM on (default: 1)")
    parser.add_argument("--memory-budget", type=_as_type(parse_size), default=None,
                        metavar="MEMORY_SIZE",
                        help="slightly over-estimated memory PROGRAM needs per GPU; "
                             "KiB, MiB, GiB, TiB, PiB suffixes allowed. "
                             "Without it any amount of free memory will do")
    parser.add_argument("--policy", type=_as_type(SelectionPolicy.parse),
                        default=SelectionPolicy.WORST_FIT,
                        help="WorstFit (default) maximizes, BestFit minimizes free memory left "
                             "on the chosen GPUs")
    parser.add_argument("--time", dest="time", action="store_true",
                        help="report elapsed time when PROGRAM terminates")
    parser.add_argument("--log", default=None, metavar="PATH",
                        help="duplicate stdout and stderr to PATH")
    parser.add_argument("--watch-memory", type=_as_type(parse_duration), default=0,
                        metavar="DURATION",
                        help="report PROGRAM's GPU memory usage every DURATION (s, m, h, d)")
    parser.add_argument("--wait-timeout", type=_as_type(parse_duration), default=None,
                        metavar="DURATION",
                        help="wait up to DURATION for enough free GPUs "
                             "(default 1h when only --wait-interval is given)")
    parser.add_argument("--wait-interval", type=_as_type(parse_duration), default=None,
                        metavar="DURATION",
                        help="check GPU availability every DURATION while waiting "
                             "(default 1m when only --wait-timeout is given)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="debug logging, including the device and configuration dump")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("command", nargs=argparse.REMAINDER, metavar="PROGRAM [ARGS...]",
                        help="the program to launch and its arguments, passed unmodified")
    return parser


def _convert_defaults(raw: Mapping[str, Any]) -> dict[str, Any]:
    converted = {}
    for key, value in raw.items():
        if key in _CONVERTERS and not isinstance(value, bool):
            value = _CONVERTERS[key](str(value))
        converted[key] = value
    return converted


def parse_args(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
    defaults_path: Optional[Path] = None,
) -> LaunchConfig:
    """
    Build a LaunchConfig. Malformed option values make argparse exit(2);
    problems found afterwards raise ConfigurationError.
    """
    environ = os.environ if environ is None else environ
    parser = build_parser()
    parser.set_defaults(**_convert_defaults(gather_defaults(environ, defaults_path)))
    args = parser.parse_args(argv)

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        raise ConfigurationError("no PROGRAM given")

    wait_timeout, wait_interval = args.wait_timeout, args.wait_interval
    if wait_timeout is None and wait_interval is None:
        wait_timeout, wait_interval = 0, 0
    elif wait_interval is None:
        wait_interval = DEFAULT_WAIT_INTERVAL
    elif wait_timeout is None:
        wait_timeout = DEFAULT_WAIT_TIMEOUT
    if wait_timeout > 0 and wait_interval == 0:
        raise ConfigurationError("--wait-interval must be positive when waiting")

    return LaunchConfig(
        command       = command,
        gpu_count     = args.gpus,
        memory_budget = args.memory_budget,
        policy        = args.policy,
        timing        = args.time,
        log_path      = args.log,
        watch_memory  = args.watch_memory,
        wait_timeout  = wait_timeout,
        wait_interval = wait_interval,
        verbose       = args.verbose,
    )
