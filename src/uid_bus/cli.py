"""Click-based CLI for the UID bus simulator and scanner."""

from __future__ import annotations

import asyncio
import logging
import sys

import click

from .bus import LoopbackBus, open_stdio_bus
from .device import DeviceSimulator, serve_lines
from .discovery import DEFAULT_TIMEOUT, ScanReport, scan_prefixes
from .protocol import (
    ALPHABET,
    ANCHOR_LENGTH,
    UID_LENGTH,
    CollisionMode,
    is_valid_prefix,
    is_valid_uid,
)


class ClickEchoHandler(logging.Handler):
    """Logging handler writing records to stderr through click."""

    _LEVEL_COLORS = {
        logging.DEBUG: "bright_black",
        logging.WARNING: "yellow",
        logging.ERROR: "red",
        logging.CRITICAL: "red",
    }

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            click.echo(click.style(msg, fg=self._LEVEL_COLORS.get(record.levelno)), err=True)
        except Exception:
            self.handleError(record)


def _setup_logging(verbose: bool) -> None:
    root = logging.getLogger("uid_bus")
    root.handlers.clear()
    handler = ClickEchoHandler()
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def _run(coro):
    """Run an async coroutine from a sync Click command."""
    return asyncio.run(coro)


def _parse_timeout(_ctx: click.Context, _param: click.Parameter, value: str) -> float:
    # click.BadParameter would exit 2; usage failures here exit 1.
    try:
        timeout = float(value)
    except ValueError:
        raise click.ClickException(f"Invalid timeout: {value!r}")
    if timeout <= 0:
        raise click.ClickException(f"Timeout must be positive, got {value}")
    return timeout


def _check_prefixes(prefixes: tuple[str, ...]) -> None:
    if not prefixes:
        raise click.ClickException("At least one vendor prefix is required")
    for prefix in prefixes:
        if not is_valid_prefix(prefix):
            raise click.ClickException(
                f"Invalid prefix {prefix!r}: expected {ANCHOR_LENGTH} characters from {ALPHABET!r}"
            )


def _parse_vendor_collision(
    _ctx: click.Context, _param: click.Parameter, value: tuple[str, ...]
) -> dict[str, CollisionMode]:
    modes: dict[str, CollisionMode] = {}
    for item in value:
        prefix, _, mode = item.partition("=")
        if not is_valid_prefix(prefix) or mode not in {m.value for m in CollisionMode}:
            raise click.ClickException(
                f"Invalid vendor collision {item!r}: expected PREFIX=MODE, e.g. CB=empty"
            )
        modes[prefix] = CollisionMode(mode)
    return modes


def _build_simulator(
    uids: tuple[str, ...],
    collision: str,
    seed: int | None,
    vendor_collision: dict[str, CollisionMode],
) -> DeviceSimulator:
    if not uids:
        raise click.ClickException("At least one UID is required")
    log = logging.getLogger("uid_bus.device")
    for uid in uids:
        if not is_valid_uid(uid):
            log.warning("%s is not a %d-symbol UID; probes may never isolate it", uid, UID_LENGTH)
    return DeviceSimulator(uids, collision=collision, seed=seed, vendor_collision=vendor_collision)


def _echo_report(report: ScanReport, err: bool = False) -> None:
    click.echo(f"{report.prefix}: {len(report.found)} uid(s), {report.probes} probes", err=err)
    for uid in sorted(report.found):
        click.echo(f"  {uid}", err=err)
    for pattern in report.exhausted:
        click.echo(click.style(f"  unresolved: {pattern}", fg="yellow"), err=err)


_collision_option = click.option(
    "--collision",
    type=click.Choice([mode.value for mode in CollisionMode]),
    default=CollisionMode.EMPTY.value,
    show_default=True,
    help="Reply when several UIDs match: empty line, or garbage sampled from the matching UIDs",
)
_vendor_collision_option = click.option(
    "--vendor-collision",
    multiple=True,
    callback=_parse_vendor_collision,
    metavar="PREFIX=MODE",
    help="Collision reply for one vendor prefix, overriding --collision (repeatable)",
)
_seed_option = click.option("--seed", type=int, default=None, help="Seed for sampled collisions")
_verbose_option = click.option("--verbose", "-v", is_flag=True, default=False, help="Debug diagnostics")


@click.group()
def cli() -> None:
    """UID bus discovery tools."""


@cli.command()
@click.argument("uids", nargs=-1)
@_collision_option
@_vendor_collision_option
@_seed_option
@_verbose_option
def simulate(
    uids: tuple[str, ...],
    collision: str,
    vendor_collision: dict[str, CollisionMode],
    seed: int | None,
    verbose: bool,
) -> None:
    """Answer probes from stdin on stdout as a bus full of UIDS."""
    _setup_logging(verbose)
    simulator = _build_simulator(uids, collision, seed, vendor_collision)
    try:
        serve_lines(simulator, sys.stdin, sys.stdout)
    except KeyboardInterrupt:
        pass


@cli.command()
@click.argument("prefixes", nargs=-1)
@click.option(
    "--timeout",
    default=str(DEFAULT_TIMEOUT),
    show_default=True,
    callback=_parse_timeout,
    help="Reply window per probe (s)",
)
@_verbose_option
def scan(prefixes: tuple[str, ...], timeout: float, verbose: bool) -> None:
    """Discover UIDs under each vendor PREFIX, probing on stdout.

    Replies are read from stdin; progress and results go to stderr.
    """
    _setup_logging(verbose)
    _check_prefixes(prefixes)

    async def _run_scan() -> dict[str, ScanReport]:
        async with open_stdio_bus() as bus:
            return await scan_prefixes(bus, prefixes, timeout=timeout)

    try:
        reports = _run(_run_scan())
    except KeyboardInterrupt:
        click.echo("\nStopped.", err=True)
        sys.exit(1)
    for report in reports.values():
        _echo_report(report, err=True)


@cli.command()
@click.argument("prefixes", nargs=-1)
@click.option("--uid", "uids", multiple=True, help="UID to simulate (repeatable)")
@_collision_option
@_vendor_collision_option
@_seed_option
@_verbose_option
def loopback(
    prefixes: tuple[str, ...],
    uids: tuple[str, ...],
    collision: str,
    vendor_collision: dict[str, CollisionMode],
    seed: int | None,
    verbose: bool,
) -> None:
    """Scan PREFIXES against an in-process simulator of --uid devices."""
    _setup_logging(verbose)
    _check_prefixes(prefixes)
    simulator = _build_simulator(uids, collision, seed, vendor_collision)

    async def _run_loopback() -> dict[str, ScanReport]:
        async with LoopbackBus(simulator) as bus:
            return await scan_prefixes(bus, prefixes, timeout=DEFAULT_TIMEOUT)

    for report in _run(_run_loopback()).values():
        _echo_report(report)
