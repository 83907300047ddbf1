"""Anti-collision UID discovery by progressively narrowing probe patterns."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .protocol import (
    ALPHABET,
    RESET_ALL,
    UID_LENGTH,
    format_mute,
    is_valid_prefix,
    matches,
)

if TYPE_CHECKING:
    from .bus import LineBus

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 0.25


class ProbeResult(Enum):
    SILENCE = "silence"
    SINGLE = "single"
    COLLISION = "collision"


def classify_reply(reply: str | None, pattern: str) -> ProbeResult:
    """Interpret what the bus returned for ``pattern``.

    No line at all is silence. A full-length UID the probe could have
    selected is a single answer. Anything else (an empty line, a short or
    long line, a line the probe cannot have selected) means several
    devices talked at once.
    """
    if reply is None:
        return ProbeResult.SILENCE
    if len(reply) == UID_LENGTH and matches(pattern, reply):
        return ProbeResult.SINGLE
    return ProbeResult.COLLISION


class ConfirmState(Enum):
    TENTATIVE = "tentative"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


@dataclass
class Confirmation:
    """Two-phase confirmation of a single full-length reply.

    A lone answer may be one device winning a race against others, so it
    only counts once the identical probe returns the identical UID again.
    """

    pattern: str
    candidate: str
    state: ConfirmState = ConfirmState.TENTATIVE

    def observe(self, reply: str | None) -> ConfirmState:
        if self.state is not ConfirmState.TENTATIVE:
            raise RuntimeError(f"Confirmation for {self.pattern!r} already {self.state.value}")
        if reply == self.candidate:
            self.state = ConfirmState.CONFIRMED
        else:
            self.state = ConfirmState.REJECTED
        return self.state

    @property
    def confirmed(self) -> bool:
        return self.state is ConfirmState.CONFIRMED


@dataclass(frozen=True)
class Candidate:
    """A tail still to be probed; ``depth`` is how many symbols it fixes."""

    tail: str

    @property
    def depth(self) -> int:
        return len(self.tail)


@dataclass
class ScanReport:
    prefix: str
    found: set[str] = field(default_factory=set)
    probes: int = 0
    exhausted: list[str] = field(default_factory=list)


class DiscoveryEngine:
    """Finds every UID answering under a vendor prefix.

    Candidate tails are walked depth-first over ``ALPHABET``. Each new
    symbol is placed next to the anchor, so a tail of depth ``d`` pins the
    last ``d`` characters of the UIDs it selects. Colliding tails are
    expanded before their siblings; confirmed UIDs are muted so they stop
    masking the devices that still share their tail.
    """

    def __init__(
        self,
        bus: "LineBus",
        timeout: float = DEFAULT_TIMEOUT,
        on_found: Callable[[str], None] | None = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError(f"Timeout must be positive, got {timeout}")
        self._bus = bus
        self.timeout = timeout
        self._on_found = on_found
        self._probes = 0

    async def probe(self, pattern: str) -> str | None:
        """Send one probe and wait for at most one reply line."""
        self._probes += 1
        await self._bus.send(pattern)
        return await self._bus.read_line(self.timeout)

    async def _confirm(self, pattern: str, reply: str) -> Confirmation:
        confirmation = Confirmation(pattern, reply)
        confirmation.observe(await self.probe(pattern))
        return confirmation

    async def _exists(self, uid: str) -> bool:
        """Whether ``uid`` answers a probe naming all of it.

        A full-length probe selects at most that one device, so bus garbage
        that happened to repeat itself on a shorter pattern gets silence.
        """
        return await self.probe(uid) == uid

    async def _record(self, uid: str, report: ScanReport) -> None:
        report.found.add(uid)
        logger.info("FOUND:     %s", uid)
        if self._on_found is not None:
            self._on_found(uid)
        await self._bus.send(format_mute(uid))

    async def _resolve(self, pattern: str, report: ScanReport) -> ProbeResult:
        """Probe ``pattern`` until it stops producing fresh confirmations.

        Muting a confirmed UID can unmask another device that collided with
        it on this very pattern, so the pattern is always probed again
        after a find.
        """
        while True:
            reply = await self.probe(pattern)
            result = classify_reply(reply, pattern)
            if result is not ProbeResult.SINGLE:
                if result is ProbeResult.COLLISION:
                    logger.debug("COLLISION: %s", pattern)
                return result

            confirmation = await self._confirm(pattern, reply)
            if not confirmation.confirmed:
                logger.debug("unstable answer on %s, going deeper", pattern)
                return ProbeResult.COLLISION

            uid = confirmation.candidate
            if uid in report.found:
                # It may be hiding devices behind it on this pattern.
                logger.warning("%s still answers after being muted", uid)
                return ProbeResult.COLLISION
            if pattern != uid and not await self._exists(uid):
                logger.debug("no device owns %s, going deeper on %s", uid, pattern)
                return ProbeResult.COLLISION
            await self._record(uid, report)

    async def discover(self, prefix: str) -> ScanReport:
        """Scan one vendor prefix to completion and return what was found."""
        if not is_valid_prefix(prefix):
            raise ValueError(f"Invalid vendor prefix: {prefix!r}")

        report = ScanReport(prefix=prefix)
        explored: set[str] = set()
        frontier: list[Candidate] = [Candidate("")]
        start = self._probes

        while frontier:
            candidate = frontier.pop()
            if candidate.tail in explored:
                continue
            explored.add(candidate.tail)

            pattern = prefix + candidate.tail
            if await self._resolve(pattern, report) is not ProbeResult.COLLISION:
                continue

            if len(pattern) >= UID_LENGTH:
                logger.warning("still colliding at full length, giving up on %s", pattern)
                report.exhausted.append(pattern)
                continue

            # Reversed so the first symbol is popped next.
            frontier.extend(Candidate(symbol + candidate.tail) for symbol in reversed(ALPHABET))

        await self._bus.send(RESET_ALL)
        report.probes = self._probes - start
        logger.info("%s: %d uid(s) after %d probes", prefix, len(report.found), report.probes)
        return report


async def scan_prefixes(
    bus: "LineBus",
    prefixes: Iterable[str],
    timeout: float = DEFAULT_TIMEOUT,
    on_found: Callable[[str], None] | None = None,
) -> dict[str, ScanReport]:
    """Scan each prefix in order, one to completion before the next."""
    engine = DiscoveryEngine(bus, timeout=timeout, on_found=on_found)
    reports: dict[str, ScanReport] = {}
    for prefix in prefixes:
        reports[prefix] = await engine.discover(prefix)
    return reports
