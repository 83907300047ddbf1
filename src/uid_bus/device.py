"""Simulated set of devices answering discovery probes on a shared bus."""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable, Mapping
from typing import TextIO

from .protocol import (
    ANCHOR_LENGTH,
    UID_LENGTH,
    CollisionMode,
    Command,
    make_collision,
    matches,
    parse_line,
)

logger = logging.getLogger(__name__)


class DeviceSimulator:
    """Owns a fixed set of UIDs and answers probes the way the devices would.

    Exactly one matching active UID answers with itself, several answer with
    the collision observable of ``collision``, none leaves the bus silent.
    ``vendor_collision`` overrides the collision mode per vendor prefix.
    """

    def __init__(
        self,
        uids: Iterable[str],
        collision: CollisionMode | str = CollisionMode.EMPTY,
        seed: int | None = None,
        rng: random.Random | None = None,
        vendor_collision: Mapping[str, CollisionMode | str] | None = None,
    ) -> None:
        self._uids: list[str] = list(dict.fromkeys(uids))
        if not self._uids:
            raise ValueError("At least one UID is required")
        self.collision = CollisionMode(collision)
        self.vendor_collision: dict[str, CollisionMode] = {
            prefix: CollisionMode(mode) for prefix, mode in (vendor_collision or {}).items()
        }
        self._rng = rng if rng is not None else random.Random(seed)
        self._muted: set[str] = set()

    @property
    def uids(self) -> list[str]:
        return list(self._uids)

    @property
    def active_uids(self) -> list[str]:
        return [uid for uid in self._uids if uid not in self._muted]

    @property
    def muted_uids(self) -> set[str]:
        return set(self._muted)

    def is_muted(self, uid: str) -> bool:
        return uid in self._muted

    def mute(self, uid: str) -> bool:
        if uid not in self._uids:
            logger.warning("tried to mute unknown uid: %s", uid)
            return False
        self._muted.add(uid)
        logger.debug("muted %s", uid)
        return True

    def unmute(self, uid: str) -> bool:
        if uid not in self._muted:
            logger.warning("tried to unmute unknown or active uid: %s", uid)
            return False
        self._muted.discard(uid)
        logger.info("unmuted %s", uid)
        return True

    def reset_all(self) -> None:
        self._muted.clear()
        logger.info("unmuted all")

    def match_set(self, pattern: str) -> list[str]:
        """Active UIDs selected by ``pattern``, in configuration order."""
        return [uid for uid in self.active_uids if matches(pattern, uid)]

    def collision_mode(self, uid: str) -> CollisionMode:
        return self.vendor_collision.get(uid[:ANCHOR_LENGTH], self.collision)

    def answer(self, pattern: str) -> str | None:
        """Bus reply to a probe, or None when no device answers."""
        matched = self.match_set(pattern)
        if not matched:
            return None
        if len(matched) == 1:
            return matched[0]
        logger.debug("collision on %r between %d uids", pattern, len(matched))
        mode = self.collision_mode(matched[0])
        return make_collision(mode, matched, self._rng, UID_LENGTH)

    def handle_line(self, line: str) -> str | None:
        """Process one input line; return the reply line to write, if any."""
        cmd, arg = parse_line(line)
        if cmd is Command.MUTE:
            self.mute(arg)
            return None
        if cmd is Command.UNMUTE:
            self.unmute(arg)
            return None
        if cmd is Command.RESET_ALL:
            self.reset_all()
            return None
        if not arg:
            return None
        return self.answer(arg)


def serve_lines(simulator: DeviceSimulator, stdin: TextIO, stdout: TextIO) -> int:
    """Answer lines from ``stdin`` on ``stdout`` until EOF.

    Every reply is flushed on its own so the scanner's read window sees it
    immediately. Returns the number of reply lines written.
    """
    written = 0
    for line in stdin:
        reply = simulator.handle_line(line)
        if reply is None:
            continue
        stdout.write(reply + "\n")
        stdout.flush()
        written += 1
    return written
