"""Line protocol definitions for the UID discovery bus."""

from __future__ import annotations

import random
from collections.abc import Sequence
from enum import Enum

ALPHABET = (
    "0123456789"
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "abcdefghijklmnopqrstuvwxyz"
    "-_"
)

UID_LENGTH = 19
ANCHOR_LENGTH = 2  # vendor prefix
SUFFIX_LENGTH = UID_LENGTH - ANCHOR_LENGTH

MUTE_PREFIX = "MUTE:"
UNMUTE_PREFIX = "UNMUTE:"
RESET_ALL = "RESET_ALL"

# Spellings used by older responders; accepted on input, never emitted.
_LEGACY_MUTE_PREFIX = "SETADDR:"
_LEGACY_UNMUTE_PREFIX = "RESETADDR:"
_LEGACY_RESET_ALL = "RESETALL"


class Command(Enum):
    PROBE = "probe"
    MUTE = "mute"
    UNMUTE = "unmute"
    RESET_ALL = "reset_all"


class CollisionMode(str, Enum):
    """What a device set answers when more than one UID matches a probe."""

    EMPTY = "empty"
    SAMPLED = "sampled"


def _in_alphabet(text: str) -> bool:
    return all(ch in ALPHABET for ch in text)


def is_valid_uid(text: str) -> bool:
    return len(text) == UID_LENGTH and _in_alphabet(text)


def is_valid_prefix(text: str) -> bool:
    return len(text) == ANCHOR_LENGTH and _in_alphabet(text)


def matches(pattern: str, uid: str) -> bool:
    """Return True if a probe pattern selects the given UID.

    The first two characters of the pattern are compared against the start
    of the UID; whatever follows them is compared against the end of it.
    Empty patterns and patterns longer than the UID never match.
    """
    if not pattern or len(pattern) > len(uid):
        return False
    anchor = min(ANCHOR_LENGTH, len(pattern))
    tail = len(pattern) - anchor
    if pattern[:anchor] != uid[:anchor]:
        return False
    return pattern[anchor:] == uid[len(uid) - tail:]


def empty_collision(uids: Sequence[str]) -> str:
    """Collision observable of the shipped responder: an empty line."""
    return ""


def sampled_collision(
    uids: Sequence[str],
    rng: random.Random,
    max_len: int = UID_LENGTH,
) -> str:
    """Synthesize bus garbage from the set of UIDs that answered together.

    Each output position picks, uniformly at random, one of the characters
    the matching UIDs hold at that position. Output stops at ``max_len`` or
    at the first position none of the UIDs reaches.
    """
    out: list[str] = []
    for i in range(max_len):
        candidates = [uid[i] for uid in uids if i < len(uid)]
        if not candidates:
            break
        out.append(rng.choice(candidates))
    return "".join(out)


def make_collision(
    mode: CollisionMode | str,
    uids: Sequence[str],
    rng: random.Random,
    max_len: int = UID_LENGTH,
) -> str:
    """Dispatch to the collision strategy selected by ``mode``."""
    mode = CollisionMode(mode)
    if mode is CollisionMode.SAMPLED:
        return sampled_collision(uids, rng, max_len)
    return empty_collision(uids)


def format_mute(uid: str) -> str:
    return f"{MUTE_PREFIX}{uid}"


def format_unmute(uid: str) -> str:
    return f"{UNMUTE_PREFIX}{uid}"


def parse_line(line: str) -> tuple[Command, str]:
    """Split a line received by a device into (Command, argument)."""
    line = line.rstrip("\r\n")
    for prefix, cmd in (
        (MUTE_PREFIX, Command.MUTE),
        (UNMUTE_PREFIX, Command.UNMUTE),
        (_LEGACY_MUTE_PREFIX, Command.MUTE),
        (_LEGACY_UNMUTE_PREFIX, Command.UNMUTE),
    ):
        if line.startswith(prefix):
            return cmd, line[len(prefix):]
    if line in (RESET_ALL, _LEGACY_RESET_ALL):
        return Command.RESET_ALL, ""
    return Command.PROBE, line
