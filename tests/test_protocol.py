"""Tests for the probe matching rule, wire commands and collision strategies."""

from __future__ import annotations

import random

import pytest

from uid_bus.protocol import (
    ALPHABET,
    UID_LENGTH,
    CollisionMode,
    Command,
    empty_collision,
    format_mute,
    format_unmute,
    is_valid_prefix,
    is_valid_uid,
    make_collision,
    matches,
    parse_line,
    sampled_collision,
)


def test_alphabet_has_64_distinct_symbols():
    assert len(ALPHABET) == 64
    assert len(set(ALPHABET)) == 64


@pytest.mark.parametrize(
    "pattern, uid, expected",
    [
        ("12", "123456", True),
        ("1256", "123456", True),
        ("12bc56", "12abc56", True),
        ("12xx56", "12abc56", False),
        ("1", "123456", True),
        ("123456", "123456", True),
        ("13", "123456", False),
        ("1257", "123456", False),
    ],
)
def test_matches_anchor_and_tail(pattern, uid, expected):
    assert matches(pattern, uid) is expected


def test_matches_tail_is_compared_against_uid_end():
    # "12" anchors, "56" has to be the last two characters
    assert matches("1256", "12abc56")
    assert not matches("1256", "12ab56c")


def test_matches_empty_pattern_never_matches():
    for uid in ("123456", "AB11111111111111111", "x"):
        assert not matches("", uid)


def test_matches_pattern_longer_than_uid():
    assert not matches("123456789", "123")


def test_matches_reference_property():
    rng = random.Random(7)
    for _ in range(500):
        uid = "".join(rng.choice("ab") for _ in range(rng.randint(1, 8)))
        pattern = "".join(rng.choice("ab") for _ in range(rng.randint(0, 9)))
        anchor = min(2, len(pattern))
        tail = pattern[anchor:]
        expected = (
            0 < len(pattern) <= len(uid)
            and pattern[:anchor] == uid[:anchor]
            and uid.endswith(tail)
        )
        assert matches(pattern, uid) is expected, (pattern, uid)


def test_uid_and_prefix_validation():
    assert is_valid_uid("AB11111111111111111")
    assert not is_valid_uid("AB1111111111111111")
    assert not is_valid_uid("AB1111111111111111!")
    assert is_valid_prefix("A_")
    assert not is_valid_prefix("A")
    assert not is_valid_prefix("ABC")
    assert not is_valid_prefix("A ")


def test_parse_line_commands():
    uid = "AB11111111111111111"
    assert parse_line(format_mute(uid)) == (Command.MUTE, uid)
    assert parse_line(format_unmute(uid)) == (Command.UNMUTE, uid)
    assert parse_line("RESET_ALL\n") == (Command.RESET_ALL, "")
    assert parse_line("AB1\r\n") == (Command.PROBE, "AB1")


def test_parse_line_accepts_legacy_spellings():
    uid = "AB11111111111111111"
    assert parse_line(f"SETADDR:{uid}") == (Command.MUTE, uid)
    assert parse_line(f"RESETADDR:{uid}") == (Command.UNMUTE, uid)
    assert parse_line("RESETALL") == (Command.RESET_ALL, "")


def test_empty_collision():
    assert empty_collision(["AB11111111111111111", "AB22222222222222222"]) == ""


def test_sampled_collision_length_limit():
    uids = ["ABCDEF1234567890ZZZ", "XYZ1234567890QWERTY", "1112223334445556667"]
    result = sampled_collision(uids, random.Random(1), max_len=10)
    assert len(result) == 10
    for i, ch in enumerate(result):
        assert ch in {uid[i] for uid in uids}


def test_sampled_collision_from_single_uid():
    assert sampled_collision(["ABCDEF"], random.Random(0), max_len=6) == "ABCDEF"


def test_sampled_collision_stops_where_no_uid_reaches():
    assert len(sampled_collision(["ABC", "ABCDE"], random.Random(3))) == 5


def test_make_collision_dispatch():
    uids = ["AB11111111111111111", "AB22222222222222222"]
    assert make_collision(CollisionMode.EMPTY, uids, random.Random(0)) == ""
    sampled = make_collision("sampled", uids, random.Random(0))
    assert len(sampled) == UID_LENGTH
    assert sampled[:2] == "AB"
