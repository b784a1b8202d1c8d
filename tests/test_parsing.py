"""Tests for register response parsing and telemetry validation."""

import pytest

from gimbal_lib import protocol
from gimbal_lib.errors import MalformedFrame
from gimbal_lib.parsing import (
    extract_keys,
    get_value,
    matches_request,
    parse_number,
    parse_pairs,
    parse_status_flag,
    parse_telemetry,
)

TELEMETRY_ECHO = "R1[10];1;R1[31];-1226;R1[41];500;R1[33];0.5;R1[43];-2;R1[34];12;R1[44];13;;"


def test_parse_number() -> None:
    assert parse_number("42") == 42
    assert parse_number("-1226") == -1226
    assert parse_number("15.5") == 15.5
    assert parse_number("abc") == "abc"
    assert parse_number("") == ""
    assert parse_number("nan") == "nan"


def test_parse_number_rejects_non_ascii_and_digit_groups() -> None:
    assert parse_number("1_000") == "1_000"
    assert parse_number("\u0663") == "\u0663"
    assert parse_number("1.5_0") == "1.5_0"
    assert parse_pairs("R1[31];1_000;R1[41];\u0663;;") == [(31, "1_000"), (41, "\u0663")]


def test_parse_pairs_empty() -> None:
    assert parse_pairs("") == []
    assert parse_pairs(";;") == []


def test_parse_pairs_alternating_tokens() -> None:
    pairs = parse_pairs("R1[10];0;AX1.px;15.5;;")
    assert pairs == [(10, 0), ("AX1.px", 15.5)]


def test_parse_pairs_assignment_tokens() -> None:
    pairs = parse_pairs("R1[10]=0;R1[31]=-1226;")
    assert pairs == [(10, 0), (31, -1226)]


def test_parse_pairs_drops_trailing_key() -> None:
    assert parse_pairs("R1[10];5;R1[31];;") == [(10, 5)]


def test_parse_pairs_keeps_non_numeric_and_empty_values() -> None:
    assert parse_pairs("foo=bar;") == [("foo", "bar")]
    assert parse_pairs("foo=;") == [("foo", "")]
    assert get_value(parse_pairs("foo=bar;"), "foo") == "bar"


def test_only_canonical_register_keys_become_integers() -> None:
    pairs = parse_pairs("r1[5];3;S1[17];100;")
    assert pairs == [(5, 3), ("S1[17]", 100)]


def test_extract_keys_preserves_order() -> None:
    assert extract_keys("R1[10];S1[17];AX1.px;R1[3]") == ["10", "17", "3"]
    assert extract_keys("sv;") == []


def test_get_value_first_match_by_string() -> None:
    pairs = [(10, 1), ("AX1.px", 2.5), (10, 99)]

    assert get_value(pairs, 10) == 1
    assert get_value(pairs, "10") == 1
    assert get_value(pairs, "AX1.px") == 2.5
    assert get_value(pairs, "missing") is None


def test_matches_request() -> None:
    assert matches_request("R1[10];R1[31];", parse_pairs("R1[10];1;R1[31];2;;"))
    assert not matches_request("R1[10];R1[31];", parse_pairs("R1[31];2;R1[10];1;;"))
    assert not matches_request("R1[10];R1[31];", parse_pairs("R1[10];1;;"))


def test_parse_telemetry_keyed_echo() -> None:
    sample = parse_telemetry(TELEMETRY_ECHO)

    assert sample.system_mode == 1.0
    assert sample.pos_tr == -1226.0
    assert sample.pos_el == 500.0
    assert sample.vel_tr == 0.5
    assert sample.vel_el == -2.0
    assert sample.cur_tr == 12.0
    assert sample.cur_el == 13.0
    assert sample.is_valid


def test_parse_telemetry_assignment_form() -> None:
    text = "R1[10]=1;R1[31]=2;R1[41]=3;R1[33]=4;R1[43]=5;R1[34]=6;R1[44]=7;"
    sample = parse_telemetry(text)
    assert sample.cur_el == 7.0


def test_parse_telemetry_bare_values() -> None:
    sample = parse_telemetry("1;2;3;4;5;6;7;;")
    assert sample.as_dict() == {
        "system_mode": 1.0,
        "pos_tr": 2.0,
        "pos_el": 3.0,
        "vel_tr": 4.0,
        "vel_el": 5.0,
        "cur_tr": 6.0,
        "cur_el": 7.0,
    }


def test_parse_telemetry_rejects_missing_fields() -> None:
    """A 5-of-7 frame is dropped whole."""
    with pytest.raises(MalformedFrame):
        parse_telemetry("1;2;3;4;5;;")


def test_parse_telemetry_rejects_non_finite_values() -> None:
    with pytest.raises(MalformedFrame):
        parse_telemetry("1;2;3;4;5;6;abc;;")

    with pytest.raises(MalformedFrame):
        parse_telemetry("1;2;3;4;5;6;nan;;")

    with pytest.raises(MalformedFrame):
        parse_telemetry("1;2;3;inf;5;6;7;;")


def test_parse_telemetry_rejects_python_only_number_forms() -> None:
    with pytest.raises(MalformedFrame):
        parse_telemetry("1;2;3;4;5;6;7_0;;")

    with pytest.raises(MalformedFrame):
        parse_telemetry("1;2;3;4;5;6;\u0667;;")


def test_parse_telemetry_rejects_reordered_keys() -> None:
    with pytest.raises(MalformedFrame):
        parse_telemetry("R1[31];1;R1[10];2;R1[41];3;R1[33];4;R1[43];5;R1[34];6;R1[44];7;;")


def test_parse_telemetry_rejects_empty() -> None:
    with pytest.raises(MalformedFrame):
        parse_telemetry("   ")


def test_telemetry_read_command_layout() -> None:
    assert protocol.TELEMETRY_READ_CMD == "R1[10];R1[31];R1[41];R1[33];R1[43];R1[34];R1[44];"


def test_parse_status_flag() -> None:
    assert parse_status_flag("ax2.SO;1;;") == 1
    assert parse_status_flag("ax2.SO;0;;") == 0
    assert parse_status_flag("1;;") == 1
    assert parse_status_flag("") is None
    assert parse_status_flag("ax2.SO;busy;;") is None
