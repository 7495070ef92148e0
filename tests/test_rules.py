from raceboard.rules import (
    format_lap_time,
    is_valid_lap_time,
    mean_ms,
    parse_lap_time,
    round_ms,
    time_difference,
)


def test_parse_lap_time_formats():
    assert parse_lap_time("1:23.456") == 83456
    assert parse_lap_time("1:23.45") == 83450
    assert parse_lap_time("1:23.4") == 83400
    assert parse_lap_time("1:23") == 83000
    assert parse_lap_time("23.456") == 23456
    assert parse_lap_time("  2:05.001 ") == 125001


def test_parse_lap_time_rejects_garbage_and_overflowing_seconds():
    assert parse_lap_time("") is None
    assert parse_lap_time("1:2:3") is None
    assert parse_lap_time("abc") is None
    assert parse_lap_time("1:23.4567") is None
    assert parse_lap_time("1:60.000") is None
    assert parse_lap_time("83.456") is None


def test_format_lap_time():
    assert format_lap_time(83456) == "1:23.456"
    assert format_lap_time(5007) == "0:05.007"
    assert format_lap_time(600000) == "10:00.000"


def test_time_difference():
    assert time_difference(85123, 85000) == "+0.123"
    assert time_difference(83544, 85000) == "-1.456"
    assert time_difference(85000, 85000) == "0.000"


def test_valid_lap_time_range():
    assert not is_valid_lap_time(9999)
    assert is_valid_lap_time(10000)
    assert is_valid_lap_time(1800000)
    assert not is_valid_lap_time(1800001)


def test_rounding_is_half_up_not_bankers():
    assert round_ms(87332.5) == 87333
    assert round_ms(87333.333) == 87333
    assert round_ms(2.5) == 3
    assert mean_ms([1, 2]) == 2
    assert mean_ms([]) is None
