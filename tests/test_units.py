import pytest

from glaunch.errors import ConfigurationError
from glaunch.units import parse_duration, parse_size, readable_duration, readable_size


@pytest.mark.parametrize("text, expected", [
    ("1024", 1024),
    ("4k", 4096),
    ("4KiB", 4096),
    ("512MiB", 512 * 1024 ** 2),
    ("8GB", 8 * 1024 ** 3),
    ("2gib", 2 * 1024 ** 3),
    ("1T", 1024 ** 4),
    ("1PiB", 1024 ** 5),
])
def test_parse_size_uses_binary_multipliers(text, expected):
    assert parse_size(text) == expected


@pytest.mark.parametrize("text", ["", "GiB", "8XB", "-1G", "1.5G"])
def test_parse_size_rejects_malformed_values(text):
    with pytest.raises(ConfigurationError):
        parse_size(text)


@pytest.mark.parametrize("text, expected", [
    ("30", 30),
    ("5m", 300),
    ("2 hours", 7200),
    ("1d", 86400),
    ("1H", 3600),
])
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


def test_parse_duration_rejects_unknown_suffix():
    with pytest.raises(ConfigurationError, match="suffix"):
        parse_duration("3weeks")


def test_readable_size_switches_unit_past_1000():
    assert readable_size(0) == "0B"
    assert readable_size(1000 * 1024) == "1024000B"
    assert readable_size(1001 * 1024) == "1001KiB"
    assert readable_size(24 * 1024 ** 3) == "24576MiB"
    assert readable_size(2000 * 1024 ** 3) == "2000GiB"


def test_readable_duration_drops_leading_zero_units():
    assert readable_duration(0) == "0 second"
    assert readable_duration(5) == "5 second(s)"
    assert readable_duration(65) == "1 minute(s), 5 second(s)"
    assert readable_duration(3605) == "1 hour(s), 0 minute(s), 5 second(s)"
    assert readable_duration(90061) == "1 day(s), 1 hour(s), 1 minute(s), 1 second(s)"
