import pytest

from ultimapatcher.address import SegmentAndOffset, format_address


@pytest.mark.parametrize(
    "string,expected",
    [
        ("0:0010", SegmentAndOffset(0, 0x10)),
        ("1a:ff", SegmentAndOffset(0x1A, 0xFF)),
        ("0x2:0x40", SegmentAndOffset(2, 0x40)),
    ],
)
def test_from_string(string, expected):
    assert SegmentAndOffset.from_string(string) == expected


@pytest.mark.parametrize("string", ["", "10", ":10", "1:", "g:10", "1:2:3"])
def test_from_string_rejects(string):
    with pytest.raises(ValueError):
        SegmentAndOffset.from_string(string)


def test_format():
    assert format_address(0x1A, 0x20) == "1A:0020"
    assert str(SegmentAndOffset(3, 0x12345)) == "3:12345"
