import pytest
import trustboot.utility as utility


@pytest.mark.parametrize(
    "addresses,expected",
    [
        (["10.0.0.1"], False),
        (["fd00::1"], True),
        (["10.0.0.1", "fd00::1"], True),
        (["::ffff:10.0.0.1"], False),
        (["example.com"], False),
        ([], False),
    ],
)
def test_is_ipv6(addresses, expected):
    assert utility.is_ipv6(*addresses) is expected


def test_format_address():
    assert utility.format_address("10.0.0.1") == "10.0.0.1"
    assert utility.format_address("fd00::1") == "[fd00::1]"
    assert utility.format_address("[fd00::1]") == "[fd00::1]"
    assert utility.format_address("example.com") == "example.com"


def test_join_host_port():
    assert utility.join_host_port("10.0.0.1", "6443") == "10.0.0.1:6443"
    assert utility.join_host_port("fd00::1", 6443) == "[fd00::1]:6443"


def test_merge_complex_dictionaries():
    merged = utility.merge_complex_dictionaries(
        {"a": {"b": 1, "c": [1]}, "d": 1},
        {"a": {"c": [2], "e": 3}, "d": 2},
    )
    assert merged == {"a": {"b": 1, "c": [1, 2], "e": 3}, "d": 2}


def test_merge_complex_dictionaries_rejects_non_dict():
    with pytest.raises(TypeError):
        utility.merge_complex_dictionaries({"a": 1}, ["a"])
