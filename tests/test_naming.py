"""Tests for derived-file naming and lineage resolution."""

import pytest

from speedshift.naming import (
    cascade_targets,
    derive_name,
    format_speed,
    group_versions,
    is_derived,
    lineage_of,
    parse_derived,
    resolve_listing,
    speed_of,
)


@pytest.mark.parametrize(
    "speed,expected",
    [(1.5, "1.5"), (2.0, "2"), (0.3, "0.3"), (0.25, "0.25"), (4, "4"), (1.0, "1")],
)
def test_format_speed(speed, expected):
    assert format_speed(speed) == expected


def test_derive_name():
    assert derive_name("clip.mp3", 1.5) == "speed_1.5x_clip.mp3"
    assert derive_name("clip.mp3", 0.3) == "speed_0.3x_clip.mp3"
    assert derive_name("clip.mp3", 2.0) == "speed_2x_clip.mp3"


def test_is_derived():
    assert is_derived("speed_1.5x_clip.mp3")
    assert is_derived("faster_clip.mp3")
    assert not is_derived("clip.mp3")
    assert not is_derived("speedy_clip.mp3")
    assert not is_derived("faster_")


def test_parse_derived_legacy_tag_implies_double_speed():
    assert parse_derived("faster_clip.mp3") == ("clip.mp3", 2.0)
    assert speed_of("faster_clip.mp3") == 2.0


def test_speed_of_original_is_identity():
    assert speed_of("clip.mp3") == 1.0
    assert speed_of("speed_0.75x_clip.mp3") == 0.75


@pytest.mark.parametrize("speed", [0.25, 0.3, 1.5, 2.0, 3.7, 4.0])
@pytest.mark.parametrize("original", ["clip.mp3", "my song (live).wav", "a"])
def test_lineage_round_trip(original, speed):
    assert lineage_of(derive_name(original, speed), {original}) == original


def test_lineage_requires_original_present():
    assert lineage_of("speed_1.5x_clip.mp3", {"other.mp3"}) is None
    assert lineage_of("clip.mp3", {"clip.mp3"}) is None


def test_lineage_is_exact_not_substring():
    names = {"a.mp3", "ba.mp3", "speed_1.5x_ba.mp3"}
    assert lineage_of("speed_1.5x_ba.mp3", names) == "ba.mp3"
    assert cascade_targets("a.mp3", names) == []


def test_cascade_targets_exactly_shared_lineage():
    names = [
        "clip.mp3",
        "speed_1.5x_clip.mp3",
        "speed_0.3x_clip.mp3",
        "faster_clip.mp3",
        "speed_1.5x_clip.mp3.bak",
        "other.mp3",
        "speed_2x_other.mp3",
    ]
    targets = cascade_targets("clip.mp3", names)
    assert sorted(targets) == sorted(
        ["speed_1.5x_clip.mp3", "speed_0.3x_clip.mp3", "faster_clip.mp3"]
    )
    assert all(lineage_of(t, names) == "clip.mp3" for t in targets)


def test_resolve_listing_picks_most_recent_by_mtime():
    names = ["clip.mp3", "speed_1.5x_clip.mp3", "speed_0.3x_clip.mp3", "other.mp3"]
    mtimes = {"speed_1.5x_clip.mp3": 200.0, "speed_0.3x_clip.mp3": 100.0}
    assert resolve_listing(names, mtimes) == [
        ("clip.mp3", "speed_1.5x_clip.mp3"),
        ("other.mp3", None),
    ]


def test_resolve_listing_without_mtimes_uses_last_listed():
    names = ["clip.mp3", "speed_1.5x_clip.mp3", "speed_0.3x_clip.mp3"]
    assert resolve_listing(names) == [("clip.mp3", "speed_0.3x_clip.mp3")]


def test_resolve_listing_ignores_orphaned_derived():
    assert resolve_listing(["speed_2x_gone.mp3", "kept.mp3"]) == [("kept.mp3", None)]


def test_group_versions_orders_oldest_first():
    names = ["clip.mp3", "faster_clip.mp3", "speed_1.5x_clip.mp3", "speed_0.3x_clip.mp3"]
    mtimes = {"faster_clip.mp3": 300.0, "speed_1.5x_clip.mp3": 100.0, "speed_0.3x_clip.mp3": 100.0}
    assert group_versions(names, mtimes) == {
        "clip.mp3": ["speed_1.5x_clip.mp3", "speed_0.3x_clip.mp3", "faster_clip.mp3"]
    }
    assert group_versions(["solo.mp3"]) == {}
