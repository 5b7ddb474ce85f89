"""Tests for choosing thumbnail capture offsets."""

from __future__ import annotations

import math

import pytest

from med_vid.thumbnails import compute_time_points


def test_ten_second_clip_spreads_five_points() -> None:
    points = compute_time_points(10.0, 5)

    assert points == pytest.approx([10 / 6, 20 / 6, 5.0, 40 / 6, 50 / 6])


@pytest.mark.parametrize("duration", [1.0, 1.5, 2.0, 7.3, 60.0, 3600.0])
@pytest.mark.parametrize("count", [1, 2, 5, 8])
def test_long_clip_points_are_increasing_and_inside_clip(duration: float, count: int) -> None:
    points = compute_time_points(duration, count)

    assert len(points) == count
    assert all(0 < point < duration for point in points)
    assert all(earlier < later for earlier, later in zip(points, points[1:]))


def test_half_second_clip_uses_midpoint_and_ninety_percent() -> None:
    points = compute_time_points(0.5, 5)

    assert len(points) <= 2
    assert points == pytest.approx([0.25, 0.45])
    assert all(0 < point < 0.5 for point in points)


def test_points_that_collapse_fall_back_to_midpoint() -> None:
    assert compute_time_points(0.3, 5) == pytest.approx([0.15])


def test_tiny_clip_keeps_single_midpoint() -> None:
    points = compute_time_points(0.01, 5)

    assert points == pytest.approx([0.005])
    assert 0 < points[0] < 0.01


def test_short_clip_respects_target_count_of_one() -> None:
    assert compute_time_points(0.5, 1) == pytest.approx([0.25])


@pytest.mark.parametrize("duration", [0, -1.0, math.nan, math.inf, "abc", None])
def test_invalid_durations_are_rejected(duration: object) -> None:
    with pytest.raises(ValueError):
        compute_time_points(duration)  # type: ignore[arg-type]


def test_target_count_must_be_positive() -> None:
    with pytest.raises(ValueError):
        compute_time_points(10.0, 0)
