"""Unit tests for great-circle helpers."""
import pytest

from foundmatch.utils.geo import bounding_box, haversine_miles, location_score

NYC = (40.7128, -74.0060)
LA = (34.0522, -118.2437)


def test_haversine_same_point():
    assert haversine_miles(*NYC, *NYC) == pytest.approx(0.0)


def test_haversine_new_york_to_los_angeles():
    assert haversine_miles(*NYC, *LA) == pytest.approx(2445, abs=10)


def test_haversine_is_symmetric():
    assert haversine_miles(*NYC, *LA) == pytest.approx(haversine_miles(*LA, *NYC))


@pytest.mark.parametrize(
    "distance, expected",
    [(0, 100), (100, 50), (200, 0), (250, 0)],
)
def test_location_score_is_linear(distance, expected):
    assert location_score(distance, 200) == expected


def test_location_score_with_zero_max():
    assert location_score(0, 0) == 0


def test_bounding_box_contains_radius():
    min_lat, max_lat, min_lon, max_lon = bounding_box(*NYC, 50)
    assert min_lat < NYC[0] < max_lat
    assert min_lon < NYC[1] < max_lon
    # A point 49 miles due north is inside the box.
    assert NYC[0] + 49 / 69.0 < max_lat


def test_bounding_box_at_pole_spans_all_longitudes():
    _, _, min_lon, max_lon = bounding_box(90.0, 0.0, 10)
    assert (min_lon, max_lon) == (-180.0, 180.0)
