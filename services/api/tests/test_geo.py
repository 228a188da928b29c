import math

import pytest

from patrol.core.errors import ValidationError
from patrol.services.geo import Coordinate, distance, haversine_m, is_within, path_length_m, validate_coordinate


def test_distance_to_self_is_zero() -> None:
    p = Coordinate(-23.5505, -46.6333)
    assert distance(p, p) == 0.0


def test_distance_is_symmetric() -> None:
    a = Coordinate(-23.5505, -46.6333)
    b = Coordinate(40.7128, -74.0060)
    assert distance(a, b) == pytest.approx(distance(b, a))


def test_one_degree_of_longitude_on_equator() -> None:
    assert haversine_m(0.0, 0.0, 0.0, 1.0) == pytest.approx(111_195, rel=0.01)


def test_antipodal_points_do_not_overflow() -> None:
    d = haversine_m(0.0, 0.0, 0.0, 180.0)
    assert d == pytest.approx(math.pi * 6_371_000.0)


def test_is_within_boundary_is_inclusive() -> None:
    center = Coordinate(0.0, 0.0)
    point = Coordinate(0.0, 0.001)
    exact = distance(point, center)
    assert is_within(point, center, exact)
    assert not is_within(point, center, exact - 0.01)


def test_path_length_sums_consecutive_pairs() -> None:
    points = [Coordinate(0.0, 0.0), Coordinate(0.0, 1.0), Coordinate(0.0, 2.0)]
    assert path_length_m(points) == pytest.approx(2 * haversine_m(0.0, 0.0, 0.0, 1.0))
    assert path_length_m(points[:1]) == 0.0
    assert path_length_m([]) == 0.0


@pytest.mark.parametrize(
    "lat, lon",
    [(None, 0.0), (91.0, 0.0), (0.0, -180.5), (float("nan"), 0.0), ("north", 1.0), (True, 0.0)],
)
def test_validate_coordinate_rejects_bad_input(lat, lon) -> None:
    with pytest.raises(ValidationError):
        validate_coordinate(lat, lon)


def test_validate_coordinate_accepts_numeric_strings() -> None:
    assert validate_coordinate("10.5", "-20") == Coordinate(10.5, -20.0)
