import pytest

from marketplace.services.distance import distance_km

SANAA = (15.3694, 44.1910)
ADEN = (12.7855, 45.0187)


def test_identical_points_are_zero():
    assert distance_km(*SANAA, *SANAA) == 0.0


def test_distance_is_symmetric():
    assert distance_km(*SANAA, *ADEN) == distance_km(*ADEN, *SANAA)


def test_distance_rounded_to_two_decimals():
    value = distance_km(*SANAA, *ADEN)
    assert value == round(value, 2)
    assert value == pytest.approx(300.0, abs=15.0)


def test_short_hop_inside_a_city():
    assert distance_km(*SANAA, 15.3700, 44.1900) == pytest.approx(0.13, abs=0.01)


def test_one_degree_of_latitude():
    assert distance_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.19, abs=0.01)


def test_antipodal_points_do_not_overflow():
    assert distance_km(0.0, 0.0, 0.0, 180.0) == pytest.approx(20015.09, abs=0.01)
