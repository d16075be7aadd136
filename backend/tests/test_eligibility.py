import pytest

from eligibility import filter_compatible, incompatibility_reason, is_compatible
from models import Gender, Profile, TravelGrouping


def test_solo_male_passenger_cannot_ride_with_solo_female_driver():
    reason = incompatibility_reason("solo", "Male", "solo", "Female")
    assert reason is not None
    assert "not available for solo male passengers" in reason
    assert not is_compatible("solo", "Male", "solo", "Female")


def test_solo_female_passenger_cannot_ride_with_solo_male_driver():
    reason = incompatibility_reason("solo", "Female", "solo", "Male")
    assert "not available for solo female passengers" in reason


@pytest.mark.parametrize("gender", ["Male", "Female", None])
def test_couple_passenger_is_compatible_with_anyone(gender):
    assert is_compatible("couple", gender, "solo", "Female")
    assert is_compatible("couple", gender, "solo", None)


@pytest.mark.parametrize("gender", ["Male", "Female", None])
def test_couple_driver_is_compatible_with_anyone(gender):
    assert is_compatible("solo", gender, "couple", "Male")


def test_same_gender_solos_are_compatible():
    assert is_compatible(TravelGrouping.SOLO, Gender.MALE, TravelGrouping.SOLO, Gender.MALE)
    assert incompatibility_reason("solo", "Female", "solo", "Female") is None


def test_missing_gender_never_matches_a_solo_counterpart():
    assert not is_compatible("solo", None, "solo", "Female")
    assert not is_compatible("solo", "Female", "solo", None)
    assert not is_compatible("solo", None, "solo", None)


def test_filter_compatible_keeps_only_bookable_rides():
    passenger = Profile(id=1, name="Sam", gender="Male", travel_grouping="solo")
    candidates = [
        ("ride-a", TravelGrouping.SOLO, Gender.MALE),
        ("ride-b", TravelGrouping.SOLO, Gender.FEMALE),
        ("ride-c", TravelGrouping.COUPLE, Gender.FEMALE),
        ("ride-d", TravelGrouping.SOLO, None),
    ]
    assert filter_compatible(passenger, candidates) == ["ride-a", "ride-c"]
