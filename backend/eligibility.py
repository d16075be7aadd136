"""
Ride Marketplace - Eligibility Rules

Decides which drivers' rides a passenger may see and book, from each
party's travel grouping and gender:

- A couple on either side is compatible with everyone.
- Two solo travellers are compatible only if their genders match.
- A solo traveller with no stated gender matches no solo counterpart.

The listing filter is advisory; the check at checkout is authoritative.
"""

from typing import Iterable, List, Optional, Tuple, TypeVar

from models import Gender, Profile, TravelGrouping


T = TypeVar('T')


def _grouping(value) -> TravelGrouping:
    return value if isinstance(value, TravelGrouping) else TravelGrouping(value)


def _gender(value) -> Optional[Gender]:
    if value is None or isinstance(value, Gender):
        return value
    return Gender(value)


def incompatibility_reason(
    passenger_grouping,
    passenger_gender,
    driver_grouping,
    driver_gender,
) -> Optional[str]:
    """
    Explain why a passenger may not ride with a driver.

    Returns:
        A message for the passenger, or None if they are compatible.
    """
    passenger_grouping = _grouping(passenger_grouping)
    driver_grouping = _grouping(driver_grouping)
    passenger_gender = _gender(passenger_gender)
    driver_gender = _gender(driver_gender)

    if TravelGrouping.COUPLE in (passenger_grouping, driver_grouping):
        return None

    if passenger_gender is None:
        return "This ride is not available to solo passengers who have not stated a gender."

    if driver_gender is None:
        return "This ride is not available for solo passengers: the driver has not stated a gender."

    if passenger_gender != driver_gender:
        return f"This ride is not available for solo {passenger_gender.value.lower()} passengers."

    return None


def is_compatible(
    passenger_grouping,
    passenger_gender,
    driver_grouping,
    driver_gender,
) -> bool:
    return incompatibility_reason(
        passenger_grouping, passenger_gender, driver_grouping, driver_gender
    ) is None


def profile_reason(passenger: Profile, driver: Profile) -> Optional[str]:
    return incompatibility_reason(
        passenger.travel_grouping, passenger.gender,
        driver.travel_grouping, driver.gender,
    )


def filter_compatible(
    passenger: Profile,
    candidates: Iterable[Tuple[T, TravelGrouping, Optional[Gender]]],
) -> List[T]:
    """Keep the items whose driver (grouping, gender) suits the passenger."""
    return [
        item for item, grouping, gender in candidates
        if is_compatible(passenger.travel_grouping, passenger.gender, grouping, gender)
    ]
