from decimal import Decimal

import pytest

from errors import NotFound, ValidationError
from models import Booking, Payout
from settlement import reconcile


@pytest.fixture
def settlement(services):
    return services.settlement


@pytest.fixture
def earning_driver(bookings, make_profile, driver, passenger, make_ride):
    """Driver with two accepted bookings: 40.00 and 60.00 captured."""
    first = bookings.checkout(make_ride(driver, price="20.00"), passenger, 2, "tok_visa")
    bookings.driver_decision(first.id, driver, "accept")

    other = make_profile(name="Mei", gender="Female")
    second = bookings.checkout(make_ride(driver, price="60.00"), other, 1, "tok_visa")
    bookings.driver_decision(second.id, driver, "accept")
    return driver


def test_balance_counts_driver_share_of_captured_bookings(settlement, earning_driver):
    balance = settlement.driver_balance(earning_driver)
    assert balance.total_earned == Decimal("75.00")
    assert balance.total_paid_out == Decimal("0.00")
    assert balance.balance_owed == Decimal("75.00")
    assert balance.driver_name == "Dana"


def test_payout_reduces_balance_owed(settlement, earning_driver, admin):
    settlement.driver_balance(earning_driver)
    payout = settlement.record_payout(earning_driver, Decimal("30.00"), "March", admin)
    assert payout.amount == Decimal("30.00")
    assert payout.recorded_by == admin

    balance = settlement.driver_balance(earning_driver)
    assert balance.total_paid_out == Decimal("30.00")
    assert balance.balance_owed == Decimal("45.00")


def test_overpayment_never_goes_negative(settlement, earning_driver, admin):
    settlement.record_payout(earning_driver, Decimal("100.00"), None, admin)
    assert settlement.driver_balance(earning_driver).balance_owed == Decimal("0.00")


def test_pending_and_cancelled_bookings_earn_nothing(settlement, bookings, driver, passenger, make_ride):
    ride_id = make_ride(driver, price="20.00")
    bookings.checkout(ride_id, passenger, 1, "tok_visa")
    assert settlement.driver_balance(driver).total_earned == Decimal("0.00")


def test_booking_transitions_refresh_cached_balance(settlement, bookings, driver, passenger, make_ride):
    booking = bookings.checkout(make_ride(driver, price="20.00"), passenger, 1, "tok_visa")
    assert settlement.driver_balance(driver).total_earned == Decimal("0.00")

    bookings.driver_decision(booking.id, driver, "accept")
    assert settlement.driver_balance(driver).total_earned == Decimal("15.00")


def test_payout_must_be_positive(settlement, driver, admin):
    with pytest.raises(ValidationError):
        settlement.record_payout(driver, Decimal("0"), None, admin)


def test_unknown_driver(settlement):
    with pytest.raises(NotFound):
        settlement.driver_balance(404)


def test_all_balances_sorted_by_amount_owed(settlement, earning_driver, make_profile, make_ride):
    idle = make_profile(name="Ines", gender="Female", driver=True)
    make_ride(idle)
    balances = settlement.all_driver_balances()
    assert [b.driver_id for b in balances] == [earning_driver, idle]


def test_rides_overview_totals(settlement, earning_driver, bookings, make_profile, make_ride):
    pending_ride = make_ride(earning_driver, price="10.00")
    bookings.checkout(pending_ride, make_profile(name="Noor", gender="Female"), 1, "tok_visa")

    overview = settlement.rides_overview()
    assert overview["totals"] == {
        "total_revenue": "100.00",
        "total_commission": "25.00",
        "total_driver_payout": "75.00",
    }
    by_ride = {entry["ride"]["id"]: entry for entry in overview["rides"]}
    assert by_ride[pending_ride]["total_revenue"] == "0.00"
    assert by_ride[pending_ride]["passenger_count"] == 0
    assert by_ride[pending_ride]["bookings"][0]["passenger_name"] == "Noor"
    assert sum(e["passenger_count"] for e in overview["rides"]) == 3


def test_reconcile_ignores_bookings_without_commission():
    uncaptured = Booking(
        id=1, ride_id=1, passenger_id=2, seats_booked=1,
        total_paid=Decimal("20.00"), authorization_ref="sim_auth_1", status="confirmed",
    )
    payout = Payout(id=1, driver_id=7, amount=Decimal("5.00"), recorded_by=1)
    balance = reconcile(7, [uncaptured], [payout])
    assert balance.total_earned == Decimal("0.00")
    assert balance.balance_owed == Decimal("0.00")


def test_balance_read_racing_a_transition_is_not_cached(
    settlement, bookings, database, monkeypatch, driver, passenger, make_ride,
):
    booking = bookings.checkout(make_ride(driver, price="40.00"), passenger, 1, "tok_visa")
    read_bookings = database.get_bookings_for_driver
    accepted = []

    def accept_mid_read(*args, **kwargs):
        rows = read_bookings(*args, **kwargs)
        if not accepted:
            accepted.append(bookings.driver_decision(booking.id, driver, "accept"))
        return rows

    monkeypatch.setattr(database, "get_bookings_for_driver", accept_mid_read)
    assert settlement.driver_balance(driver).total_earned == Decimal("0.00")
    assert settlement.driver_balance(driver).total_earned == Decimal("30.00")


def test_payout_requires_a_driver(settlement, passenger, admin):
    with pytest.raises(ValidationError):
        settlement.record_payout(passenger, Decimal("10.00"), None, admin)


def test_former_driver_with_rides_can_still_be_paid(settlement, database, driver, admin, make_ride):
    make_ride(driver)
    database.update_profile_flags(driver, is_approved_driver=False)
    assert settlement.record_payout(driver, Decimal("10.00"), None, admin).amount == Decimal("10.00")
