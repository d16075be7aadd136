from datetime import timedelta

import pytest

from errors import RefundFailed
from models import utcnow


def test_old_holds_are_voided(bookings, database, processor, driver, passenger, make_ride):
    ride_id = make_ride(driver, departs_in=timedelta(days=30))
    booking = bookings.checkout(ride_id, passenger, 1, "tok_visa")

    assert bookings.expire_holds() == 0
    assert bookings.expire_holds(now=utcnow() + timedelta(days=7)) == 1

    row = database.get_booking(booking.id)
    assert row["status"] == "cancelled"
    assert row["driver_action"] is None
    assert processor.holds[booking.authorization_ref]["status"] == "voided"
    assert database.get_ride(ride_id)["seats_taken"] == 0


def test_holds_on_departed_rides_are_voided(bookings, database, driver, passenger, make_ride):
    ride_id = make_ride(driver, departs_in=timedelta(hours=2))
    booking = bookings.checkout(ride_id, passenger, 1, "tok_visa")

    assert bookings.expire_holds(now=utcnow() + timedelta(hours=3)) == 1
    assert database.get_booking(booking.id)["status"] == "cancelled"


def test_departed_rides_complete_their_confirmed_bookings(bookings, database, driver, passenger, make_ride):
    ride_id = make_ride(driver, departs_in=timedelta(hours=2))
    booking = bookings.checkout(ride_id, passenger, 1, "tok_visa")
    bookings.driver_decision(booking.id, driver, "accept")

    later = utcnow() + timedelta(hours=3)
    assert bookings.complete_departed(now=later) == 1
    assert bookings.complete_departed(now=later) == 0

    assert database.get_ride(ride_id)["status"] == "completed"
    row = database.get_booking(booking.id)
    assert row["status"] == "completed"
    assert row["completed_at"] is not None


def test_upcoming_rides_are_left_alone(bookings, database, driver, passenger, make_ride):
    ride_id = make_ride(driver, departs_in=timedelta(hours=2))
    booking = bookings.checkout(ride_id, passenger, 1, "tok_visa")
    bookings.driver_decision(booking.id, driver, "accept")

    assert bookings.complete_departed() == 0
    assert database.get_booking(booking.id)["status"] == "confirmed"


def test_run_sweeps_reports_each_job(bookings, processor, driver, passenger, make_profile, make_ride):
    refund_ride = make_ride(driver, departs_in=timedelta(days=10))
    owed = bookings.checkout(refund_ride, passenger, 1, "tok_visa")
    bookings.driver_decision(owed.id, driver, "accept")
    processor.fail_operations.add("refund")
    with pytest.raises(RefundFailed):
        bookings.passenger_cancel(owed.id, passenger)
    processor.fail_operations.clear()

    stale_ride = make_ride(driver, departs_in=timedelta(days=30))
    bookings.inventory.reserve_seats(stale_ride, 1, now=utcnow() - timedelta(hours=1))

    result = bookings.run_sweeps()
    assert result == {
        "expired_holds": 0,
        "completed_bookings": 0,
        "released_reservations": 1,
        "settled_refunds": 1,
    }
    assert bookings.run_sweeps()["settled_refunds"] == 0
