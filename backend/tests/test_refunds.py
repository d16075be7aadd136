from datetime import timedelta
from decimal import Decimal

import pytest

from errors import StateTransitionError
from models import Booking, utcnow
from refunds import refund_for


def _booking(status, total="40.00"):
    return Booking(
        id=1,
        ride_id=1,
        passenger_id=2,
        seats_booked=2,
        total_paid=Decimal(total),
        authorization_ref="sim_auth_1",
        status=status,
    )


def test_confirmed_booking_72_hours_out_gets_half_back():
    now = utcnow()
    quote = refund_for(_booking("confirmed"), now + timedelta(hours=72), now)
    assert quote.amount == Decimal("20.00")
    assert "50%" in quote.text


def test_confirmed_booking_10_hours_out_gets_nothing():
    now = utcnow()
    quote = refund_for(_booking("confirmed"), now + timedelta(hours=10), now)
    assert quote.amount == Decimal("0.00")


def test_exactly_48_hours_out_is_inside_the_refund_window():
    now = utcnow()
    quote = refund_for(_booking("confirmed"), now + timedelta(hours=48), now)
    assert quote.amount == Decimal("20.00")


@pytest.mark.parametrize("hours", [200, 48, 1, -5])
def test_pending_booking_releases_the_full_hold(hours):
    now = utcnow()
    quote = refund_for(_booking("pending_driver", "33.33"), now + timedelta(hours=hours), now)
    assert quote.amount == Decimal("33.33")
    assert "not been charged" in quote.text


def test_half_refund_rounds_to_the_cent():
    now = utcnow()
    quote = refund_for(_booking("confirmed", "33.33"), now + timedelta(hours=100), now)
    assert quote.amount == Decimal("16.67")


@pytest.mark.parametrize("status", ["cancelled", "completed", "refunded"])
def test_terminal_bookings_have_no_refund_quote(status):
    now = utcnow()
    with pytest.raises(StateTransitionError):
        refund_for(_booking(status), now + timedelta(hours=72), now)
