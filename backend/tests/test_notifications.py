import pytest

from notifications import BOOKING_ACCEPTED, BOOKING_REQUESTED, RIDE_CANCELLED, Notifier
from services import build_services


@pytest.fixture
def sent(monkeypatch):
    outbox = []

    def fake_send(self, to_email, subject, body):
        outbox.append((to_email, subject, body))
        return True

    monkeypatch.setattr(Notifier, "_send", fake_send)
    return outbox


@pytest.fixture
def mailing_bookings(database, processor):
    return build_services(database=database, processor=processor).bookings


def test_booking_request_goes_to_driver(mailing_bookings, sent, driver, passenger, make_ride):
    mailing_bookings.checkout(make_ride(driver, origin="Leeds", destination="York"), passenger, 2, "tok_visa")

    to_email, subject, body = sent[-1]
    assert to_email == "dana@example.com"
    assert "Leeds to York" in subject
    assert "Priya has requested 2 seat(s)" in body


def test_acceptance_goes_to_passenger(mailing_bookings, sent, driver, passenger, make_ride):
    booking = mailing_bookings.checkout(make_ride(driver, price="12.50"), passenger, 1, "tok_visa")
    mailing_bookings.driver_decision(booking.id, driver, "accept")

    to_email, subject, body = sent[-1]
    assert to_email == "priya@example.com"
    assert "confirmed" in subject
    assert "12.50" in body


def test_ride_cancellation_mentions_refund(mailing_bookings, sent, driver, passenger, make_ride):
    ride_id = make_ride(driver, price="20.00")
    booking = mailing_bookings.checkout(ride_id, passenger, 1, "tok_visa")
    mailing_bookings.driver_decision(booking.id, driver, "accept")
    mailing_bookings.cancel_ride(ride_id, driver)

    to_email, _, body = sent[-1]
    assert to_email == "priya@example.com"
    assert "refund of 20.00" in body


def test_missing_email_is_skipped(database, sent, make_profile, driver, make_ride, bookings):
    no_email = make_profile(name="Ola", gender="Female")
    booking = bookings.checkout(make_ride(driver), no_email, 1, "tok_visa")
    notifier = Notifier(database)

    assert notifier.notify(BOOKING_ACCEPTED, booking) is False
    assert notifier.notify(BOOKING_REQUESTED, booking) is True
    assert [s[0] for s in sent] == ["dana@example.com"]


def test_unknown_event_is_logged_not_raised(database, driver, passenger, make_ride, bookings):
    booking = bookings.checkout(make_ride(driver), passenger, 1, "tok_visa")
    assert Notifier(database).notify("no_such_event", booking) is False


def test_unconfigured_smtp_does_not_send(database, driver, passenger, make_ride, bookings):
    booking = bookings.checkout(make_ride(driver), passenger, 1, "tok_visa")
    assert Notifier(database).notify(RIDE_CANCELLED, booking) is False
