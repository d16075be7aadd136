import threading
from datetime import timedelta

import pytest

from models import utcnow


def _checkout(client, ride_id, passenger_id, seats=1, source="tok_visa"):
    return client.post("/api/bookings/checkout", json={
        "ride_id": ride_id,
        "passenger_id": passenger_id,
        "seat_count": seats,
        "payment_source": source,
    })


# =============================================================================
# Checkout
# =============================================================================

def test_checkout_returns_pending_booking(client, driver, passenger, make_ride):
    ride_id = make_ride(driver, price="20.00")
    response = _checkout(client, ride_id, passenger, seats=2)

    assert response.status_code == 201
    booking = response.get_json()["booking"]
    assert booking["status"] == "pending_driver"
    assert booking["total_paid"] == "40.00"
    assert booking["commission_amount"] is None


def test_last_seat_goes_to_exactly_one_passenger(app, make_profile, driver, make_ride):
    ride_id = make_ride(driver, seats_total=1)
    passengers = [make_profile(name=f"P{i}", gender="Female") for i in range(2)]
    barrier = threading.Barrier(2)
    responses = []

    def attempt(passenger_id):
        client = app.test_client()
        barrier.wait()
        responses.append(_checkout(client, ride_id, passenger_id))

    threads = [threading.Thread(target=attempt, args=(p,)) for p in passengers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    codes = sorted(r.status_code for r in responses)
    assert codes == [201, 409]
    conflict = next(r for r in responses if r.status_code == 409).get_json()
    assert conflict["code"] == "InventoryExhausted"
    assert conflict["details"]["seats_available"] == 0
    assert conflict["outcome"] == "none"


def test_incompatible_checkout_is_forbidden(client, make_profile, driver, make_ride):
    ride_id = make_ride(driver)
    male = make_profile(name="Tom", gender="Male")
    response = _checkout(client, ride_id, male)

    assert response.status_code == 403
    body = response.get_json()
    assert body["code"] == "CompatibilityError"
    assert "not available for solo male passengers" in body["error"]


def test_declined_card_is_payment_required(client, database, driver, passenger, make_ride):
    ride_id = make_ride(driver)
    response = _checkout(client, ride_id, passenger, source="tok_decline")
    assert response.status_code == 402
    assert database.get_ride(ride_id)["seats_taken"] == 0


@pytest.mark.parametrize("body", [
    {"ride_id": 1, "passenger_id": 2, "seat_count": 0, "payment_source": "tok_visa"},
    {"ride_id": 1, "passenger_id": 2, "seat_count": 1},
    {"ride_id": "x", "passenger_id": 2, "seat_count": 1, "payment_source": "tok_visa"},
])
def test_invalid_checkout_body(client, body):
    response = client.post("/api/bookings/checkout", json=body)
    assert response.status_code == 400
    assert response.get_json()["code"] == "ValidationError"


def test_non_json_body_is_rejected(client):
    response = client.post("/api/bookings/checkout", data="ride=1")
    assert response.status_code == 400


# =============================================================================
# Booking Lifecycle
# =============================================================================

def test_accept_then_cancel_over_http(client, driver, passenger, make_ride):
    ride_id = make_ride(driver, price="20.00", departs_in=timedelta(hours=72))
    booking_id = _checkout(client, ride_id, passenger, seats=2).get_json()["booking"]["id"]

    accepted = client.post(f"/api/bookings/{booking_id}/driver-decision",
                           json={"driver_id": driver, "decision": "accept"})
    assert accepted.status_code == 200
    booking = accepted.get_json()["booking"]
    assert booking["status"] == "confirmed"
    assert booking["commission_amount"] == "10.00"
    assert booking["driver_payout_amount"] == "30.00"

    again = client.post(f"/api/bookings/{booking_id}/driver-decision",
                        json={"driver_id": driver, "decision": "accept"})
    assert again.status_code == 409

    cancelled = client.post(f"/api/bookings/{booking_id}/passenger-cancel",
                            json={"passenger_id": passenger})
    assert cancelled.status_code == 200
    body = cancelled.get_json()
    assert body["refund_amount"] == "20.00"
    assert body["booking"]["status"] == "refunded"


def test_unknown_decision_is_rejected(client, driver, passenger, make_ride):
    booking_id = _checkout(client, make_ride(driver), passenger).get_json()["booking"]["id"]
    response = client.post(f"/api/bookings/{booking_id}/driver-decision",
                           json={"driver_id": driver, "decision": "maybe"})
    assert response.status_code == 400


def test_booking_visible_only_to_its_parties(client, make_profile, driver, passenger, admin, make_ride):
    booking_id = _checkout(client, make_ride(driver), passenger).get_json()["booking"]["id"]
    stranger = make_profile(name="Kim", gender="Female")

    for actor in (passenger, driver, admin):
        assert client.get(f"/api/bookings/{booking_id}?actor_id={actor}").status_code == 200
    assert client.get(f"/api/bookings/{booking_id}?actor_id={stranger}").status_code == 403
    assert client.get(f"/api/bookings/{booking_id}").status_code == 400


def test_passenger_booking_list(client, driver, passenger, make_ride):
    _checkout(client, make_ride(driver, origin="York", destination="Hull"), passenger)
    response = client.get(f"/api/bookings?passenger_id={passenger}")
    bookings = response.get_json()["bookings"]
    assert len(bookings) == 1
    assert bookings[0]["origin"] == "York"
    assert bookings[0]["destination"] == "Hull"


def test_missing_booking_is_404(client, passenger):
    response = client.post("/api/bookings/999/passenger-cancel", json={"passenger_id": passenger})
    assert response.status_code == 404
    assert response.get_json()["code"] == "NotFound"


# =============================================================================
# Rides
# =============================================================================

def test_listing_hides_rides_the_passenger_cannot_book(client, make_profile, driver, make_ride):
    male_driver = make_profile(name="Raj", gender="Male", driver=True)
    open_ride = make_ride(male_driver)
    closed_ride = make_ride(driver)
    passenger = make_profile(name="Tom", gender="Male")

    rides = client.get(f"/api/rides?passenger_id={passenger}").get_json()["rides"]
    assert [r["id"] for r in rides] == [open_ride]

    rides = client.get(
        f"/api/rides?passenger_id={passenger}&include_incompatible=true"
    ).get_json()["rides"]
    flagged = {r["id"]: r for r in rides}
    assert flagged[open_ride]["compatible"] is True
    assert flagged[closed_ride]["compatible"] is False
    assert "solo male" in flagged[closed_ride]["incompatibility_reason"]


def test_listing_filters_by_route_and_seats(client, driver, make_ride):
    make_ride(driver, origin="Leeds", destination="York", seats_total=1)
    wanted = make_ride(driver, origin="Leeds", destination="York", seats_total=4)
    make_ride(driver, origin="Leeds", destination="Bath", seats_total=4)

    rides = client.get("/api/rides?origin=leeds&destination=york&min_seats=2").get_json()["rides"]
    assert [r["id"] for r in rides] == [wanted]


def test_approved_driver_posts_ride(client, driver):
    response = client.post("/api/rides", json={
        "driver_id": driver,
        "origin": "Leeds",
        "destination": "Sheffield",
        "departure_at": (utcnow() + timedelta(days=2)).isoformat(),
        "seats_total": 3,
        "price_per_seat": "12.50",
    })
    assert response.status_code == 201
    ride = response.get_json()["ride"]
    assert ride["price_per_seat"] == "12.50"
    assert ride["status"] == "upcoming"


def test_unapproved_driver_cannot_post(client, passenger):
    response = client.post("/api/rides", json={
        "driver_id": passenger,
        "origin": "Leeds",
        "destination": "Sheffield",
        "departure_at": (utcnow() + timedelta(days=2)).isoformat(),
        "seats_total": 3,
        "price_per_seat": "12.50",
    })
    assert response.status_code == 403


def test_driver_cancels_ride(client, driver, passenger, make_ride):
    ride_id = make_ride(driver)
    _checkout(client, ride_id, passenger)

    response = client.post(f"/api/rides/{ride_id}/cancel", json={"driver_id": driver})
    assert response.status_code == 200
    body = response.get_json()
    assert body["ride"]["status"] == "cancelled"
    assert body["bookings"][0]["status"] == "cancelled"


# =============================================================================
# Admin
# =============================================================================

@pytest.mark.parametrize("path", [
    "/api/admin/payouts",
    "/api/admin/rides-overview",
    "/api/admin/driver-balances",
])
def test_admin_routes_refuse_non_admins(client, passenger, path):
    assert client.get(f"{path}?admin_id={passenger}").status_code == 403
    assert client.get(path).status_code == 400


def test_payout_flow(client, admin, driver, passenger, make_ride):
    booking_id = _checkout(client, make_ride(driver, price="40.00"), passenger).get_json()["booking"]["id"]
    client.post(f"/api/bookings/{booking_id}/driver-decision",
                json={"driver_id": driver, "decision": "accept"})

    response = client.post("/api/admin/payouts", json={
        "admin_id": admin, "driver_id": driver, "amount": "10.00", "note": "weekly",
    })
    assert response.status_code == 201
    body = response.get_json()
    assert body["payout"]["amount"] == "10.00"
    assert body["balance"]["balance_owed"] == "20.00"

    payouts = client.get(f"/api/admin/payouts?admin_id={admin}&driver_id={driver}").get_json()
    assert [p["amount"] for p in payouts["payouts"]] == ["10.00"]

    balances = client.get(f"/api/admin/driver-balances?admin_id={admin}").get_json()["balances"]
    assert balances[0]["driver_id"] == driver
    assert balances[0]["total_earned"] == "30.00"

    overview = client.get(f"/api/admin/rides-overview?admin_id={admin}").get_json()
    assert overview["totals"]["total_commission"] == "10.00"


def test_negative_payout_is_rejected(client, admin, driver):
    response = client.post("/api/admin/payouts", json={
        "admin_id": admin, "driver_id": driver, "amount": "-5.00",
    })
    assert response.status_code == 400


def test_admin_approves_driver(client, admin, passenger):
    response = client.post(f"/api/admin/drivers/{passenger}/approve?admin_id={admin}")
    assert response.status_code == 200
    assert response.get_json()["profile"]["is_approved_driver"] is True


# =============================================================================
# Profiles and Health
# =============================================================================

def test_create_profile_and_reject_duplicate_email(client):
    body = {"name": "Nia", "email": "Nia@Example.com", "gender": "Female", "travel_grouping": "couple"}
    created = client.post("/api/profiles", json=body)
    assert created.status_code == 201
    profile = created.get_json()["profile"]
    assert profile["email"] == "nia@example.com"
    assert profile["travel_grouping"] == "couple"

    assert client.post("/api/profiles", json=body).status_code == 400
    assert client.get(f"/api/profiles/{profile['id']}").status_code == 200


def test_health(client):
    body = client.get("/api/health").get_json()
    assert body["status"] == "ok"
    assert body["database"] == "sqlite"
    assert body["payment_processor"] == "SimulatedProcessor"


def test_unknown_route_is_json_404(client):
    response = client.get("/api/nothing-here")
    assert response.status_code == 404
    assert response.get_json()["outcome"] == "none"


# =============================================================================
# Ride editing
# =============================================================================

def test_driver_edits_ride_over_api(client, driver, make_ride):
    ride_id = make_ride(driver, seats_total=3)
    response = client.post(f"/api/rides/{ride_id}", json={"driver_id": driver, "seats_total": 4})
    assert response.status_code == 200
    assert response.get_json()["ride"]["seats_total"] == 4


def test_only_the_owner_edits_a_ride(client, driver, passenger, make_ride):
    ride_id = make_ride(driver)
    response = client.post(f"/api/rides/{ride_id}", json={"driver_id": passenger, "seats_total": 4})
    assert response.status_code == 403


def test_seats_cannot_drop_below_booked_over_api(client, driver, passenger, make_ride):
    ride_id = make_ride(driver, seats_total=3)
    assert _checkout(client, ride_id, passenger, seats=2).status_code == 201

    response = client.post(f"/api/rides/{ride_id}", json={"driver_id": driver, "seats_total": 1})
    assert response.status_code == 409
    assert response.get_json()["code"] == "SeatsAlreadyBooked"


# =============================================================================
# Request-driven sweep
# =============================================================================

def test_request_hook_sweeps_when_enabled(app, client, bookings, database, driver, make_ride):
    app.config['SWEEP_ON_REQUEST'] = True
    ride_id = make_ride(driver, departs_in=timedelta(days=30))
    bookings.inventory.reserve_seats(ride_id, 1, now=utcnow() - timedelta(hours=1))
    assert database.get_ride(ride_id)["seats_taken"] == 1

    client.get(f"/api/rides/{ride_id}")
    assert database.get_ride(ride_id)["seats_taken"] == 0
    assert app._last_sweep.tzinfo is not None


def test_request_hook_is_off_by_default(app, client, bookings, database, driver, make_ride):
    ride_id = make_ride(driver, departs_in=timedelta(days=30))
    bookings.inventory.reserve_seats(ride_id, 1, now=utcnow() - timedelta(hours=1))

    client.get(f"/api/rides/{ride_id}")
    assert database.get_ride(ride_id)["seats_taken"] == 1
