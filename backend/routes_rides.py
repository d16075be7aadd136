"""
Ride Marketplace - Rides Routes

Posting, searching, viewing and cancelling rides. Search results are
filtered by eligibility when the searching passenger is known; that
filter is advisory, checkout repeats the check.
"""

import logging
from datetime import datetime, time, timedelta, timezone

from flask import Blueprint, jsonify

from auth import require_approved_driver, require_profile
from eligibility import incompatibility_reason
from errors import ValidationError
from extensions import get_services, parse_args, parse_body
from models import (
    CancelRideRequest,
    CreateRideRequest,
    Ride,
    RideFilters,
    UpdateRideRequest,
    utcnow,
)
from money import to_minor


logger = logging.getLogger(__name__)

# Create blueprint
rides_bp = Blueprint('rides', __name__, url_prefix='/api/rides')


# =============================================================================
# Helper Functions
# =============================================================================

def _start_of(day) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def search_rides(filters: RideFilters):
    """
    Upcoming rides matching `filters`, as JSON-ready dicts.

    With a passenger_id, each ride is flagged with whether that passenger
    may book it, and the passenger's own rides are left out.
    """
    services = get_services()
    now = utcnow()

    departs_after = now
    if filters.date_from:
        departs_after = max(now, _start_of(filters.date_from))
    departs_before = _start_of(filters.date_to + timedelta(days=1)) if filters.date_to else None
    if departs_before and departs_before <= departs_after:
        return []

    rows = services.db.search_rides(
        departs_after=departs_after,
        origin=filters.origin,
        destination=filters.destination,
        departs_before=departs_before,
        min_seats=filters.min_seats,
    )

    passenger = None
    if filters.passenger_id is not None:
        passenger = require_profile(services.db, filters.passenger_id, 'Passenger')

    results = []
    for row in rows:
        ride = Ride.from_row(row).to_json()
        ride['driver_name'] = row['driver_name']
        if passenger is None:
            results.append(ride)
            continue
        if row['driver_id'] == passenger.id:
            continue
        reason = incompatibility_reason(
            passenger.travel_grouping, passenger.gender,
            row['driver_travel_grouping'], row['driver_gender'],
        )
        ride['compatible'] = reason is None
        ride['incompatibility_reason'] = reason
        results.append(ride)
    return results


# =============================================================================
# Ride Routes
# =============================================================================

@rides_bp.route('')
def list_rides():
    filters = parse_args(RideFilters)
    rides = search_rides(filters)
    if filters.passenger_id is not None and not filters.include_incompatible:
        rides = [r for r in rides if r['compatible']]
    return jsonify({'rides': rides, 'filters': filters.model_dump(mode='json')})


@rides_bp.route('', methods=['POST'])
def post_ride():
    """An approved driver publishes a ride."""
    services = get_services()
    body = parse_body(CreateRideRequest)
    require_approved_driver(services.db, body.driver_id)

    now = utcnow()
    if body.departure_at <= now:
        raise ValidationError("Departure time must be in the future.")

    ride_id = services.db.create_ride(
        driver_id=body.driver_id,
        origin=body.origin,
        destination=body.destination,
        departure_at=body.departure_at,
        seats_total=body.seats_total,
        price_per_seat_minor=to_minor(body.price_per_seat),
        created_at=now,
    )
    logger.info("Driver %d posted ride %d (%s -> %s)",
                body.driver_id, ride_id, body.origin, body.destination)
    ride = services.bookings.get_ride(ride_id)
    return jsonify({'success': True, 'ride': ride.to_json()}), 201


@rides_bp.route('/<int:ride_id>')
def ride_detail(ride_id):
    ride = get_services().bookings.get_ride(ride_id)
    return jsonify({'ride': ride.to_json()})


@rides_bp.route('/<int:ride_id>', methods=['POST'])
def edit_ride(ride_id):
    """Driver edits an upcoming ride; fields left out are unchanged."""
    body = parse_body(UpdateRideRequest)
    ride = get_services().bookings.update_ride(
        ride_id, body.driver_id, body.model_dump(exclude={'driver_id'}),
    )
    return jsonify({'success': True, 'ride': ride.to_json()})


@rides_bp.route('/<int:ride_id>/cancel', methods=['POST'])
def cancel_ride(ride_id):
    """Driver cancels a ride; pending holds are released and confirmed bookings refunded."""
    body = parse_body(CancelRideRequest)
    result = get_services().bookings.cancel_ride(ride_id, body.driver_id)
    failed = [b for b in result['bookings'] if 'error' in b]
    return jsonify({
        'success': not failed,
        'ride': result['ride'].to_json(),
        'bookings': result['bookings'],
    }), 200 if not failed else 207
