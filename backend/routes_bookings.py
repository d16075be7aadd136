"""
Ride Marketplace - Bookings Routes

JSON endpoints for checkout, the driver's accept/reject decision and
passenger cancellation. Domain errors raised here are turned into JSON
responses by the application error handler.
"""

from flask import Blueprint, jsonify

from auth import require_booking_party, require_profile
from config import config
from extensions import get_services, int_arg, limiter, parse_body
from models import CheckoutRequest, DriverDecisionRequest, PassengerCancelRequest


# Create blueprint
bookings_bp = Blueprint('bookings', __name__, url_prefix='/api/bookings')


# =============================================================================
# Booking Routes
# =============================================================================

@bookings_bp.route('/checkout', methods=['POST'])
@limiter.limit(lambda: config.CHECKOUT_RATE_LIMIT)
def checkout():
    """Reserve seats and place the payment hold."""
    body = parse_body(CheckoutRequest)
    booking = get_services().bookings.checkout(
        ride_id=body.ride_id,
        passenger_id=body.passenger_id,
        seat_count=body.seat_count,
        payment_source=body.payment_source,
    )
    return jsonify({
        'success': True,
        'message': 'Booking requested. The driver will review it shortly.',
        'booking': booking.to_json(),
    }), 201


@bookings_bp.route('/<int:booking_id>/driver-decision', methods=['POST'])
def driver_decision(booking_id):
    """Driver accepts (charges) or rejects (releases) a booking request."""
    body = parse_body(DriverDecisionRequest)
    booking = get_services().bookings.driver_decision(
        booking_id, body.driver_id, body.decision,
    )
    return jsonify({'success': True, 'booking': booking.to_json()})


@bookings_bp.route('/<int:booking_id>/passenger-cancel', methods=['POST'])
def passenger_cancel(booking_id):
    """Passenger cancels; the response says what comes back to them."""
    body = parse_body(PassengerCancelRequest)
    booking, quote = get_services().bookings.passenger_cancel(booking_id, body.passenger_id)
    return jsonify({
        'success': True,
        'booking': booking.to_json(),
        'refund_amount': str(quote.amount),
        'refund_text': quote.text,
    })


@bookings_bp.route('/<int:booking_id>')
def get_booking(booking_id):
    services = get_services()
    actor_id = int_arg('actor_id')
    booking = services.bookings.get_booking(booking_id)
    ride = services.bookings.get_ride(booking.ride_id)
    require_booking_party(services.db, booking, ride, actor_id)
    return jsonify({'booking': booking.to_json(), 'ride': ride.to_json()})


@bookings_bp.route('')
def my_bookings():
    """A passenger's bookings, newest first."""
    services = get_services()
    passenger = require_profile(services.db, int_arg('passenger_id'), 'Passenger')
    bookings = services.bookings.bookings_for_passenger(passenger.id)
    rides = services.db.get_rides(b.ride_id for b in bookings)
    return jsonify({
        'bookings': [
            dict(
                booking.to_json(),
                origin=rides[booking.ride_id]['origin'],
                destination=rides[booking.ride_id]['destination'],
            )
            for booking in bookings
        ],
    })
