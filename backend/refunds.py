"""
Cancellation refund policy.

Pure calculation: given a booking and when its ride leaves, decide how
much goes back to the passenger and how to describe it.
"""

from datetime import datetime, timedelta

from config import config
from errors import StateTransitionError
from models import Booking, BookingStatus, RefundQuote
from money import format_amount, percent_of, quantize


def hours_until(departure_at: datetime, now: datetime) -> float:
    return (departure_at - now) / timedelta(hours=1)


def refund_for(booking: Booking, departure_at: datetime, now: datetime) -> RefundQuote:
    """
    Refund owed when the passenger cancels `booking` at `now`.

    - pending_driver: nothing was charged, the hold is released in full.
    - confirmed, at least REFUND_WINDOW_HOURS before departure: a partial refund.
    - confirmed, later than that: no refund.
    """
    if booking.status == BookingStatus.PENDING_DRIVER:
        amount = quantize(booking.total_paid)
        return RefundQuote(
            text=f"Your payment hold of {format_amount(amount)} will be released. You have not been charged.",
            amount=amount,
        )

    if booking.status != BookingStatus.CONFIRMED:
        raise StateTransitionError(
            f"A {booking.status.value} booking cannot be cancelled.",
            details={'booking_id': booking.id, 'status': booking.status.value},
        )

    if hours_until(departure_at, now) >= config.REFUND_WINDOW_HOURS:
        amount = percent_of(booking.total_paid, config.PARTIAL_REFUND_RATE)
        rate = int(config.PARTIAL_REFUND_RATE * 100)
        return RefundQuote(
            text=f"You will receive a {rate}% refund of {format_amount(amount)}.",
            amount=amount,
        )

    return RefundQuote(
        text=(
            f"Cancellations less than {config.REFUND_WINDOW_HOURS} hours before "
            "departure are not refunded."
        ),
        amount=quantize(0),
    )
