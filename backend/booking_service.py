"""
Ride Marketplace - Booking State Machine

Drives a booking through its lifecycle:

    (checkout)      -> pending_driver    reserve seats, authorize payment
    pending_driver  -> confirmed         driver accepts: capture, split
    pending_driver  -> cancelled         driver rejects, passenger cancels,
                                         hold expires or ride is cancelled:
                                         void, release seats
    confirmed       -> cancelled         passenger cancels: refund quote,
                                         release seats
    confirmed       -> completed         ride departs
    cancelled       -> refunded          processor refund settles

Every transition out of an existing state first claims the booking (a
short lease recorded on the row), then talks to the payment processor,
then writes the new state only if it still holds the claim. A driver
decision racing a passenger cancellation therefore has exactly one
winner, and no ride or seat row stays locked during the processor call.
If the processor call fails the claim is dropped and the booking keeps
its previous state.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import config
from database import Database
from eligibility import profile_reason
from errors import (
    OUTCOME_NONE,
    OUTCOME_PARTIAL,
    CompatibilityError,
    InventoryExhausted,
    MarketplaceError,
    NotFound,
    PaymentError,
    RefundFailed,
    StateTransitionError,
    UnauthorizedAction,
    ValidationError,
    VoidFailed,
)
from inventory import SeatInventory
from models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingStatus,
    DriverAction,
    Profile,
    RefundQuote,
    Ride,
    RideStatus,
    utcnow,
)
from money import percent_of, quantize, to_minor
from notifications import (
    BOOKING_ACCEPTED,
    BOOKING_CANCELLED,
    BOOKING_REJECTED,
    BOOKING_REQUESTED,
    RIDE_CANCELLED,
)
from payments import PaymentGateway
from refunds import refund_for


logger = logging.getLogger(__name__)


def _statuses(statuses: Sequence[BookingStatus]) -> List[str]:
    return [s.value for s in statuses]


def split_payment(total_paid) -> Tuple:
    """(commission, driver payout) for a captured amount."""
    commission = percent_of(total_paid, config.COMMISSION_RATE)
    return commission, quantize(total_paid) - commission


class BookingService:

    def __init__(
        self,
        database: Database,
        inventory: SeatInventory,
        gateway: PaymentGateway,
        notifier,
        settlement=None,
    ):
        self.db = database
        self.inventory = inventory
        self.gateway = gateway
        self.notifier = notifier
        self.settlement = settlement

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_profile(self, profile_id: int) -> Profile:
        row = self.db.get_profile(profile_id)
        if not row:
            raise NotFound(f"Profile {profile_id} not found.", details={'profile_id': profile_id})
        return Profile.from_row(row)

    def get_ride(self, ride_id: int) -> Ride:
        row = self.db.get_ride(ride_id)
        if not row:
            raise NotFound(f"Ride {ride_id} not found.", details={'ride_id': ride_id})
        return Ride.from_row(row)

    def get_booking(self, booking_id: int) -> Booking:
        row = self.db.get_booking(booking_id)
        if not row:
            raise NotFound(f"Booking {booking_id} not found.", details={'booking_id': booking_id})
        return Booking.from_row(row)

    def bookings_for_passenger(self, passenger_id: int) -> List[Booking]:
        return [Booking.from_row(row) for row in self.db.get_bookings_by_passenger(passenger_id)]

    # =========================================================================
    # Transition plumbing
    # =========================================================================

    def _claim(
        self,
        booking: Booking,
        expected: Sequence[BookingStatus],
        action: str,
        now: datetime,
    ) -> Tuple[Booking, str]:
        """
        Take the transition lease on a booking.

        Raises:
            StateTransitionError: The booking is not in an expected state,
                or another transition currently holds it.
        """
        operation = f"{action}:{uuid.uuid4().hex}"
        lease_cutoff = now - timedelta(seconds=config.OPERATION_LEASE_SECONDS)
        row = self.db.claim_booking(booking.id, _statuses(expected), operation, now, lease_cutoff)
        if row:
            return Booking.from_row(row), operation

        current = self.get_booking(booking.id)
        if current.status not in expected:
            raise StateTransitionError(
                f"This booking is already {current.status.value}.",
                details={'booking_id': booking.id, 'status': current.status.value},
            )
        raise StateTransitionError(
            "Another change to this booking is in progress. Please try again.",
            code='TransitionInProgress',
            details={'booking_id': booking.id, 'status': current.status.value},
        )

    def _finish(
        self,
        booking: Booking,
        operation: str,
        fields: Dict[str, Any],
        now: datetime,
        release_seats: bool = False,
        money_moved: bool = False,
    ) -> Booking:
        if not self.db.finish_transition(booking.id, operation, fields, now, release_seats):
            logger.error("Booking %d: lost transition claim %s before it could be applied",
                         booking.id, operation)
            raise StateTransitionError(
                "This booking was changed by another request while it was being processed.",
                details={'booking_id': booking.id},
                outcome=OUTCOME_PARTIAL if money_moved else OUTCOME_NONE,
            )

        updated = self.get_booking(booking.id)
        logger.info("Booking %d: %s -> %s (%s)",
                    booking.id, booking.status.value, updated.status.value, operation.split(':')[0])
        if self.settlement is not None:
            self.settlement.invalidate()
        return updated

    def _abandon(self, booking: Booking, operation: str) -> None:
        """Drop the claim after a failed processor call; the booking keeps its state."""
        self.db.release_claim(booking.id, operation)
        logger.warning("Booking %d: %s abandoned, status stays %s",
                       booking.id, operation.split(':')[0], booking.status.value)

    def _notify(self, event: str, booking: Booking) -> None:
        try:
            self.notifier.notify(event, booking)
        except Exception:
            logger.exception("Notification %s for booking %d failed", event, booking.id)

    # =========================================================================
    # Checkout
    # =========================================================================

    def checkout(
        self,
        ride_id: int,
        passenger_id: int,
        seat_count: int,
        payment_source: str,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Reserve seats and place a payment hold, creating a pending_driver booking.

        Seats are reserved before the processor is called and released again
        if authorization fails, so a failed checkout leaves nothing behind.

        Raises:
            ValidationError, NotFound, CompatibilityError, InventoryExhausted,
            StateTransitionError, PaymentAuthorizationFailed
        """
        now = now or utcnow()
        if seat_count < 1:
            raise ValidationError("At least one seat must be booked.")
        if not payment_source:
            raise ValidationError("A payment source is required.")

        passenger = self.get_profile(passenger_id)
        ride = self.get_ride(ride_id)
        if ride.driver_id == passenger.id:
            raise ValidationError("You cannot book your own ride.")

        # Authoritative eligibility check; ride listings only filter advisorily
        reason = profile_reason(passenger, self.get_profile(ride.driver_id))
        if reason:
            raise CompatibilityError(reason, details={'ride_id': ride_id})

        reservation = self.inventory.reserve_seats(ride_id, seat_count, now)
        total = quantize(ride.price_per_seat * seat_count)

        try:
            authorization_ref = self.gateway.authorize(total, payment_source)
        except Exception:
            self.inventory.release(reservation.id)
            raise

        try:
            booking_id = self.db.create_booking(
                reservation.id, ride_id, passenger_id, seats_booked=seat_count,
                total_paid_minor=to_minor(total), authorization_ref=authorization_ref, now=now,
            )
        except Exception:
            # No booking row means no sweep would ever find this hold
            logger.exception("Booking for reservation %d could not be saved; voiding %s",
                             reservation.id, authorization_ref)
            self.inventory.release(reservation.id)
            self._void_unbooked_hold(authorization_ref, ride_id)
            raise

        if booking_id is None:
            # The reservation outlived its TTL while we waited on the processor
            logger.warning("Reservation %d expired during checkout; voiding %s",
                           reservation.id, authorization_ref)
            self._void_unbooked_hold(authorization_ref, ride_id)
            raise InventoryExhausted(ride_id, seat_count, self.inventory.seats_available(ride_id))

        booking = self.get_booking(booking_id)
        logger.info("Booking %d created: passenger %d, ride %d, %d seat(s), %s held",
                    booking.id, passenger_id, ride_id, seat_count, authorization_ref)
        self._notify(BOOKING_REQUESTED, booking)
        return booking

    def _void_unbooked_hold(self, authorization_ref: str, ride_id: int) -> None:
        try:
            self.gateway.void(authorization_ref)
        except PaymentError as e:
            raise VoidFailed(
                "The booking could not be saved and the payment hold could not be cancelled.",
                details={'authorization_ref': authorization_ref, 'ride_id': ride_id},
                outcome=OUTCOME_PARTIAL,
            ) from e

    # =========================================================================
    # Driver Decision
    # =========================================================================

    def driver_decision(
        self,
        booking_id: int,
        driver_id: int,
        decision: str,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Accept (capture) or reject (void) a pending_driver booking.

        Raises:
            UnauthorizedAction: Caller does not own the ride.
            StateTransitionError: The booking already left pending_driver.
            PaymentCaptureFailed, VoidFailed: Booking stays pending_driver.
        """
        now = now or utcnow()
        if decision not in ('accept', 'reject'):
            raise ValidationError("Decision must be 'accept' or 'reject'.")

        booking = self.get_booking(booking_id)
        ride = self.get_ride(booking.ride_id)
        if ride.driver_id != driver_id:
            raise UnauthorizedAction(
                "Only the driver of this ride can accept or reject bookings.",
                details={'booking_id': booking_id},
            )

        if decision == 'accept':
            if ride.status != RideStatus.UPCOMING or ride.departure_at <= now:
                raise StateTransitionError(
                    "Bookings can only be accepted before the ride departs.",
                    details={'booking_id': booking_id, 'ride_status': ride.status.value},
                )
            return self._accept(booking, now)
        return self._reject(booking, now)

    def _accept(self, booking: Booking, now: datetime) -> Booking:
        claimed, operation = self._claim(booking, (BookingStatus.PENDING_DRIVER,), 'accept', now)
        try:
            capture_ref = self.gateway.capture(claimed.authorization_ref)
        except PaymentError:
            self._abandon(claimed, operation)
            raise

        commission, driver_payout = split_payment(claimed.total_paid)
        updated = self._finish(claimed, operation, {
            'status': BookingStatus.CONFIRMED.value,
            'driver_action': DriverAction.ACCEPTED.value,
            'driver_action_at': now,
            'capture_ref': capture_ref,
            'commission_minor': to_minor(commission),
            'driver_payout_minor': to_minor(driver_payout),
        }, now, money_moved=True)
        self._notify(BOOKING_ACCEPTED, updated)
        return updated

    def _reject(self, booking: Booking, now: datetime) -> Booking:
        claimed, operation = self._claim(booking, (BookingStatus.PENDING_DRIVER,), 'reject', now)
        try:
            self.gateway.void(claimed.authorization_ref)
        except PaymentError:
            self._abandon(claimed, operation)
            raise

        updated = self._finish(claimed, operation, {
            'status': BookingStatus.CANCELLED.value,
            'driver_action': DriverAction.REJECTED.value,
            'driver_action_at': now,
            'cancelled_at': now,
        }, now, release_seats=True, money_moved=True)
        self._notify(BOOKING_REJECTED, updated)
        return updated

    # =========================================================================
    # Cancellation
    # =========================================================================

    def passenger_cancel(
        self,
        booking_id: int,
        passenger_id: int,
        now: Optional[datetime] = None,
    ) -> Tuple[Booking, RefundQuote]:
        """
        Cancel a booking on the passenger's behalf.

        A pending_driver booking has its hold voided; the quote reports the
        full held amount. A confirmed booking is cancelled with the refund
        the policy allows, and a positive refund is then issued through the
        processor, moving the booking on to refunded.

        Raises:
            UnauthorizedAction: Caller is not the booking's passenger.
            StateTransitionError: The booking is already terminal, or the
                ride has departed.
            VoidFailed: Booking stays pending_driver.
            RefundFailed: Booking is cancelled but the refund is still
                owed (outcome "partial"); the settlement sweep retries it.
        """
        now = now or utcnow()
        booking = self.get_booking(booking_id)
        if booking.passenger_id != passenger_id:
            raise UnauthorizedAction(
                "Only the passenger who made this booking can cancel it.",
                details={'booking_id': booking_id},
            )
        if booking.is_terminal:
            raise StateTransitionError(
                f"This booking is already {booking.status.value} and cannot be cancelled.",
                details={'booking_id': booking_id, 'status': booking.status.value},
            )

        ride = self.get_ride(booking.ride_id)
        if ride.status != RideStatus.UPCOMING or ride.departure_at <= now:
            # Departed rides complete their confirmed bookings; pending holds expire
            raise StateTransitionError(
                "Bookings can only be cancelled before the ride departs.",
                details={'booking_id': booking_id, 'ride_status': ride.status.value},
            )
        claimed, operation = self._claim(booking, ACTIVE_BOOKING_STATUSES, 'cancel', now)
        quote = refund_for(claimed, ride.departure_at, now)

        if claimed.status == BookingStatus.PENDING_DRIVER:
            updated = self._void_and_cancel(claimed, operation, now)
        else:
            updated = self._finish(claimed, operation, {
                'status': BookingStatus.CANCELLED.value,
                'cancelled_at': now,
                'cancellation_refund_minor': to_minor(quote.amount),
            }, now, release_seats=True)
            logger.info("Booking %d cancelled by passenger, refund %s", booking_id, quote.amount)
            if quote.amount > 0:
                updated = self.settle_refund(updated, now)

        self._notify(BOOKING_CANCELLED, updated)
        return updated, quote

    def _void_and_cancel(self, claimed: Booking, operation: str, now: datetime) -> Booking:
        try:
            self.gateway.void(claimed.authorization_ref)
        except PaymentError:
            self._abandon(claimed, operation)
            raise
        return self._finish(claimed, operation, {
            'status': BookingStatus.CANCELLED.value,
            'cancelled_at': now,
        }, now, release_seats=True, money_moved=True)

    def settle_refund(self, booking: Booking, now: Optional[datetime] = None) -> Booking:
        """
        Issue the refund owed on a cancelled booking and mark it refunded.

        Returns the booking unchanged if nothing is owed or another request
        is already settling it.

        Raises:
            RefundFailed: Always with outcome "partial"; the booking stays
                cancelled with the refund amount recorded.
        """
        now = now or utcnow()
        operation = f"refund:{uuid.uuid4().hex}"
        lease_cutoff = now - timedelta(seconds=config.OPERATION_LEASE_SECONDS)
        row = self.db.claim_booking(
            booking.id, [BookingStatus.CANCELLED.value], operation, now, lease_cutoff,
        )
        if not row:
            return self.get_booking(booking.id)

        claimed = Booking.from_row(row)
        if not claimed.cancellation_refund_amount or not claimed.capture_ref or claimed.refund_ref:
            self.db.release_claim(claimed.id, operation)
            return claimed

        try:
            refund_ref = self.gateway.refund(
                claimed.authorization_ref, claimed.cancellation_refund_amount,
            )
        except RefundFailed as e:
            self._abandon(claimed, operation)
            raise RefundFailed(
                f"Booking cancelled, but the refund of {claimed.cancellation_refund_amount} "
                "could not be issued yet. It will be retried.",
                details={**e.details, 'booking_id': claimed.id},
                outcome=OUTCOME_PARTIAL,
            ) from e

        return self._finish(claimed, operation, {
            'status': BookingStatus.REFUNDED.value,
            'refund_ref': refund_ref,
        }, now, money_moved=True)

    def cancel_ride(
        self,
        ride_id: int,
        driver_id: int,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Cancel an upcoming ride and settle every active booking on it.

        Pending bookings are voided; confirmed bookings are refunded in full.
        A processor failure on one booking is reported in its result and does
        not stop the others.
        """
        now = now or utcnow()
        ride = self.get_ride(ride_id)
        if ride.driver_id != driver_id:
            raise UnauthorizedAction(
                "Only the driver of this ride can cancel it.",
                details={'ride_id': ride_id},
            )
        if ride.status != RideStatus.UPCOMING or not self.db.cancel_ride(ride_id, driver_id, now):
            raise StateTransitionError(
                f"This ride is {self.get_ride(ride_id).status.value} and cannot be cancelled.",
                details={'ride_id': ride_id},
            )
        logger.info("Ride %d cancelled by driver %d", ride_id, driver_id)

        results = []
        for row in self.db.get_bookings_by_ride(ride_id, _statuses(ACTIVE_BOOKING_STATUSES)):
            booking = Booking.from_row(row)
            try:
                updated = self._cancel_for_ride(booking, now)
            except MarketplaceError as e:
                logger.error("Ride %d: booking %d could not be settled: %s", ride_id, booking.id, e)
                results.append({'booking_id': booking.id, 'error': e.to_dict()})
                continue
            self._notify(RIDE_CANCELLED, updated)
            results.append({
                'booking_id': updated.id,
                'status': updated.status.value,
                'refund_amount': str(updated.cancellation_refund_amount or quantize(0)),
            })

        return {'ride': self.get_ride(ride_id), 'bookings': results}

    def update_ride(
        self,
        ride_id: int,
        driver_id: int,
        changes: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Ride:
        """
        Edit an upcoming ride on the owning driver's behalf.

        `changes` may hold origin, destination, departure_at, seats_total and
        price_per_seat. Seats can be raised at any time and lowered down to
        the seats already taken; everything else is locked once anyone
        holds a seat.

        Raises:
            UnauthorizedAction: Caller does not own the ride.
            ValidationError: Nothing to change, or departure not in the future.
            StateTransitionError: The ride is no longer upcoming, or the
                edit conflicts with seats already taken.
        """
        now = now or utcnow()
        ride = self.get_ride(ride_id)
        if ride.driver_id != driver_id:
            raise UnauthorizedAction(
                "Only the driver of this ride can edit it.",
                details={'ride_id': ride_id},
            )

        fields = {k: v for k, v in changes.items() if v is not None}
        if 'price_per_seat' in fields:
            fields['price_per_seat_minor'] = to_minor(fields.pop('price_per_seat'))
        if not fields:
            raise ValidationError("Nothing to change.")
        if 'departure_at' in fields and fields['departure_at'] <= now:
            raise ValidationError("Departure time must be in the future.")

        if not self.db.update_ride(ride_id, driver_id, fields, now):
            current = self.get_ride(ride_id)
            details = {'ride_id': ride_id, 'seats_taken': current.seats_taken}
            if current.status != RideStatus.UPCOMING or current.departure_at <= now:
                raise StateTransitionError(
                    f"This ride is {current.status.value} and can no longer be edited.",
                    details=details,
                )
            if 'seats_total' in fields and fields['seats_total'] < current.seats_taken:
                raise StateTransitionError(
                    f"{current.seats_taken} seat(s) are already booked on this ride.",
                    code='SeatsAlreadyBooked',
                    details=details,
                )
            raise StateTransitionError(
                "Route, time and price cannot change once seats are booked.",
                code='RideHasBookings',
                details=details,
            )

        logger.info("Driver %d edited ride %d: %s", driver_id, ride_id, ', '.join(sorted(fields)))
        return self.get_ride(ride_id)

    def _cancel_for_ride(self, booking: Booking, now: datetime) -> Booking:
        claimed, operation = self._claim(booking, ACTIVE_BOOKING_STATUSES, 'ride_cancel', now)
        if claimed.status == BookingStatus.PENDING_DRIVER:
            return self._void_and_cancel(claimed, operation, now)

        cancelled = self._finish(claimed, operation, {
            'status': BookingStatus.CANCELLED.value,
            'cancelled_at': now,
            'cancellation_refund_minor': to_minor(claimed.total_paid),
        }, now, release_seats=True)
        return self.settle_refund(cancelled, now)

    # =========================================================================
    # Sweeps
    # =========================================================================

    def expire_holds(self, now: Optional[datetime] = None) -> int:
        """Void pending_driver bookings whose hold is too old or whose ride is gone."""
        now = now or utcnow()
        cutoff = now - timedelta(hours=config.HOLD_EXPIRY_HOURS)
        expired = 0
        for booking_id in self.db.get_expirable_bookings(cutoff, now):
            try:
                booking = self.get_booking(booking_id)
                claimed, operation = self._claim(
                    booking, (BookingStatus.PENDING_DRIVER,), 'expire', now,
                )
                self._void_and_cancel(claimed, operation, now)
            except MarketplaceError as e:
                logger.warning("Could not expire booking %d: %s", booking_id, e)
                continue
            expired += 1
        return expired

    def complete_departed(self, now: Optional[datetime] = None) -> int:
        """Complete departed rides and their confirmed bookings. Idempotent."""
        now = now or utcnow()
        completed = 0
        for ride_id in self.db.get_departed_ride_ids(now):
            completed += self.db.complete_ride(ride_id, now)
        return completed

    def release_stale_reservations(self, now: Optional[datetime] = None) -> int:
        return len(self.inventory.release_stale(now))

    def settle_refunds(self, now: Optional[datetime] = None) -> int:
        """Retry refunds that the processor has not issued yet."""
        settled = 0
        for booking_id in self.db.get_unsettled_refund_ids():
            try:
                booking = self.settle_refund(self.get_booking(booking_id), now)
            except RefundFailed as e:
                logger.warning("Refund for booking %d still failing: %s", booking_id, e)
                continue
            if booking.status == BookingStatus.REFUNDED:
                settled += 1
        return settled

    def run_sweeps(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        results = {
            'expired_holds': self.expire_holds(now),
            'completed_bookings': self.complete_departed(now),
            'released_reservations': self.release_stale_reservations(now),
            'settled_refunds': self.settle_refunds(now),
        }
        logger.info("Sweep finished: %s", results)
        return results
