"""
Ride Marketplace - Seat Inventory

Seats are taken from a ride at checkout, before the payment hold is
placed, and recorded as a reservation. The reservation is committed when
the booking row is written, or released when checkout fails, when the
booking leaves the active states, or when the stale-reservation sweep
finds it abandoned.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from config import config
from database import Database
from errors import InventoryExhausted, NotFound, StateTransitionError
from models import ReservationHandle, Ride, RideStatus, utcnow


logger = logging.getLogger(__name__)


class SeatInventory:

    def __init__(self, database: Database):
        self.db = database

    def _ride(self, ride_id: int) -> Ride:
        row = self.db.get_ride(ride_id)
        if not row:
            raise NotFound(f"Ride {ride_id} not found.", details={'ride_id': ride_id})
        return Ride.from_row(row)

    def reserve_seats(
        self,
        ride_id: int,
        seat_count: int,
        now: Optional[datetime] = None,
    ) -> ReservationHandle:
        """
        Take `seat_count` seats from a ride, or fail without changing anything.

        Raises:
            NotFound: The ride does not exist.
            StateTransitionError: The ride is not open for booking.
            InventoryExhausted: Not enough seats left; carries the
                availability observed after the failed attempt.
        """
        now = now or utcnow()
        reservation_id = self.db.reserve_seats(ride_id, seat_count, now)
        if reservation_id is not None:
            logger.debug("Reserved %d seat(s) on ride %d (reservation %d)",
                         seat_count, ride_id, reservation_id)
            return ReservationHandle(
                id=reservation_id, ride_id=ride_id, seats=seat_count, created_at=now,
            )

        # Work out which guard in the UPDATE refused us
        ride = self._ride(ride_id)
        if ride.status != RideStatus.UPCOMING:
            raise StateTransitionError(
                f"This ride is {ride.status.value} and can no longer be booked.",
                details={'ride_id': ride_id, 'status': ride.status.value},
            )
        if ride.departure_at <= now:
            raise StateTransitionError(
                "This ride has already departed.",
                details={'ride_id': ride_id},
            )

        logger.info("Ride %d has %d seat(s) left, %d requested",
                    ride_id, ride.seats_available, seat_count)
        raise InventoryExhausted(ride_id, seat_count, ride.seats_available)

    def release(self, reservation_id: int, now: Optional[datetime] = None) -> bool:
        """Return a reservation's seats. Releasing twice is a no-op."""
        released = self.db.release_reservation(reservation_id, now or utcnow())
        if released:
            logger.debug("Released reservation %d", reservation_id)
        return released

    def seats_available(self, ride_id: int) -> int:
        return self._ride(ride_id).seats_available

    def release_stale(self, now: Optional[datetime] = None) -> List[int]:
        """Release reservations that never turned into a booking."""
        now = now or utcnow()
        cutoff = now - timedelta(minutes=config.RESERVATION_TTL_MINUTES)
        released = [
            reservation_id
            for reservation_id in self.db.get_stale_reservation_ids(cutoff)
            if self.release(reservation_id, now)
        ]
        if released:
            logger.warning("Released %d abandoned seat reservation(s)", len(released))
        return released
