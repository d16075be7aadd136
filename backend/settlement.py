"""
Ride Marketplace - Settlement Reconciliation

Works out what each driver has earned from captured bookings, what the
platform has paid them according to the payout ledger, and what is still
owed. Reads only; the one write here is appending a payout, which drops
any cached balances.
"""

import logging
import threading
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from database import Database
from errors import NotFound, ValidationError
from models import (
    EARNING_BOOKING_STATUSES,
    Booking,
    DriverBalance,
    Payout,
    Profile,
    Ride,
    utcnow,
)
from money import format_amount, quantize, to_minor


logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')


def earned_from(booking: Booking) -> Decimal:
    """Driver's share of a booking, or zero if nothing was captured."""
    if booking.status not in EARNING_BOOKING_STATUSES or booking.commission_amount is None:
        return ZERO
    return booking.total_paid - booking.commission_amount


def reconcile(
    driver_id: int,
    bookings: Iterable[Booking],
    payouts: Iterable[Payout],
    driver_name: Optional[str] = None,
) -> DriverBalance:
    """
    Balance for one driver from their ride bookings and payout entries.

    Only confirmed and completed bookings count as earned. The balance owed
    never goes below zero, even if the ledger shows an overpayment.
    """
    total_earned = quantize(sum((earned_from(b) for b in bookings), ZERO))
    total_paid_out = quantize(sum((p.amount for p in payouts), ZERO))
    return DriverBalance(
        driver_id=driver_id,
        driver_name=driver_name,
        total_earned=total_earned,
        total_paid_out=total_paid_out,
        balance_owed=max(ZERO, total_earned - total_paid_out),
    )


class SettlementService:

    def __init__(self, database: Database):
        self.db = database
        self._cache: Dict[int, DriverBalance] = {}
        self._generation = 0
        self._lock = threading.Lock()

    def invalidate(self, driver_id: Optional[int] = None) -> None:
        """Forget cached balances for one driver, or for everyone."""
        with self._lock:
            self._generation += 1
            if driver_id is None:
                self._cache.clear()
            else:
                self._cache.pop(driver_id, None)

    def _compute(self, driver_id: int, driver_name: Optional[str]) -> DriverBalance:
        bookings = [
            Booking.from_row(row)
            for row in self.db.get_bookings_for_driver(
                driver_id, [s.value for s in EARNING_BOOKING_STATUSES]
            )
        ]
        payouts = [Payout.from_row(row) for row in self.db.get_payouts(driver_id)]
        return reconcile(driver_id, bookings, payouts, driver_name)

    def driver_balance(self, driver_id: int) -> DriverBalance:
        with self._lock:
            cached = self._cache.get(driver_id)
            generation = self._generation
        if cached is not None:
            return cached

        profile = self.db.get_profile(driver_id)
        if not profile:
            raise NotFound(f"Driver {driver_id} not found.", details={'driver_id': driver_id})

        balance = self._compute(driver_id, profile['name'])
        with self._lock:
            # A write that landed during _compute makes this balance stale
            if self._generation == generation:
                self._cache[driver_id] = balance
        return balance

    def all_driver_balances(self) -> List[DriverBalance]:
        """Every driver who has posted a ride or received a payout, largest balance first."""
        driver_ids = {row['driver_id'] for row in self.db.get_all_rides()}
        driver_ids.update(row['driver_id'] for row in self.db.get_payouts())
        balances = [self.driver_balance(driver_id) for driver_id in driver_ids]
        return sorted(balances, key=lambda b: (-b.balance_owed, b.driver_id))

    def record_payout(
        self,
        driver_id: int,
        amount: Decimal,
        note: Optional[str],
        admin_id: int,
    ) -> Payout:
        """
        Append a manual payout to the ledger.

        The caller must already have checked that `admin_id` is an admin.
        """
        amount = quantize(amount)
        if amount <= 0:
            raise ValidationError("Payout amount must be positive.")
        profile = self.db.get_profile(driver_id)
        if not profile:
            raise NotFound(f"Driver {driver_id} not found.", details={'driver_id': driver_id})
        # Former drivers may still be owed for rides they posted
        if not profile.get('is_approved_driver') and not self.db.get_rides_by_driver(driver_id):
            raise ValidationError(
                f"Profile {driver_id} is not a driver.",
                details={'driver_id': driver_id},
            )

        payout_id = self.db.create_payout(driver_id, to_minor(amount), note, admin_id, utcnow())
        self.invalidate(driver_id)
        logger.info("Admin %d recorded payout %d of %s to driver %d",
                    admin_id, payout_id, format_amount(amount), driver_id)

        payouts = self.db.get_payouts(driver_id)
        return next(Payout.from_row(row) for row in payouts if row['id'] == payout_id)

    def list_payouts(self, driver_id: Optional[int] = None) -> List[Payout]:
        return [Payout.from_row(row) for row in self.db.get_payouts(driver_id)]

    def rides_overview(self) -> Dict[str, Any]:
        """
        Every ride with its bookings and money totals, plus platform totals.

        Revenue, commission and driver payout count confirmed and completed
        bookings only; `passenger_count` is the seats they hold.
        """
        ride_rows = self.db.get_all_rides()
        bookings_by_ride: Dict[int, List[Booking]] = defaultdict(list)
        for row in self.db.get_bookings_by_rides(r['id'] for r in ride_rows):
            booking = Booking.from_row(row)
            bookings_by_ride[booking.ride_id].append(booking)

        passenger_ids = {b.passenger_id for group in bookings_by_ride.values() for b in group}
        passengers = {
            pid: Profile.from_row(row)
            for pid, row in self.db.get_profiles(passenger_ids).items()
        }

        rides = []
        totals = {'total_revenue': ZERO, 'total_commission': ZERO, 'total_driver_payout': ZERO}
        for row in ride_rows:
            ride = Ride.from_row(row)
            bookings = bookings_by_ride.get(ride.id, [])
            earning = [
                b for b in bookings
                if b.status in EARNING_BOOKING_STATUSES and b.commission_amount is not None
            ]
            revenue = sum((b.total_paid for b in earning), ZERO)
            commission = sum((b.commission_amount for b in earning), ZERO)
            entry = {
                'ride': ride.to_json(),
                'driver_name': row.get('driver_name'),
                'bookings': [
                    dict(
                        b.to_json(),
                        passenger_name=passengers[b.passenger_id].name
                        if b.passenger_id in passengers else None,
                    )
                    for b in bookings
                ],
                'total_revenue': format_amount(revenue),
                'total_commission': format_amount(commission),
                'total_driver_payout': format_amount(revenue - commission),
                'passenger_count': sum(b.seats_booked for b in earning),
            }
            rides.append(entry)
            totals['total_revenue'] += revenue
            totals['total_commission'] += commission
            totals['total_driver_payout'] += revenue - commission

        return {
            'rides': rides,
            'totals': {k: format_amount(v) for k, v in totals.items()},
        }
