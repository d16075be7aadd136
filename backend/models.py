"""
Ride Marketplace - Typed Records

Pydantic models for every entity the booking core touches and for the
request bodies accepted at the service boundary. Database rows are
converted here, once, so the state machine never works on raw dicts.
Enum values are part of the wire contract.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import config
from money import from_minor


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (ISO string or datetime) into an aware UTC datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _money(minor: Optional[int]) -> Optional[Decimal]:
    return None if minor is None else from_minor(minor)


# =============================================================================
# Enumerations
# =============================================================================

class Gender(str, Enum):
    MALE = 'Male'
    FEMALE = 'Female'


class TravelGrouping(str, Enum):
    SOLO = 'solo'
    COUPLE = 'couple'


class RideStatus(str, Enum):
    UPCOMING = 'upcoming'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class BookingStatus(str, Enum):
    PENDING_DRIVER = 'pending_driver'
    CONFIRMED = 'confirmed'
    CANCELLED = 'cancelled'
    COMPLETED = 'completed'
    REFUNDED = 'refunded'


class DriverAction(str, Enum):
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'


# Bookings holding seats on a ride
ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING_DRIVER, BookingStatus.CONFIRMED)

# Bookings whose money counts towards driver earnings
EARNING_BOOKING_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.COMPLETED)

TERMINAL_BOOKING_STATUSES = (
    BookingStatus.CANCELLED,
    BookingStatus.COMPLETED,
    BookingStatus.REFUNDED,
)


# =============================================================================
# Entities
# =============================================================================

class Record(BaseModel):
    model_config = ConfigDict(frozen=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')


class Profile(Record):
    id: int
    name: str
    email: Optional[str] = None
    gender: Optional[Gender] = None
    travel_grouping: TravelGrouping = TravelGrouping.SOLO
    is_approved_driver: bool = False
    is_admin: bool = False
    average_rating: Optional[float] = None
    total_reviews: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Profile':
        return cls(
            id=row['id'],
            name=row['name'],
            email=row.get('email'),
            gender=row.get('gender'),
            travel_grouping=row['travel_grouping'],
            is_approved_driver=bool(row.get('is_approved_driver')),
            is_admin=bool(row.get('is_admin')),
            average_rating=row.get('average_rating'),
            total_reviews=row.get('total_reviews') or 0,
            created_at=as_utc(row.get('created_at')),
        )


class Ride(Record):
    id: int
    driver_id: int
    origin: str
    destination: str
    departure_at: datetime
    seats_total: int
    seats_taken: int = 0
    price_per_seat: Decimal
    status: RideStatus = RideStatus.UPCOMING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def seats_available(self) -> int:
        return max(0, self.seats_total - self.seats_taken)

    def to_json(self) -> Dict[str, Any]:
        data = super().to_json()
        data['seats_available'] = self.seats_available
        return data

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Ride':
        return cls(
            id=row['id'],
            driver_id=row['driver_id'],
            origin=row['origin'],
            destination=row['destination'],
            departure_at=as_utc(row['departure_at']),
            seats_total=row['seats_total'],
            seats_taken=row.get('seats_taken') or 0,
            price_per_seat=from_minor(row['price_per_seat_minor']),
            status=row['status'],
            created_at=as_utc(row.get('created_at')),
            updated_at=as_utc(row.get('updated_at')),
        )


class Booking(Record):
    id: int
    ride_id: int
    passenger_id: int
    seats_booked: int = Field(ge=1)
    total_paid: Decimal
    commission_amount: Optional[Decimal] = None
    driver_payout_amount: Optional[Decimal] = None
    authorization_ref: str
    capture_ref: Optional[str] = None
    refund_ref: Optional[str] = None
    reservation_id: Optional[int] = None
    status: BookingStatus
    driver_action: Optional[DriverAction] = None
    driver_action_at: Optional[datetime] = None
    cancellation_refund_amount: Optional[Decimal] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BOOKING_STATUSES

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Booking':
        return cls(
            id=row['id'],
            ride_id=row['ride_id'],
            passenger_id=row['passenger_id'],
            seats_booked=row['seats_booked'],
            total_paid=from_minor(row['total_paid_minor']),
            commission_amount=_money(row.get('commission_minor')),
            driver_payout_amount=_money(row.get('driver_payout_minor')),
            authorization_ref=row['authorization_ref'],
            capture_ref=row.get('capture_ref'),
            refund_ref=row.get('refund_ref'),
            reservation_id=row.get('reservation_id'),
            status=row['status'],
            driver_action=row.get('driver_action'),
            driver_action_at=as_utc(row.get('driver_action_at')),
            cancellation_refund_amount=_money(row.get('cancellation_refund_minor')),
            cancelled_at=as_utc(row.get('cancelled_at')),
            completed_at=as_utc(row.get('completed_at')),
            created_at=as_utc(row.get('created_at')),
            version=row.get('version') or 0,
        )


class Payout(Record):
    id: int
    driver_id: int
    amount: Decimal
    note: Optional[str] = None
    recorded_by: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Payout':
        return cls(
            id=row['id'],
            driver_id=row['driver_id'],
            amount=from_minor(row['amount_minor']),
            note=row.get('note'),
            recorded_by=row['recorded_by'],
            created_at=as_utc(row.get('created_at')),
        )


class ReservationHandle(Record):
    """Seats held on a ride between the inventory check and booking creation."""
    id: int
    ride_id: int
    seats: int
    created_at: Optional[datetime] = None


class DriverBalance(Record):
    driver_id: int
    driver_name: Optional[str] = None
    total_earned: Decimal
    total_paid_out: Decimal
    balance_owed: Decimal


class RefundQuote(Record):
    """What the refund calculator decided, and why."""
    text: str
    amount: Decimal


# =============================================================================
# Request Bodies
# =============================================================================

class Request(BaseModel):
    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)


class CheckoutRequest(Request):
    ride_id: int
    passenger_id: int
    seat_count: int = Field(ge=1, le=config.MAX_SEATS_PER_RIDE)
    payment_source: str = Field(min_length=1)


class DriverDecisionRequest(Request):
    driver_id: int
    decision: Literal['accept', 'reject']


class PassengerCancelRequest(Request):
    passenger_id: int


class RecordPayoutRequest(Request):
    driver_id: int
    admin_id: int
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    note: Optional[str] = Field(default=None, max_length=500)


class CreateRideRequest(Request):
    driver_id: int
    origin: str = Field(min_length=1, max_length=200)
    destination: str = Field(min_length=1, max_length=200)
    departure_at: datetime
    seats_total: int = Field(ge=1, le=config.MAX_SEATS_PER_RIDE)
    price_per_seat: Decimal = Field(gt=0, max_digits=10, decimal_places=2)

    @field_validator('departure_at')
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return as_utc(value)


class UpdateRideRequest(Request):
    """Fields left out stay as they are."""
    driver_id: int
    origin: Optional[str] = Field(default=None, min_length=1, max_length=200)
    destination: Optional[str] = Field(default=None, min_length=1, max_length=200)
    departure_at: Optional[datetime] = None
    seats_total: Optional[int] = Field(default=None, ge=1, le=config.MAX_SEATS_PER_RIDE)
    price_per_seat: Optional[Decimal] = Field(default=None, gt=0, max_digits=10, decimal_places=2)

    @field_validator('departure_at')
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class CancelRideRequest(Request):
    driver_id: int


class CreateProfileRequest(Request):
    name: str = Field(min_length=1, max_length=120)
    email: Optional[str] = Field(default=None, max_length=254)
    gender: Optional[Gender] = None
    travel_grouping: TravelGrouping = TravelGrouping.SOLO


class RideFilters(Request):
    """
    Search and filter preferences for ride listing.

    An explicit, serialisable value passed into the listing query; nothing
    about a passenger's filter choices is kept as ambient state.
    """
    passenger_id: Optional[int] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    min_seats: int = Field(default=1, ge=1)
    include_incompatible: bool = False
