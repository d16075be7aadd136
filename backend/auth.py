"""
Ride Marketplace - Authorization Module

Identity is established upstream; requests carry the acting profile's id
(passenger_id, driver_id, admin_id). This module checks that the acting
profile exists and holds the role the action needs, and provides route
decorators built on those checks.
"""

from functools import wraps

from flask import g, request

from database import Database
from errors import NotFound, UnauthorizedAction, ValidationError
from extensions import get_services
from models import Booking, Profile, Ride


def require_profile(database: Database, profile_id: int, role: str = 'Profile') -> Profile:
    """
    Load the acting profile.

    Raises:
        NotFound: No profile with this ID.
    """
    row = database.get_profile(profile_id)
    if not row:
        raise NotFound(f"{role} {profile_id} not found.", details={'profile_id': profile_id})
    return Profile.from_row(row)


def require_admin(database: Database, admin_id: int) -> Profile:
    """
    Raises:
        UnauthorizedAction: The profile is not an admin.
    """
    row = database.get_profile(admin_id)
    if not row or not row.get('is_admin'):
        raise UnauthorizedAction("Admin access required.", details={'admin_id': admin_id})
    return Profile.from_row(row)


def require_approved_driver(database: Database, driver_id: int) -> Profile:
    driver = require_profile(database, driver_id, 'Driver')
    if not driver.is_approved_driver:
        raise UnauthorizedAction(
            "Only approved drivers can post rides.",
            details={'driver_id': driver_id},
        )
    return driver


def require_booking_party(database: Database, booking: Booking, ride: Ride, actor_id: int) -> None:
    """The booking's passenger, the ride's driver, or an admin."""
    if actor_id in (booking.passenger_id, ride.driver_id):
        return
    row = database.get_profile(actor_id)
    if not row or not row.get('is_admin'):
        raise UnauthorizedAction(
            "You do not have access to this booking.",
            details={'booking_id': booking.id},
        )


def _admin_id_from_request() -> int:
    value = request.args.get('admin_id')
    if value is None:
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            value = body.get('admin_id')
    if value is None or str(value).strip() == '':
        raise ValidationError("admin_id is required.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("admin_id must be an integer.")


def admin_required(f):
    """Decorator to require an admin acting profile; sets g.admin."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.admin = require_admin(get_services().db, _admin_id_from_request())
        return f(*args, **kwargs)
    return decorated_function
