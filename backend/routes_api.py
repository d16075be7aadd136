"""
Ride Marketplace - API Routes

Marketplace profiles (the gender and travel grouping eligibility needs),
health check and public platform statistics.
"""

import logging

from flask import Blueprint, jsonify

from auth import require_profile
from errors import ValidationError
from extensions import get_services, parse_body
from models import CreateProfileRequest, utcnow


logger = logging.getLogger(__name__)

# Create blueprint
api_bp = Blueprint('api', __name__, url_prefix='/api')


# =============================================================================
# Public Stats
# =============================================================================

@api_bp.route('/health')
def health():
    services = get_services()
    return jsonify({
        'status': 'ok',
        'database': 'postgresql' if services.db.use_postgres else 'sqlite',
        'payment_processor': type(services.processor).__name__,
    })


@api_bp.route('/stats')
def get_stats():
    """Get public platform statistics."""
    stats = get_services().db.get_platform_statistics()
    return jsonify({
        'total_profiles': stats.get('total_profiles', 0),
        'approved_drivers': stats.get('approved_drivers', 0),
        'total_rides': stats.get('total_rides', 0),
        'upcoming_rides': stats.get('upcoming_rides', 0),
        'total_bookings': stats.get('total_bookings', 0),
        'bookings_by_status': stats.get('bookings_by_status', {}),
    })


# =============================================================================
# Profiles
# =============================================================================

@api_bp.route('/profiles', methods=['POST'])
def create_profile():
    """Create the marketplace profile for an externally authenticated user."""
    services = get_services()
    body = parse_body(CreateProfileRequest)
    email = body.email.lower() if body.email else None

    if email and services.db.get_profile_by_email(email):
        raise ValidationError("A profile with this email already exists.")

    profile_id = services.db.create_profile(
        name=body.name,
        created_at=utcnow(),
        email=email,
        gender=body.gender.value if body.gender else None,
        travel_grouping=body.travel_grouping.value,
    )

    logger.info("Created profile %d", profile_id)
    profile = require_profile(services.db, profile_id)
    return jsonify({'success': True, 'profile': profile.to_json()}), 201


@api_bp.route('/profiles/<int:profile_id>')
def get_profile(profile_id):
    profile = require_profile(get_services().db, profile_id)
    return jsonify({'profile': profile.to_json()})
