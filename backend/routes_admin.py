"""
Ride Marketplace - Admin Routes

Reconciliation views, the payout ledger and driver approval. Every route
requires the acting admin_id (query string or JSON body) to belong to an
admin profile.
"""

import logging

from flask import Blueprint, g, jsonify

from auth import admin_required, require_profile
from extensions import get_services, int_arg, parse_body
from models import RecordPayoutRequest


logger = logging.getLogger(__name__)

# Create blueprint
admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


# =============================================================================
# Settlement
# =============================================================================

@admin_bp.route('/payouts', methods=['POST'])
@admin_required
def record_payout():
    """Append a manual payout to the ledger."""
    body = parse_body(RecordPayoutRequest)
    settlement = get_services().settlement
    payout = settlement.record_payout(body.driver_id, body.amount, body.note, g.admin.id)
    return jsonify({
        'success': True,
        'payout': payout.to_json(),
        'balance': settlement.driver_balance(body.driver_id).to_json(),
    }), 201


@admin_bp.route('/payouts')
@admin_required
def list_payouts():
    driver_id = int_arg('driver_id', required=False)
    payouts = get_services().settlement.list_payouts(driver_id)
    return jsonify({'payouts': [p.to_json() for p in payouts]})


@admin_bp.route('/rides-overview')
@admin_required
def rides_overview():
    """Every ride with its bookings, revenue and commission."""
    return jsonify(get_services().settlement.rides_overview())


@admin_bp.route('/driver-balances')
@admin_required
def driver_balances():
    """Earned, paid out and owed for every driver, largest balance first."""
    balances = get_services().settlement.all_driver_balances()
    return jsonify({'balances': [b.to_json() for b in balances]})


# =============================================================================
# Driver Approval
# =============================================================================

def _set_driver_approval(driver_id: int, approved: bool):
    services = get_services()
    require_profile(services.db, driver_id, 'Driver')
    services.db.update_profile_flags(driver_id, is_approved_driver=approved)
    logger.info("Admin %d %s driver %d",
                g.admin.id, 'approved' if approved else 'rejected', driver_id)
    driver = require_profile(services.db, driver_id, 'Driver')
    return jsonify({'success': True, 'profile': driver.to_json()})


@admin_bp.route('/drivers/<int:driver_id>/approve', methods=['POST'])
@admin_required
def approve_driver(driver_id):
    return _set_driver_approval(driver_id, True)


@admin_bp.route('/drivers/<int:driver_id>/reject', methods=['POST'])
@admin_required
def reject_driver(driver_id):
    return _set_driver_approval(driver_id, False)
