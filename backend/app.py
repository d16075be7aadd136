import logging
import threading

import click
from flask import Flask, jsonify, request

from config import config
from errors import OUTCOME_NONE, MarketplaceError
from extensions import limiter
from models import utcnow
from routes_admin import admin_bp
from routes_api import api_bp
from routes_bookings import bookings_bp
from routes_rides import rides_bp
from services import build_services


logger = logging.getLogger(__name__)


# =============================================================================
# Application Factory
# =============================================================================

def configure_logging():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


def create_app(services=None):
    """Create and configure the Flask application."""
    configure_logging()
    app = Flask(__name__)

    # Configure Flask
    app.secret_key = config.SECRET_KEY
    app.config['RATELIMIT_ENABLED'] = config.RATELIMIT_ENABLED
    app.config['RATELIMIT_STORAGE_URI'] = config.RATELIMIT_STORAGE_URI
    app.config['SWEEP_ON_REQUEST'] = config.SWEEP_ON_REQUEST
    app.config['SWEEP_INTERVAL_SECONDS'] = config.SWEEP_INTERVAL_SECONDS

    app.extensions['marketplace'] = services or build_services()

    # Register blueprints
    app.register_blueprint(rides_bp)
    app.register_blueprint(bookings_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(api_bp)

    # Register error handlers (JSON responses for API)
    @app.errorhandler(MarketplaceError)
    def marketplace_error(error):
        if error.status_code >= 500 or error.outcome != OUTCOME_NONE:
            logger.error("%s %s failed: %s (%s)", request.method, request.path,
                         error.message, error.code)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({'error': 'Not found', 'code': 'NotFound', 'details': {}, 'outcome': OUTCOME_NONE}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'error': 'Method not allowed', 'code': 'MethodNotAllowed',
                        'details': {}, 'outcome': OUTCOME_NONE}), 405

    @app.errorhandler(429)
    def rate_limited(error):
        return jsonify({'error': 'Too many requests. Please slow down.', 'code': 'RateLimited',
                        'details': {}, 'outcome': OUTCOME_NONE}), 429

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({'error': 'Internal server error', 'code': 'InternalError',
                        'details': {}, 'outcome': OUTCOME_NONE}), 500

    # CORS support for API routes
    @app.after_request
    def after_request(response):
        if request.path.startswith('/api'):
            origin = request.headers.get('Origin', '')
            response.headers['Access-Control-Allow-Origin'] = origin or '*'
            response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
            response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization, Accept'
        return response

    # Single-process fallback for when nothing runs `flask sweep`: expire holds,
    # complete departed rides and retry refunds at most once per
    # SWEEP_INTERVAL_SECONDS, inside whichever request arrives
    sweep_lock = threading.Lock()

    @app.before_request
    def scheduled_sweep():
        if not app.config['SWEEP_ON_REQUEST']:
            return
        now = utcnow()
        last_sweep = getattr(app, '_last_sweep', None)
        if last_sweep and (now - last_sweep).total_seconds() < app.config['SWEEP_INTERVAL_SECONDS']:
            return
        if not sweep_lock.acquire(blocking=False):
            return
        try:
            app._last_sweep = now
            app.extensions['marketplace'].bookings.run_sweeps(now)
        except Exception:
            logger.exception("Scheduled sweep failed")
        finally:
            sweep_lock.release()

    @app.cli.command('sweep')
    def sweep_command():
        """Run the booking sweeps once and print what they did."""
        results = app.extensions['marketplace'].bookings.run_sweeps()
        for name, count in results.items():
            click.echo(f"{name}: {count}")

    # Initialize Flask-Limiter after app creation
    limiter.init_app(app)
    return app


# =============================================================================
# Run Application
# =============================================================================

if __name__ == '__main__':
    app = create_app()
    services = app.extensions['marketplace']
    logger.info("Starting %s...", config.APP_NAME)
    logger.info("Database: %s", 'PostgreSQL' if services.db.use_postgres else config.DATABASE_PATH)
    logger.info("Payment processor: %s", type(services.processor).__name__)
    logger.info("Email sending: %s", 'Enabled' if config.is_email_sending_enabled() else 'Disabled')

    # Run the development server
    app.run(
        host='0.0.0.0',
        port=5000,
        debug=True
    )
