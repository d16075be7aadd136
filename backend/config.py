"""
Ride Marketplace - Configuration Module

This module loads all configuration from environment variables.
It validates that required variables are present and provides
sensible defaults for optional configuration.
"""

import os
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class ConfigurationError(Exception):
    """Raised when a required configuration value is missing."""
    pass


def get_required(key: str) -> str:
    """
    Get a required environment variable.
    Raises ConfigurationError if the variable is not set or empty.
    """
    value = os.getenv(key)
    if not value or value.strip() == '' or value.startswith('your-'):
        raise ConfigurationError(
            f"Required environment variable '{key}' is not set. "
            f"Please check your .env file."
        )
    return value.strip()


def get_optional(key: str, default: str = '') -> str:
    """
    Get an optional environment variable with a default value.
    """
    value = os.getenv(key, default)
    return value.strip() if value else default


def get_int(key: str, default: int) -> int:
    """
    Get an environment variable as an integer.
    """
    value = os.getenv(key)
    if value:
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


def get_bool(key: str, default: bool) -> bool:
    """
    Get an environment variable as a boolean ('true', '1', 'yes').
    """
    value = os.getenv(key)
    if not value:
        return default
    return value.strip().lower() in ('true', '1', 'yes')


def get_decimal(key: str, default: str) -> Decimal:
    """
    Get an environment variable as a Decimal. Money never goes through float.
    """
    value = os.getenv(key)
    if value:
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            return Decimal(default)
    return Decimal(default)


class Config:
    """
    Application configuration loaded from environment variables.
    All configuration values are accessed through this class.
    """

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------

    # Flask secret key
    SECRET_KEY: str = get_required('SECRET_KEY')

    # Application display name
    APP_NAME: str = get_optional('APP_NAME', 'ChapaRide')

    # Base URL of the application (for email links)
    APP_URL: str = get_optional('APP_URL', 'http://localhost:5000')

    # Root log level for the service
    LOG_LEVEL: str = get_optional('LOG_LEVEL', 'INFO').upper()

    # -------------------------------------------------------------------------
    # Database Settings
    # -------------------------------------------------------------------------

    # Path to SQLite database file (ignored when DATABASE_URL is set)
    DATABASE_PATH: str = get_optional('DATABASE_PATH', 'rideshare.db')

    # Seconds SQLite waits on a locked database before giving up
    DATABASE_TIMEOUT: int = get_int('DATABASE_TIMEOUT', 30)

    # -------------------------------------------------------------------------
    # Payment Processor Settings
    # -------------------------------------------------------------------------

    # 'stripe' for the live processor, 'simulated' for local runs and tests
    PAYMENT_PROVIDER: str = get_optional('PAYMENT_PROVIDER', 'simulated').lower()

    # Stripe API key (required when PAYMENT_PROVIDER is 'stripe')
    STRIPE_SECRET_KEY: str = get_optional('STRIPE_SECRET_KEY', '')

    # ISO currency code; all amounts carry two fractional digits
    CURRENCY: str = get_optional('CURRENCY', 'GBP').upper()

    # -------------------------------------------------------------------------
    # Booking Policy
    # -------------------------------------------------------------------------

    # Fixed platform split. Commission is taken at capture time.
    COMMISSION_RATE: Decimal = Decimal('0.25')

    # Confirmed bookings cancelled at least this far ahead get a partial refund
    REFUND_WINDOW_HOURS: int = 48

    # Share of total_paid returned inside the refund window
    PARTIAL_REFUND_RATE: Decimal = Decimal('0.50')

    # An uncaptured hold older than this is voided by the expiry sweep
    HOLD_EXPIRY_HOURS: int = get_int('HOLD_EXPIRY_HOURS', 144)

    # Seats reserved for a checkout that never produced a booking
    RESERVATION_TTL_MINUTES: int = get_int('RESERVATION_TTL_MINUTES', 15)

    # In-flight booking transitions older than this may be reclaimed
    OPERATION_LEASE_SECONDS: int = get_int('OPERATION_LEASE_SECONDS', 60)

    # Upper bound on seats per ride
    MAX_SEATS_PER_RIDE: int = 8

    # -------------------------------------------------------------------------
    # Background Sweeps
    # -------------------------------------------------------------------------

    # How often the request hook runs the expiry/completion sweeps
    SWEEP_INTERVAL_SECONDS: int = get_int('SWEEP_INTERVAL_SECONDS', 3600)

    # Run the sweeps from a request hook. Off by default; schedule `flask sweep` instead
    SWEEP_ON_REQUEST: bool = get_bool('SWEEP_ON_REQUEST', False)

    # -------------------------------------------------------------------------
    # Rate Limiting
    # -------------------------------------------------------------------------

    RATELIMIT_ENABLED: bool = get_bool('RATELIMIT_ENABLED', True)
    RATELIMIT_STORAGE_URI: str = get_optional('RATELIMIT_STORAGE_URI', 'memory://')
    CHECKOUT_RATE_LIMIT: str = get_optional('CHECKOUT_RATE_LIMIT', '10 per minute')

    # -------------------------------------------------------------------------
    # Email (SMTP) Configuration
    # -------------------------------------------------------------------------

    # SMTP server hostname
    SMTP_HOST: str = get_optional('SMTP_SERVER', '')
    # SMTP server port
    SMTP_PORT: int = get_int('SMTP_PORT', 587)
    # SMTP authentication username
    SMTP_USER: str = get_optional('SMTP_USERNAME', '')
    # SMTP authentication password
    SMTP_PASSWORD: str = get_optional('SMTP_PASSWORD', '')
    # Display name for outgoing emails
    EMAIL_FROM_NAME: str = get_optional('SMTP_FROM_NAME', 'ChapaRide')
    # From address for outgoing emails
    EMAIL_FROM_ADDRESS: str = get_optional('SMTP_FROM_EMAIL', '')

    @classmethod
    def is_email_sending_enabled(cls) -> bool:
        """Check if email sending is properly configured."""
        return bool(
            cls.SMTP_HOST and
            cls.SMTP_USER and
            cls.SMTP_PASSWORD and
            cls.EMAIL_FROM_ADDRESS
        )

    @classmethod
    def is_stripe_enabled(cls) -> bool:
        """Check if the Stripe processor is selected and has a key."""
        return cls.PAYMENT_PROVIDER == 'stripe' and bool(
            cls.STRIPE_SECRET_KEY and not cls.STRIPE_SECRET_KEY.startswith('your-')
        )


# Create a global config instance for easy importing
config = Config()
