"""
Ride Marketplace - Booking Notifications

Tells the passenger or driver about a booking state change. Sends a short
plain-text email over SMTP when it is configured and logs the message
otherwise. Delivery failures are logged and never reach the caller, so a
notification can never undo or block a booking transition.
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Tuple

from config import config
from database import Database
from models import Booking, Profile, Ride
from money import format_amount


logger = logging.getLogger(__name__)


BOOKING_REQUESTED = 'booking_requested'
BOOKING_ACCEPTED = 'booking_accepted'
BOOKING_REJECTED = 'booking_rejected'
BOOKING_CANCELLED = 'booking_cancelled'
RIDE_CANCELLED = 'ride_cancelled'

# event -> who hears about it
RECIPIENTS = {
    BOOKING_REQUESTED: 'driver',
    BOOKING_ACCEPTED: 'passenger',
    BOOKING_REJECTED: 'passenger',
    BOOKING_CANCELLED: 'driver',
    RIDE_CANCELLED: 'passenger',
}


class Notifier:
    """
    Handles booking notifications for the platform.
    Uses SMTP with TLS when configured.
    """

    def __init__(self, database: Database):
        self.db = database
        self.host = config.SMTP_HOST
        self.port = config.SMTP_PORT
        self.user = config.SMTP_USER
        self.password = config.SMTP_PASSWORD
        self.from_name = config.EMAIL_FROM_NAME
        self.from_address = config.EMAIL_FROM_ADDRESS
        self.app_name = config.APP_NAME
        self.app_url = config.APP_URL

    def _create_message(self, to_email: str, subject: str, body: str) -> MIMEMultipart:
        message = MIMEMultipart('alternative')
        message['Subject'] = subject
        message['From'] = f"{self.from_name} <{self.from_address}>"
        message['To'] = to_email
        message.attach(MIMEText(body, 'plain', 'utf-8'))
        return message

    def _send(self, to_email: str, subject: str, body: str) -> bool:
        if not config.is_email_sending_enabled():
            logger.info("Email to %s not sent (SMTP not configured): %s", to_email, subject)
            return False

        try:
            message = self._create_message(to_email, subject, body)
            with smtplib.SMTP(self.host, self.port) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.sendmail(self.from_address, to_email, message.as_string())
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error("SMTP authentication failed: %s", e)
        except smtplib.SMTPRecipientsRefused as e:
            logger.warning("Recipient %s refused: %s", to_email, e)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("SMTP error sending to %s: %s", to_email, e)
        return False

    def _compose(self, event: str, booking: Booking, ride: Ride, passenger: Profile,
                 driver: Profile) -> Tuple[str, str]:
        trip = f"{ride.origin} to {ride.destination} on {ride.departure_at:%d %b %Y at %H:%M}"
        seats = f"{booking.seats_booked} seat(s)"

        if event == BOOKING_REQUESTED:
            return (
                f"New booking request for {ride.origin} to {ride.destination}",
                f"{passenger.name} has requested {seats} on your ride from {trip}.\n"
                f"Please accept or reject the request.",
            )
        if event == BOOKING_ACCEPTED:
            return (
                "Your booking is confirmed",
                f"{driver.name} accepted your booking for {seats} from {trip}.\n"
                f"You have been charged {format_amount(booking.total_paid)} {config.CURRENCY}.",
            )
        if event == BOOKING_REJECTED:
            return (
                "Your booking request was declined",
                f"{driver.name} could not take your booking from {trip}.\n"
                f"The payment hold has been released and you have not been charged.",
            )
        if event == BOOKING_CANCELLED:
            return (
                "A booking on your ride was cancelled",
                f"The booking by {passenger.name} for {seats} from {trip} has been cancelled.\n"
                f"The seats are available again.",
            )
        if event == RIDE_CANCELLED:
            if booking.cancellation_refund_amount:
                money = (f"A refund of {format_amount(booking.cancellation_refund_amount)} "
                         f"{config.CURRENCY} has been issued.")
            else:
                money = "The payment hold has been released and you have not been charged."
            return (
                "Your ride has been cancelled",
                f"{driver.name} cancelled the ride from {trip}.\n{money}",
            )
        raise ValueError(f"Unknown notification event '{event}'")

    def notify(self, event: str, booking: Booking) -> bool:
        """
        Tell the affected party about `event` on `booking`.

        Returns:
            True if an email went out.
        """
        try:
            ride = Ride.from_row(self.db.get_ride(booking.ride_id))
            profiles = self.db.get_profiles([booking.passenger_id, ride.driver_id])
            passenger = Profile.from_row(profiles[booking.passenger_id])
            driver = Profile.from_row(profiles[ride.driver_id])

            recipient = driver if RECIPIENTS[event] == 'driver' else passenger
            subject, body = self._compose(event, booking, ride, passenger, driver)
        except Exception:
            logger.exception("Could not prepare %s notification for booking %s", event, booking.id)
            return False

        if not recipient.email:
            logger.info("%s for booking %d: %s has no email address", event, booking.id, recipient.name)
            return False

        body = (f"Hello {recipient.name},\n\n{body}\n\n"
                f"Manage your bookings at {self.app_url}\n\nBest regards,\nThe {self.app_name} Team\n")
        return self._send(recipient.email, f"{self.app_name}: {subject}", body)
