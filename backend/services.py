"""
Wires the marketplace components together.

The app is built around one Services container so that tests (and the
`flask sweep` command) can run against their own database and payment
processor.
"""

from typing import Optional

from booking_service import BookingService
from database import Database, db
from inventory import SeatInventory
from notifications import Notifier
from payments import PaymentGateway, build_processor
from settlement import SettlementService


class Services:

    def __init__(self, database: Database, processor, notifier=None):
        self.db = database
        self.processor = processor
        self.inventory = SeatInventory(database)
        self.payments = PaymentGateway(database, processor)
        self.notifier = notifier or Notifier(database)
        self.settlement = SettlementService(database)
        self.bookings = BookingService(
            database,
            self.inventory,
            self.payments,
            self.notifier,
            settlement=self.settlement,
        )


def build_services(
    database: Optional[Database] = None,
    processor=None,
    notifier=None,
) -> Services:
    """Build the container from configuration, overriding any part given."""
    return Services(
        database or db,
        processor or build_processor(),
        notifier=notifier,
    )
