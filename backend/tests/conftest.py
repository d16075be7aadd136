import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path


_BACKEND = Path(__file__).resolve().parents[1]
if str(_BACKEND) not in sys.path:
    sys.path.insert(0, str(_BACKEND))

# Config is read at import time, so the environment must be set first
_TMP = tempfile.mkdtemp(prefix="marketplace-tests-")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["DATABASE_PATH"] = os.path.join(_TMP, "default.db")
os.environ.pop("DATABASE_URL", None)
os.environ["PAYMENT_PROVIDER"] = "simulated"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["SWEEP_ON_REQUEST"] = "false"
os.environ["SMTP_SERVER"] = ""

import pytest  # noqa: E402

from app import create_app  # noqa: E402
from database import Database  # noqa: E402
from models import utcnow  # noqa: E402
from money import to_minor  # noqa: E402
from payments import SimulatedProcessor  # noqa: E402
from services import build_services  # noqa: E402


class RecordingNotifier:
    """Collects (event, booking_id) pairs instead of sending email."""

    def __init__(self):
        self.events = []

    def notify(self, event, booking):
        self.events.append((event, booking.id))
        return True


@pytest.fixture
def database(tmp_path):
    return Database(db_path=str(tmp_path / "marketplace.db"))


@pytest.fixture
def processor():
    return SimulatedProcessor()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(database, processor, notifier):
    return build_services(database=database, processor=processor, notifier=notifier)


@pytest.fixture
def bookings(services):
    return services.bookings


@pytest.fixture
def app(services):
    app = create_app(services)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_profile(database):
    def _make(name="Sam", gender="Male", travel_grouping="solo", driver=False, admin=False, email=None):
        return database.create_profile(
            name=name,
            created_at=utcnow(),
            email=email,
            gender=gender,
            travel_grouping=travel_grouping,
            is_approved_driver=driver,
            is_admin=admin,
        )
    return _make


@pytest.fixture
def make_ride(database):
    def _make(driver_id, seats_total=3, price="20.00", departs_in=timedelta(hours=72),
              origin="Leeds", destination="Manchester"):
        now = utcnow()
        return database.create_ride(
            driver_id, origin, destination, now + departs_in,
            seats_total, to_minor(price), now,
        )
    return _make


@pytest.fixture
def driver(make_profile):
    return make_profile(name="Dana", gender="Female", driver=True, email="dana@example.com")


@pytest.fixture
def passenger(make_profile):
    return make_profile(name="Priya", gender="Female", email="priya@example.com")


@pytest.fixture
def admin(make_profile):
    return make_profile(name="Ada", gender="Female", admin=True)
