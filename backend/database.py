"""
Ride Marketplace - Database Module

This module handles all database operations using SQLite3 or PostgreSQL.
The database is self-initializing - it creates all tables, indexes,
and constraints on first run if they don't exist.

Seat counts and booking transitions are changed only through conditional
UPDATE statements, so the availability check and the write happen in one
statement and concurrent requests cannot oversell a ride or apply two
transitions to the same booking.
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from config import config

try:
    import psycopg2
    import psycopg2.extras
    HAS_POSTGRES = True
except ImportError:
    HAS_POSTGRES = False


logger = logging.getLogger(__name__)


# Schema in SQLite dialect; _ddl() rewrites it for PostgreSQL.
SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT UNIQUE,
        gender TEXT CHECK (gender IN ('Male', 'Female')),
        travel_grouping TEXT NOT NULL DEFAULT 'solo' CHECK (travel_grouping IN ('solo', 'couple')),
        is_approved_driver INTEGER NOT NULL DEFAULT 0,
        is_admin INTEGER NOT NULL DEFAULT 0,
        average_rating REAL,
        total_reviews INTEGER NOT NULL DEFAULT 0,
        created_at DATETIME NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rides (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        driver_id INTEGER NOT NULL,
        origin TEXT NOT NULL,
        destination TEXT NOT NULL,
        departure_at DATETIME NOT NULL,
        seats_total INTEGER NOT NULL CHECK (seats_total >= 1),
        seats_taken INTEGER NOT NULL DEFAULT 0,
        price_per_seat_minor INTEGER NOT NULL CHECK (price_per_seat_minor > 0),
        status TEXT NOT NULL DEFAULT 'upcoming' CHECK (status IN ('upcoming', 'completed', 'cancelled')),
        created_at DATETIME NOT NULL,
        updated_at DATETIME,
        CHECK (seats_taken >= 0 AND seats_taken <= seats_total),
        FOREIGN KEY (driver_id) REFERENCES profiles(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS seat_reservations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ride_id INTEGER NOT NULL,
        seats INTEGER NOT NULL CHECK (seats >= 1),
        status TEXT NOT NULL DEFAULT 'held' CHECK (status IN ('held', 'committed', 'released')),
        booking_id INTEGER,
        created_at DATETIME NOT NULL,
        released_at DATETIME,
        FOREIGN KEY (ride_id) REFERENCES rides(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bookings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ride_id INTEGER NOT NULL,
        passenger_id INTEGER NOT NULL,
        reservation_id INTEGER,
        seats_booked INTEGER NOT NULL CHECK (seats_booked >= 1),
        total_paid_minor INTEGER NOT NULL,
        commission_minor INTEGER,
        driver_payout_minor INTEGER,
        authorization_ref TEXT NOT NULL UNIQUE,
        capture_ref TEXT,
        refund_ref TEXT,
        status TEXT NOT NULL CHECK (status IN ('pending_driver', 'confirmed', 'cancelled', 'completed', 'refunded')),
        driver_action TEXT CHECK (driver_action IN ('accepted', 'rejected')),
        driver_action_at DATETIME,
        cancellation_refund_minor INTEGER,
        cancelled_at DATETIME,
        completed_at DATETIME,
        created_at DATETIME NOT NULL,
        updated_at DATETIME,
        version INTEGER NOT NULL DEFAULT 0,
        operation TEXT,
        operation_started_at DATETIME,
        CHECK (commission_minor IS NULL OR commission_minor + driver_payout_minor = total_paid_minor),
        FOREIGN KEY (ride_id) REFERENCES rides(id),
        FOREIGN KEY (passenger_id) REFERENCES profiles(id),
        FOREIGN KEY (reservation_id) REFERENCES seat_reservations(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_authorizations (
        reference TEXT PRIMARY KEY,
        amount_minor INTEGER NOT NULL,
        currency TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('authorized', 'captured', 'voided', 'refunded')),
        capture_ref TEXT,
        refund_ref TEXT,
        refund_minor INTEGER,
        created_at DATETIME NOT NULL,
        updated_at DATETIME
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payouts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        driver_id INTEGER NOT NULL,
        amount_minor INTEGER NOT NULL CHECK (amount_minor > 0),
        note TEXT,
        recorded_by INTEGER NOT NULL,
        created_at DATETIME NOT NULL,
        FOREIGN KEY (driver_id) REFERENCES profiles(id),
        FOREIGN KEY (recorded_by) REFERENCES profiles(id)
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_rides_driver ON rides(driver_id)",
    "CREATE INDEX IF NOT EXISTS idx_rides_status_departure ON rides(status, departure_at)",
    "CREATE INDEX IF NOT EXISTS idx_bookings_ride_status ON bookings(ride_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_bookings_passenger ON bookings(passenger_id)",
    "CREATE INDEX IF NOT EXISTS idx_reservations_status ON seat_reservations(status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_payouts_driver ON payouts(driver_id)",
]

# Columns a booking transition may write
BOOKING_TRANSITION_FIELDS = {
    'status', 'driver_action', 'driver_action_at', 'commission_minor',
    'driver_payout_minor', 'capture_ref', 'refund_ref',
    'cancellation_refund_minor', 'cancelled_at', 'completed_at',
}

# Ride columns a driver may edit
RIDE_EDIT_FIELDS = {
    'origin', 'destination', 'departure_at', 'seats_total', 'price_per_seat_minor',
}


class Database:
    """
    Database handler for the ride marketplace.

    All methods use parameterized queries to prevent SQL injection.
    The database is automatically initialized on first use.
    Supports both SQLite (local) and PostgreSQL (production).
    """

    def __init__(self, db_path: Optional[str] = None, database_url: Optional[str] = None):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file.
                     Defaults to config.DATABASE_PATH.
            database_url: PostgreSQL connection string. Defaults to the
                     DATABASE_URL environment variable.
        """
        database_url = database_url or os.environ.get('DATABASE_URL')

        if database_url and HAS_POSTGRES:
            self.use_postgres = True
            self.db_url = database_url
            # Render/Heroku use postgres:// but psycopg2 needs postgresql://
            if self.db_url.startswith('postgres://'):
                self.db_url = self.db_url.replace('postgres://', 'postgresql://', 1)
            self.db_path = None
        else:
            self.use_postgres = False
            self.db_path = db_path or config.DATABASE_PATH
            self.db_url = None

        self._init_database()

    @contextmanager
    def get_connection(self, immediate: bool = False):
        """
        Context manager for database connections.
        Commits on success, rolls back on any exception, always closes.

        Args:
            immediate: Take the SQLite write lock up front (BEGIN IMMEDIATE)
                so read-then-write sequences inside the block are serialized.
                PostgreSQL relies on row locks taken by the UPDATEs themselves.
        """
        if self.use_postgres:
            conn = psycopg2.connect(self.db_url)
            conn.set_session(autocommit=False)
        else:
            conn = sqlite3.connect(
                self.db_path,
                timeout=config.DATABASE_TIMEOUT,
                isolation_level=None if immediate else '',
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _get_cursor(self, conn):
        """Get a cursor with proper row factory for both databases."""
        if self.use_postgres:
            return conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        return conn.cursor()

    def _placeholder(self) -> str:
        """Get the correct placeholder for parameterized queries."""
        return '%s' if self.use_postgres else '?'

    def _placeholders(self, count: int) -> str:
        return ', '.join([self._placeholder()] * count)

    def _ts(self, value: Optional[datetime]):
        """Timestamps go to PostgreSQL as datetimes and to SQLite as ISO strings."""
        if value is None or self.use_postgres:
            return value
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        else:
            value = value.replace(tzinfo=timezone.utc)
        # Fixed width so stored timestamps compare correctly as text
        return value.isoformat(timespec='microseconds')

    def _ddl(self, statement: str) -> str:
        if not self.use_postgres:
            return statement
        return (
            statement
            .replace('INTEGER PRIMARY KEY AUTOINCREMENT', 'SERIAL PRIMARY KEY')
            .replace('DATETIME', 'TIMESTAMPTZ')
        )

    def _insert(self, cursor, sql: str, params: Sequence[Any]) -> int:
        """Run an INSERT and return the new row id."""
        if self.use_postgres:
            cursor.execute(sql + " RETURNING id", tuple(params))
            return cursor.fetchone()['id']
        cursor.execute(sql, tuple(params))
        return cursor.lastrowid

    @staticmethod
    def _row(row) -> Optional[Dict[str, Any]]:
        return dict(row) if row else None

    @staticmethod
    def _rows(rows: Iterable) -> List[Dict[str, Any]]:
        return [dict(row) for row in rows]

    def _scalar(self, cursor, key: str = 'value') -> Any:
        row = cursor.fetchone()
        if row is None:
            return None
        return row[key] if self.use_postgres else row[0]

    def _init_database(self):
        """
        Initialize the database schema if it doesn't exist.
        Creates all tables, constraints, and indexes.
        """
        if not self.use_postgres and self.db_path != ':memory:':
            # WAL lets readers proceed while a checkout holds the write lock
            conn = sqlite3.connect(self.db_path, timeout=config.DATABASE_TIMEOUT)
            try:
                conn.execute("PRAGMA journal_mode=WAL")
            finally:
                conn.close()

        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            for statement in SCHEMA:
                cursor.execute(self._ddl(statement))
            for statement in INDEXES:
                cursor.execute(statement)

    # =========================================================================
    # Profile Operations
    # =========================================================================

    def create_profile(
        self,
        name: str,
        created_at: datetime,
        email: Optional[str] = None,
        gender: Optional[str] = None,
        travel_grouping: str = 'solo',
        is_approved_driver: bool = False,
        is_admin: bool = False,
    ) -> int:
        """
        Create a marketplace profile.

        Returns:
            The ID of the newly created profile.
        """
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            return self._insert(cursor, f"""
                INSERT INTO profiles (
                    name, email, gender, travel_grouping,
                    is_approved_driver, is_admin, created_at
                ) VALUES ({p}, {p}, {p}, {p}, {p}, {p}, {p})
            """, (
                name, email, gender, travel_grouping,
                1 if is_approved_driver else 0,
                1 if is_admin else 0,
                self._ts(created_at),
            ))

    def get_profile(self, profile_id: int) -> Optional[Dict[str, Any]]:
        """Get a profile by its ID."""
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"SELECT * FROM profiles WHERE id = {p}", (profile_id,))
            return self._row(cursor.fetchone())

    def get_profile_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"SELECT * FROM profiles WHERE LOWER(email) = LOWER({p})", (email,))
            return self._row(cursor.fetchone())

    def get_profiles(self, profile_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        """Get several profiles at once, keyed by ID."""
        ids = sorted(set(profile_ids))
        if not ids:
            return {}
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(
                f"SELECT * FROM profiles WHERE id IN ({self._placeholders(len(ids))})",
                tuple(ids),
            )
            return {row['id']: dict(row) for row in cursor.fetchall()}

    def update_profile_flags(self, profile_id: int, **flags) -> bool:
        """Set role flags (is_approved_driver, is_admin)."""
        allowed_fields = {'is_approved_driver', 'is_admin'}
        fields = {k: 1 if v else 0 for k, v in flags.items() if k in allowed_fields}
        if not fields:
            return False

        p = self._placeholder()
        set_clause = ', '.join([f"{k} = {p}" for k in fields])
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(
                f"UPDATE profiles SET {set_clause} WHERE id = {p}",
                tuple(fields.values()) + (profile_id,),
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Ride Operations
    # =========================================================================

    def create_ride(
        self,
        driver_id: int,
        origin: str,
        destination: str,
        departure_at: datetime,
        seats_total: int,
        price_per_seat_minor: int,
        created_at: datetime,
    ) -> int:
        """
        Create a new ride.

        Returns:
            The ID of the newly created ride.
        """
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            return self._insert(cursor, f"""
                INSERT INTO rides (
                    driver_id, origin, destination, departure_at,
                    seats_total, price_per_seat_minor, created_at
                ) VALUES ({p}, {p}, {p}, {p}, {p}, {p}, {p})
            """, (
                driver_id, origin, destination, self._ts(departure_at),
                seats_total, price_per_seat_minor, self._ts(created_at),
            ))

    def update_ride(
        self,
        ride_id: int,
        driver_id: int,
        fields: Dict[str, Any],
        now: datetime,
    ) -> bool:
        """
        Edit an upcoming ride owned by driver_id, in one conditional UPDATE.

        A new seats_total applies only if it still covers seats_taken. Any
        other change (route, time, price) applies only while no seats are
        taken, so a booking can never end up on terms its passenger did not
        agree to. A checkout racing the edit either lands first and blocks
        it, or finds the new terms.

        Returns:
            False if the ride does not exist, is not the driver's, is no
            longer upcoming, or the edit would break one of the rules above.
        """
        unknown = set(fields) - RIDE_EDIT_FIELDS
        if unknown:
            raise ValueError(f"Not an editable ride field: {', '.join(sorted(unknown))}")

        p = self._placeholder()
        values = {
            k: self._ts(v) if isinstance(v, datetime) else v
            for k, v in fields.items()
        }
        values['updated_at'] = self._ts(now)
        set_clause = ', '.join([f"{k} = {p}" for k in values])

        conditions = [
            f"id = {p}",
            f"driver_id = {p}",
            "status = 'upcoming'",
            f"departure_at > {p}",
        ]
        params: List[Any] = list(values.values()) + [ride_id, driver_id, self._ts(now)]
        if 'seats_total' in fields:
            conditions.append(f"seats_taken <= {p}")
            params.append(fields['seats_total'])
        if set(fields) - {'seats_total'}:
            conditions.append("seats_taken = 0")

        with self.get_connection(immediate=True) as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                UPDATE rides SET {set_clause}
                WHERE {' AND '.join(conditions)}
            """, tuple(params))
            return cursor.rowcount == 1

    def get_ride(self, ride_id: int) -> Optional[Dict[str, Any]]:
        """Get a ride by its ID."""
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"SELECT * FROM rides WHERE id = {p}", (ride_id,))
            return self._row(cursor.fetchone())

    def get_rides(self, ride_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        """Get several rides at once, keyed by ID."""
        ids = sorted(set(ride_ids))
        if not ids:
            return {}
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(
                f"SELECT * FROM rides WHERE id IN ({self._placeholders(len(ids))})",
                tuple(ids),
            )
            return {row['id']: dict(row) for row in cursor.fetchall()}

    def get_rides_by_driver(self, driver_id: int) -> List[Dict[str, Any]]:
        """Get all rides posted by a specific driver."""
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                SELECT * FROM rides
                WHERE driver_id = {p}
                ORDER BY departure_at DESC
            """, (driver_id,))
            return self._rows(cursor.fetchall())

    def search_rides(
        self,
        departs_after: datetime,
        origin: Optional[str] = None,
        destination: Optional[str] = None,
        departs_before: Optional[datetime] = None,
        min_seats: int = 1,
    ) -> List[Dict[str, Any]]:
        """
        Search upcoming rides, joined with the driver's eligibility fields.

        Origin and destination match case-insensitively on substrings.
        """
        p = self._placeholder()
        conditions = [
            "r.status = 'upcoming'",
            f"r.departure_at > {p}",
            f"r.seats_total - r.seats_taken >= {p}",
        ]
        params: List[Any] = [self._ts(departs_after), min_seats]

        if origin:
            conditions.append(f"LOWER(r.origin) LIKE {p}")
            params.append(f"%{origin.lower()}%")
        if destination:
            conditions.append(f"LOWER(r.destination) LIKE {p}")
            params.append(f"%{destination.lower()}%")
        if departs_before:
            conditions.append(f"r.departure_at < {p}")
            params.append(self._ts(departs_before))

        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                SELECT r.*, d.name AS driver_name, d.gender AS driver_gender,
                       d.travel_grouping AS driver_travel_grouping
                FROM rides r
                JOIN profiles d ON r.driver_id = d.id
                WHERE {' AND '.join(conditions)}
                ORDER BY r.departure_at ASC
            """, tuple(params))
            return self._rows(cursor.fetchall())

    def get_all_rides(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get all rides with driver names (for admin)."""
        p = self._placeholder()
        where_clause = f"WHERE r.status = {p}" if status else ""
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                SELECT r.*, d.name AS driver_name, d.email AS driver_email
                FROM rides r
                JOIN profiles d ON r.driver_id = d.id
                {where_clause}
                ORDER BY r.departure_at DESC
            """, (status,) if status else ())
            return self._rows(cursor.fetchall())

    def get_departed_ride_ids(self, now: datetime) -> List[int]:
        """
        Rides whose departure has passed and that still need completing:
        upcoming rides, and completed rides with a confirmed booking left
        behind by an in-flight transition.
        """
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                SELECT id FROM rides
                WHERE departure_at <= {p}
                AND (
                    status = 'upcoming'
                    OR (status = 'completed' AND id IN (
                        SELECT ride_id FROM bookings WHERE status = 'confirmed'
                    ))
                )
            """, (self._ts(now),))
            return [row['id'] for row in cursor.fetchall()]

    def complete_ride(self, ride_id: int, now: datetime) -> int:
        """
        Mark a departed ride completed, along with its confirmed bookings.

        Safe to run repeatedly. Confirmed bookings with a transition in
        flight are left for the next run.

        Returns:
            Number of bookings moved to completed.
        """
        p = self._placeholder()
        with self.get_connection(immediate=True) as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                UPDATE rides
                SET status = 'completed', updated_at = {p}
                WHERE id = {p} AND status = 'upcoming' AND departure_at <= {p}
            """, (self._ts(now), ride_id, self._ts(now)))

            cursor.execute(f"""
                UPDATE bookings
                SET status = 'completed', completed_at = {p}, updated_at = {p},
                    version = version + 1
                WHERE ride_id = {p} AND status = 'confirmed' AND operation IS NULL
                AND ride_id IN (SELECT id FROM rides WHERE status = 'completed')
            """, (self._ts(now), self._ts(now), ride_id))
            return cursor.rowcount

    def cancel_ride(self, ride_id: int, driver_id: int, now: datetime) -> bool:
        """Cancel an upcoming ride owned by driver_id."""
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                UPDATE rides
                SET status = 'cancelled', updated_at = {p}
                WHERE id = {p} AND driver_id = {p} AND status = 'upcoming'
            """, (self._ts(now), ride_id, driver_id))
            return cursor.rowcount > 0

    # =========================================================================
    # Seat Inventory Operations
    # =========================================================================

    def reserve_seats(self, ride_id: int, seats: int, now: datetime) -> Optional[int]:
        """
        Atomically take `seats` from a ride and record the reservation.

        The availability check is part of the UPDATE's WHERE clause, so two
        concurrent callers can never both take the last seat.

        Returns:
            The reservation ID, or None if the ride cannot fit `seats`.
        """
        p = self._placeholder()
        with self.get_connection(immediate=True) as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                UPDATE rides
                SET seats_taken = seats_taken + {p}, updated_at = {p}
                WHERE id = {p}
                AND status = 'upcoming'
                AND departure_at > {p}
                AND seats_taken + {p} <= seats_total
            """, (seats, self._ts(now), ride_id, self._ts(now), seats))

            if cursor.rowcount != 1:
                return None

            return self._insert(cursor, f"""
                INSERT INTO seat_reservations (ride_id, seats, status, created_at)
                VALUES ({p}, {p}, 'held', {p})
            """, (ride_id, seats, self._ts(now)))

    def _release_reservation(self, cursor, reservation_id: int, now: datetime) -> bool:
        """Release a reservation and give its seats back. No-op if already released."""
        p = self._placeholder()
        cursor.execute(f"""
            UPDATE seat_reservations
            SET status = 'released', released_at = {p}
            WHERE id = {p} AND status != 'released'
        """, (self._ts(now), reservation_id))

        if cursor.rowcount != 1:
            return False

        cursor.execute(f"""
            UPDATE rides
            SET seats_taken = seats_taken - (
                    SELECT seats FROM seat_reservations WHERE id = {p}
                ),
                updated_at = {p}
            WHERE id = (SELECT ride_id FROM seat_reservations WHERE id = {p})
        """, (reservation_id, self._ts(now), reservation_id))
        return True

    def release_reservation(self, reservation_id: int, now: datetime) -> bool:
        """
        Give a reservation's seats back to its ride.

        Returns:
            True if seats were released, False if it was already released.
        """
        with self.get_connection(immediate=True) as conn:
            cursor = self._get_cursor(conn)
            return self._release_reservation(cursor, reservation_id, now)

    def get_reservation(self, reservation_id: int) -> Optional[Dict[str, Any]]:
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"SELECT * FROM seat_reservations WHERE id = {p}", (reservation_id,))
            return self._row(cursor.fetchone())

    def get_stale_reservation_ids(self, created_before: datetime) -> List[int]:
        """Held reservations that never became a booking."""
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                SELECT id FROM seat_reservations
                WHERE status = 'held' AND created_at < {p}
            """, (self._ts(created_before),))
            return [row['id'] for row in cursor.fetchall()]

    def get_active_seat_total(self, ride_id: int) -> int:
        """Sum of seats across pending_driver and confirmed bookings on a ride."""
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                SELECT COALESCE(SUM(seats_booked), 0) AS value FROM bookings
                WHERE ride_id = {p} AND status IN ('pending_driver', 'confirmed')
            """, (ride_id,))
            return int(self._scalar(cursor) or 0)

    # =========================================================================
    # Booking Operations
    # =========================================================================

    def create_booking(
        self,
        reservation_id: int,
        ride_id: int,
        passenger_id: int,
        seats_booked: int,
        total_paid_minor: int,
        authorization_ref: str,
        now: datetime,
    ) -> Optional[int]:
        """
        Create a pending_driver booking and attach its seat reservation.

        Returns:
            The booking ID, or None if the reservation is no longer held
            (for example, the stale-reservation sweep released it).
        """
        p = self._placeholder()
        with self.get_connection(immediate=True) as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                UPDATE seat_reservations SET status = 'committed'
                WHERE id = {p} AND ride_id = {p} AND status = 'held'
            """, (reservation_id, ride_id))

            if cursor.rowcount != 1:
                return None

            booking_id = self._insert(cursor, f"""
                INSERT INTO bookings (
                    ride_id, passenger_id, reservation_id, seats_booked,
                    total_paid_minor, authorization_ref, status, created_at, updated_at
                ) VALUES ({p}, {p}, {p}, {p}, {p}, {p}, 'pending_driver', {p}, {p})
            """, (
                ride_id, passenger_id, reservation_id, seats_booked,
                total_paid_minor, authorization_ref, self._ts(now), self._ts(now),
            ))

            cursor.execute(
                f"UPDATE seat_reservations SET booking_id = {p} WHERE id = {p}",
                (booking_id, reservation_id),
            )
            return booking_id

    def get_booking(self, booking_id: int) -> Optional[Dict[str, Any]]:
        """Get a booking by its ID."""
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"SELECT * FROM bookings WHERE id = {p}", (booking_id,))
            return self._row(cursor.fetchone())

    def get_bookings_by_passenger(self, passenger_id: int) -> List[Dict[str, Any]]:
        """Get all bookings for a passenger, newest first."""
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                SELECT * FROM bookings
                WHERE passenger_id = {p}
                ORDER BY created_at DESC, id DESC
            """, (passenger_id,))
            return self._rows(cursor.fetchall())

    def get_bookings_by_ride(
        self,
        ride_id: int,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Get bookings for a ride, optionally restricted to some statuses."""
        return self.get_bookings_by_rides([ride_id], statuses)

    def get_bookings_by_rides(
        self,
        ride_ids: Iterable[int],
        statuses: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        ids = sorted(set(ride_ids))
        if not ids:
            return []
        sql = f"SELECT * FROM bookings WHERE ride_id IN ({self._placeholders(len(ids))})"
        params: List[Any] = list(ids)
        if statuses:
            sql += f" AND status IN ({self._placeholders(len(statuses))})"
            params.extend(statuses)
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(sql + " ORDER BY created_at ASC, id ASC", tuple(params))
            return self._rows(cursor.fetchall())

    def get_bookings_for_driver(
        self,
        driver_id: int,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Bookings across every ride the driver owns."""
        p = self._placeholder()
        sql = f"""
            SELECT b.* FROM bookings b
            JOIN rides r ON b.ride_id = r.id
            WHERE r.driver_id = {p}
        """
        params: List[Any] = [driver_id]
        if statuses:
            sql += f" AND b.status IN ({self._placeholders(len(statuses))})"
            params.extend(statuses)
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(sql + " ORDER BY b.id ASC", tuple(params))
            return self._rows(cursor.fetchall())

    def claim_booking(
        self,
        booking_id: int,
        expected_statuses: Sequence[str],
        operation: str,
        now: datetime,
        lease_expired_before: datetime,
    ) -> Optional[Dict[str, Any]]:
        """
        Mark a booking as having a transition in flight.

        Succeeds only if the booking is in one of `expected_statuses` and no
        other transition holds it (or the holder's lease has expired). The
        claim is what serializes a driver decision against a passenger
        cancellation; no seat or ride row stays locked while the caller
        talks to the payment processor.

        Returns:
            The claimed booking row, or None if the claim was refused.
        """
        p = self._placeholder()
        with self.get_connection(immediate=True) as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                UPDATE bookings
                SET operation = {p}, operation_started_at = {p}, version = version + 1
                WHERE id = {p}
                AND status IN ({self._placeholders(len(expected_statuses))})
                AND (operation IS NULL OR operation_started_at < {p})
            """, (
                operation, self._ts(now), booking_id,
                *expected_statuses,
                self._ts(lease_expired_before),
            ))

            if cursor.rowcount != 1:
                return None

            cursor.execute(f"SELECT * FROM bookings WHERE id = {p}", (booking_id,))
            return self._row(cursor.fetchone())

    def release_claim(self, booking_id: int, operation: str) -> bool:
        """Drop a claim without changing the booking (the transition failed)."""
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                UPDATE bookings
                SET operation = NULL, operation_started_at = NULL, version = version + 1
                WHERE id = {p} AND operation = {p}
            """, (booking_id, operation))
            return cursor.rowcount > 0

    def finish_transition(
        self,
        booking_id: int,
        operation: str,
        fields: Dict[str, Any],
        now: datetime,
        release_seats: bool = False,
    ) -> bool:
        """
        Apply a claimed transition and drop the claim in one transaction.

        Args:
            fields: Booking columns to write (see BOOKING_TRANSITION_FIELDS).
            release_seats: Also give the booking's reserved seats back.

        Returns:
            False if the claim no longer belongs to `operation`.
        """
        unknown = set(fields) - BOOKING_TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Not a booking transition field: {', '.join(sorted(unknown))}")

        p = self._placeholder()
        values = {
            k: self._ts(v) if isinstance(v, datetime) else v
            for k, v in fields.items()
        }
        values['updated_at'] = self._ts(now)
        set_clause = ', '.join([f"{k} = {p}" for k in values])

        with self.get_connection(immediate=True) as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                UPDATE bookings
                SET {set_clause}, operation = NULL, operation_started_at = NULL,
                    version = version + 1
                WHERE id = {p} AND operation = {p}
            """, tuple(values.values()) + (booking_id, operation))

            if cursor.rowcount != 1:
                return False

            if release_seats:
                cursor.execute(
                    f"SELECT reservation_id FROM bookings WHERE id = {p}",
                    (booking_id,),
                )
                reservation_id = self._scalar(cursor, 'reservation_id')
                if reservation_id is not None:
                    self._release_reservation(cursor, reservation_id, now)
            return True

    def get_expirable_bookings(self, created_before: datetime, now: datetime) -> List[int]:
        """
        pending_driver bookings whose hold is too old, or whose ride has
        departed or been cancelled.
        """
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                SELECT b.id FROM bookings b
                JOIN rides r ON b.ride_id = r.id
                WHERE b.status = 'pending_driver'
                AND (b.created_at < {p} OR r.departure_at <= {p} OR r.status = 'cancelled')
                ORDER BY b.id ASC
            """, (self._ts(created_before), self._ts(now)))
            return [row['id'] for row in cursor.fetchall()]

    def get_unsettled_refund_ids(self) -> List[int]:
        """Cancelled bookings owed a refund that the processor has not issued yet."""
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute("""
                SELECT id FROM bookings
                WHERE status = 'cancelled'
                AND cancellation_refund_minor > 0
                AND capture_ref IS NOT NULL
                AND refund_ref IS NULL
                ORDER BY id ASC
            """)
            return [row['id'] for row in cursor.fetchall()]

    # =========================================================================
    # Payment Authorization Records
    # =========================================================================

    def create_payment_record(
        self,
        reference: str,
        amount_minor: int,
        currency: str,
        now: datetime,
    ) -> None:
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                INSERT INTO payment_authorizations (
                    reference, amount_minor, currency, status, created_at, updated_at
                ) VALUES ({p}, {p}, {p}, 'authorized', {p}, {p})
            """, (reference, amount_minor, currency, self._ts(now), self._ts(now)))

    def get_payment_record(self, reference: str) -> Optional[Dict[str, Any]]:
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(
                f"SELECT * FROM payment_authorizations WHERE reference = {p}",
                (reference,),
            )
            return self._row(cursor.fetchone())

    def resolve_payment_record(
        self,
        reference: str,
        from_status: str,
        to_status: str,
        now: datetime,
        **fields,
    ) -> bool:
        """
        Move a payment record from one status to the next.

        Returns:
            False if the record was not in `from_status`.
        """
        allowed_fields = {'capture_ref', 'refund_ref', 'refund_minor'}
        values = {k: v for k, v in fields.items() if k in allowed_fields}
        values['status'] = to_status
        values['updated_at'] = self._ts(now)

        p = self._placeholder()
        set_clause = ', '.join([f"{k} = {p}" for k in values])
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            cursor.execute(f"""
                UPDATE payment_authorizations SET {set_clause}
                WHERE reference = {p} AND status = {p}
            """, tuple(values.values()) + (reference, from_status))
            return cursor.rowcount > 0

    # =========================================================================
    # Payout Ledger
    # =========================================================================

    def create_payout(
        self,
        driver_id: int,
        amount_minor: int,
        note: Optional[str],
        recorded_by: int,
        now: datetime,
    ) -> int:
        """Append a payout ledger entry. Entries are never updated or deleted."""
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            return self._insert(cursor, f"""
                INSERT INTO payouts (driver_id, amount_minor, note, recorded_by, created_at)
                VALUES ({p}, {p}, {p}, {p}, {p})
            """, (driver_id, amount_minor, note, recorded_by, self._ts(now)))

    def get_payouts(self, driver_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Get payout ledger entries, newest first."""
        p = self._placeholder()
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            if driver_id is not None:
                cursor.execute(f"""
                    SELECT * FROM payouts WHERE driver_id = {p}
                    ORDER BY created_at DESC, id DESC
                """, (driver_id,))
            else:
                cursor.execute("SELECT * FROM payouts ORDER BY created_at DESC, id DESC")
            return self._rows(cursor.fetchall())

    # =========================================================================
    # Statistics Operations
    # =========================================================================

    def get_platform_statistics(self) -> Dict[str, Any]:
        """Get platform-wide counts."""
        with self.get_connection() as conn:
            cursor = self._get_cursor(conn)
            stats: Dict[str, Any] = {}

            cursor.execute("SELECT COUNT(*) AS value FROM profiles")
            stats['total_profiles'] = self._scalar(cursor)

            cursor.execute("SELECT COUNT(*) AS value FROM profiles WHERE is_approved_driver = 1")
            stats['approved_drivers'] = self._scalar(cursor)

            cursor.execute("SELECT COUNT(*) AS value FROM rides")
            stats['total_rides'] = self._scalar(cursor)

            cursor.execute("SELECT COUNT(*) AS value FROM rides WHERE status = 'upcoming'")
            stats['upcoming_rides'] = self._scalar(cursor)

            cursor.execute("SELECT status, COUNT(*) AS value FROM bookings GROUP BY status")
            stats['bookings_by_status'] = {
                row['status']: row['value'] for row in cursor.fetchall()
            }
            stats['total_bookings'] = sum(stats['bookings_by_status'].values())

            return stats


# Global database instance
db = Database()
