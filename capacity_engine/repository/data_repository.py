"""Repository layer responsible for all database access."""

from __future__ import annotations

import random
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Iterator, Optional

from capacity_engine.domain.errors import ConcurrencyConflictError
from capacity_engine.domain.models import (
    Booking,
    BookingStatus,
    CapacityRule,
    CapacityRuleType,
    DailyOccupancy,
    Destination,
    DestinationStatus,
    OperationalDecision,
    OperationalStatus,
    PricingRule,
    WeatherSnapshot,
    Zone,
)
from capacity_engine.utils.config import Settings, get_settings
from capacity_engine.utils.logger import fields, get_logger


logger = get_logger(__name__)

_CONTENTION_MARKERS = ("locked", "busy")


@dataclass(frozen=True)
class ReservationOutcome:
    """Result of the atomic check-and-increment."""

    booking: Optional[Booking]
    admitted_count: int
    zone_admitted_count: Optional[int] = None
    rejected_by_zone: bool = False


@dataclass(frozen=True)
class ReleaseOutcome:
    booking: Booking
    admitted_count: int
    clamped: bool


def _encode_days(days: Iterable[int]) -> str:
    return ",".join(str(day) for day in sorted(set(days)))


def _decode_days(value: Optional[str]) -> frozenset[int]:
    if not value:
        return frozenset()
    return frozenset(int(part) for part in value.split(",") if part.strip())


def _iso(value: date | time | datetime | None) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _opt_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _opt_time(value: Optional[str]) -> Optional[time]:
    return time.fromisoformat(value) if value else None


def _opt_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _opt_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _opt_str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _is_contention(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _CONTENTION_MARKERS)


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.database_busy_timeout_seconds,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        try:
            yield connection
        finally:
            connection.close()

    @contextmanager
    def _immediate_transaction(self) -> Iterator[sqlite3.Connection]:
        """Take the database write lock up front so read-then-write is atomic."""
        with self._connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE;")
                yield conn
                conn.commit()
            except sqlite3.OperationalError as exc:
                conn.rollback()
                if _is_contention(exc):
                    raise ConcurrencyConflictError(str(exc)) from exc
                raise
            except BaseException:
                conn.rollback()
                raise

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute("PRAGMA journal_mode = WAL;")

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Destinations (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        base_capacity INTEGER NOT NULL CHECK (base_capacity > 0),
                        base_price TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'ACTIVE',
                        operating_days TEXT NOT NULL DEFAULT '',
                        opening_time TEXT NOT NULL,
                        closing_time TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS CapacityRules (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        destination_id INTEGER NOT NULL,
                        rule_name TEXT NOT NULL,
                        rule_type TEXT NOT NULL,
                        capacity_percentage REAL,
                        absolute_capacity INTEGER CHECK (absolute_capacity >= 0),
                        applicable_days TEXT NOT NULL DEFAULT '',
                        start_time TEXT,
                        end_time TEXT,
                        start_date TEXT,
                        end_date TEXT,
                        priority INTEGER NOT NULL DEFAULT 0,
                        is_active INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (destination_id) REFERENCES Destinations(id) ON DELETE CASCADE
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS PricingRules (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        destination_id INTEGER NOT NULL,
                        rule_name TEXT NOT NULL,
                        base_price TEXT NOT NULL,
                        peak_multiplier TEXT NOT NULL DEFAULT '1.0',
                        off_peak_multiplier TEXT NOT NULL DEFAULT '1.0',
                        adult_price TEXT,
                        child_price TEXT,
                        local_price TEXT,
                        foreign_price TEXT,
                        applicable_days TEXT NOT NULL DEFAULT '',
                        start_date TEXT,
                        end_date TEXT,
                        priority INTEGER NOT NULL DEFAULT 0,
                        is_active INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (destination_id) REFERENCES Destinations(id) ON DELETE CASCADE
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS OperationalDecisions (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        destination_id INTEGER NOT NULL,
                        decision_date TEXT NOT NULL,
                        status TEXT NOT NULL,
                        effective_capacity INTEGER NOT NULL CHECK (effective_capacity >= 0),
                        notes TEXT NOT NULL DEFAULT '',
                        issued_by TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        UNIQUE (destination_id, decision_date),
                        FOREIGN KEY (destination_id) REFERENCES Destinations(id) ON DELETE CASCADE
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS DailyOccupancy (
                        destination_id INTEGER NOT NULL,
                        visit_date TEXT NOT NULL,
                        admitted_count INTEGER NOT NULL DEFAULT 0 CHECK (admitted_count >= 0),
                        on_site_count INTEGER NOT NULL DEFAULT 0 CHECK (on_site_count >= 0),
                        PRIMARY KEY (destination_id, visit_date),
                        FOREIGN KEY (destination_id) REFERENCES Destinations(id) ON DELETE CASCADE
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Zones (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        destination_id INTEGER NOT NULL,
                        name TEXT NOT NULL,
                        max_capacity INTEGER NOT NULL CHECK (max_capacity > 0),
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (destination_id) REFERENCES Destinations(id) ON DELETE CASCADE
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS ZoneOccupancy (
                        zone_id INTEGER NOT NULL,
                        visit_date TEXT NOT NULL,
                        admitted_count INTEGER NOT NULL DEFAULT 0 CHECK (admitted_count >= 0),
                        PRIMARY KEY (zone_id, visit_date),
                        FOREIGN KEY (zone_id) REFERENCES Zones(id) ON DELETE CASCADE
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Bookings (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        destination_id INTEGER NOT NULL,
                        visit_date TEXT NOT NULL,
                        number_of_visitors INTEGER NOT NULL CHECK (number_of_visitors > 0),
                        status TEXT NOT NULL DEFAULT 'PENDING',
                        reservation_token TEXT NOT NULL UNIQUE,
                        total_price TEXT,
                        payment_ref TEXT,
                        created_at TEXT NOT NULL,
                        confirmed_at TEXT,
                        entry_time TEXT,
                        exit_time TEXT,
                        cancellation_reason TEXT,
                        zone_id INTEGER,
                        FOREIGN KEY (destination_id) REFERENCES Destinations(id),
                        FOREIGN KEY (zone_id) REFERENCES Zones(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS WeatherLogs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        destination_id INTEGER NOT NULL,
                        condition TEXT NOT NULL,
                        temperature REAL NOT NULL,
                        rainfall_mm REAL NOT NULL,
                        wind_speed_kmph REAL NOT NULL,
                        visibility_meters REAL NOT NULL,
                        timestamp TEXT NOT NULL
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_capacity_rules_destination
                    ON CapacityRules(destination_id, priority);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_pricing_rules_destination
                    ON PricingRules(destination_id, priority);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_bookings_status_created
                    ON Bookings(status, created_at);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_demo_data(self) -> int:
        """Seed demo destinations and rules only when no destination exists."""
        rng = random.Random(self._settings.weather_random_seed)
        now = datetime.now().replace(microsecond=0)
        demo_destinations = [
            ("Cloud Forest Reserve", 2000, "50", "06:00", "18:00"),
            ("Lakeside Boardwalk", 800, "25", "07:00", "19:00"),
            ("Summit Viewpoint", 300, "80", "05:00", "17:00"),
        ]
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) AS count FROM Destinations;")
                if int(cursor.fetchone()["count"]) > 0:
                    logger.info("Demo data already present; skipping seed")
                    return 0

                for name, capacity, price, opening, closing in demo_destinations:
                    cursor.execute(
                        """
                        INSERT INTO Destinations (
                            name, base_capacity, base_price, status,
                            operating_days, opening_time, closing_time, created_at
                        )
                        VALUES (?, ?, ?, 'ACTIVE', '', ?, ?, ?);
                        """,
                        (name, capacity, price, f"{opening}:00", f"{closing}:00", now.isoformat()),
                    )
                    destination_id = int(cursor.lastrowid)
                    cursor.execute(
                        """
                        INSERT INTO Zones (destination_id, name, max_capacity, created_at)
                        VALUES (?, 'Viewpoint', ?, ?);
                        """,
                        (destination_id, capacity // 4, now.isoformat()),
                    )
                    cursor.execute(
                        """
                        INSERT INTO CapacityRules (
                            destination_id, rule_name, rule_type, capacity_percentage,
                            applicable_days, priority, is_active, created_at
                        )
                        VALUES (?, 'Weekend crowd cap', 'SEASONAL', ?, '0,6', 5, 1, ?);
                        """,
                        (destination_id, float(rng.choice((80, 90, 110))), now.isoformat()),
                    )
                    cursor.execute(
                        """
                        INSERT INTO PricingRules (
                            destination_id, rule_name, base_price, peak_multiplier,
                            off_peak_multiplier, child_price, foreign_price,
                            priority, is_active, created_at
                        )
                        VALUES (?, 'Standard fare', ?, '1.5', '0.8', ?, ?, 1, 1, ?);
                        """,
                        (
                            destination_id,
                            price,
                            str(Decimal(price) / 2),
                            str(Decimal(price) * 2),
                            now.isoformat(),
                        ),
                    )
                conn.commit()
            logger.info("Demo seed completed with %s destinations", len(demo_destinations))
            return len(demo_destinations)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Demo data seeding failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Destinations
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_destination(row: sqlite3.Row) -> Destination:
        return Destination(
            destination_id=int(row["id"]),
            name=str(row["name"]),
            base_capacity=int(row["base_capacity"]),
            base_price=Decimal(row["base_price"]),
            status=DestinationStatus(row["status"]),
            operating_days=_decode_days(row["operating_days"]),
            opening_time=time.fromisoformat(row["opening_time"]),
            closing_time=time.fromisoformat(row["closing_time"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def create_destination(self, destination: Destination) -> Destination:
        """Insert a destination; the id on the argument is ignored."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Destinations (
                    name, base_capacity, base_price, status, operating_days,
                    opening_time, closing_time, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    destination.name,
                    destination.base_capacity,
                    str(destination.base_price),
                    destination.status.value,
                    _encode_days(destination.operating_days),
                    destination.opening_time.isoformat(),
                    destination.closing_time.isoformat(),
                    destination.created_at.isoformat(),
                ),
            )
            conn.commit()
            destination_id = int(cursor.lastrowid)
        created = self.get_destination(destination_id)
        assert created is not None
        return created

    def get_destination(self, destination_id: int) -> Optional[Destination]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM Destinations WHERE id = ?;", (destination_id,))
            row = cursor.fetchone()
            return self._row_to_destination(row) if row is not None else None

    def list_destinations(self) -> list[Destination]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM Destinations ORDER BY id ASC;")
            return [self._row_to_destination(row) for row in cursor.fetchall()]

    def update_destination_status(
        self,
        destination_id: int,
        status: DestinationStatus,
    ) -> Optional[Destination]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE Destinations SET status = ? WHERE id = ?;",
                (status.value, destination_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
        return self.get_destination(destination_id)

    # ------------------------------------------------------------------
    # Zones
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_zone(row: sqlite3.Row) -> Zone:
        return Zone(
            zone_id=int(row["id"]),
            destination_id=int(row["destination_id"]),
            name=str(row["name"]),
            max_capacity=int(row["max_capacity"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def create_zone(self, zone: Zone) -> Zone:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Zones (destination_id, name, max_capacity, created_at)
                VALUES (?, ?, ?, ?);
                """,
                (zone.destination_id, zone.name, zone.max_capacity, zone.created_at.isoformat()),
            )
            conn.commit()
            zone_id = int(cursor.lastrowid)
        created = self.get_zone(zone_id)
        assert created is not None
        return created

    def get_zone(self, zone_id: int) -> Optional[Zone]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM Zones WHERE id = ?;", (zone_id,))
            row = cursor.fetchone()
            return self._row_to_zone(row) if row is not None else None

    def list_zones(self, destination_id: int) -> list[Zone]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM Zones WHERE destination_id = ? ORDER BY id ASC;",
                (destination_id,),
            )
            return [self._row_to_zone(row) for row in cursor.fetchall()]

    def get_zone_admitted(self, zone_id: int, visit_date: date) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT admitted_count FROM ZoneOccupancy
                WHERE zone_id = ? AND visit_date = ?;
                """,
                (zone_id, visit_date.isoformat()),
            )
            row = cursor.fetchone()
            return int(row["admitted_count"]) if row is not None else 0

    # ------------------------------------------------------------------
    # Capacity rules
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_capacity_rule(row: sqlite3.Row) -> CapacityRule:
        percentage = row["capacity_percentage"]
        absolute = row["absolute_capacity"]
        return CapacityRule(
            rule_id=int(row["id"]),
            destination_id=int(row["destination_id"]),
            rule_name=str(row["rule_name"]),
            rule_type=CapacityRuleType(row["rule_type"]),
            capacity_percentage=float(percentage) if percentage is not None else None,
            absolute_capacity=int(absolute) if absolute is not None else None,
            applicable_days=_decode_days(row["applicable_days"]),
            start_time=_opt_time(row["start_time"]),
            end_time=_opt_time(row["end_time"]),
            start_date=_opt_date(row["start_date"]),
            end_date=_opt_date(row["end_date"]),
            priority=int(row["priority"]),
            is_active=bool(row["is_active"]),
            created_at=_opt_datetime(row["created_at"]),
        )

    @staticmethod
    def _capacity_rule_params(rule: CapacityRule) -> tuple:
        return (
            rule.rule_name,
            rule.rule_type.value,
            rule.capacity_percentage,
            rule.absolute_capacity,
            _encode_days(rule.applicable_days),
            _iso(rule.start_time),
            _iso(rule.end_time),
            _iso(rule.start_date),
            _iso(rule.end_date),
            rule.priority,
            int(rule.is_active),
        )

    def create_capacity_rule(self, rule: CapacityRule) -> CapacityRule:
        created_at = rule.created_at or datetime.now()
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO CapacityRules (
                    rule_name, rule_type, capacity_percentage, absolute_capacity,
                    applicable_days, start_time, end_time, start_date, end_date,
                    priority, is_active, destination_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                self._capacity_rule_params(rule)
                + (rule.destination_id, created_at.isoformat()),
            )
            conn.commit()
            rule_id = int(cursor.lastrowid)
        created = self.get_capacity_rule(rule_id)
        assert created is not None
        return created

    def get_capacity_rule(self, rule_id: int) -> Optional[CapacityRule]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM CapacityRules WHERE id = ?;", (rule_id,))
            row = cursor.fetchone()
            return self._row_to_capacity_rule(row) if row is not None else None

    def list_capacity_rules(self, destination_id: int) -> list[CapacityRule]:
        """Return every rule for a destination, strongest priority first."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM CapacityRules
                WHERE destination_id = ?
                ORDER BY priority DESC, created_at DESC, id DESC;
                """,
                (destination_id,),
            )
            return [self._row_to_capacity_rule(row) for row in cursor.fetchall()]

    def update_capacity_rule(self, rule: CapacityRule) -> bool:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE CapacityRules
                SET rule_name = ?, rule_type = ?, capacity_percentage = ?,
                    absolute_capacity = ?, applicable_days = ?, start_time = ?,
                    end_time = ?, start_date = ?, end_date = ?, priority = ?,
                    is_active = ?
                WHERE id = ?;
                """,
                self._capacity_rule_params(rule) + (rule.rule_id,),
            )
            conn.commit()
            return cursor.rowcount > 0

    def delete_capacity_rule(self, rule_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM CapacityRules WHERE id = ?;", (rule_id,))
            conn.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Pricing rules
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_pricing_rule(row: sqlite3.Row) -> PricingRule:
        return PricingRule(
            rule_id=int(row["id"]),
            destination_id=int(row["destination_id"]),
            rule_name=str(row["rule_name"]),
            base_price=Decimal(row["base_price"]),
            peak_multiplier=Decimal(row["peak_multiplier"]),
            off_peak_multiplier=Decimal(row["off_peak_multiplier"]),
            adult_price=_opt_decimal(row["adult_price"]),
            child_price=_opt_decimal(row["child_price"]),
            local_price=_opt_decimal(row["local_price"]),
            foreign_price=_opt_decimal(row["foreign_price"]),
            applicable_days=_decode_days(row["applicable_days"]),
            start_date=_opt_date(row["start_date"]),
            end_date=_opt_date(row["end_date"]),
            priority=int(row["priority"]),
            is_active=bool(row["is_active"]),
            created_at=_opt_datetime(row["created_at"]),
        )

    @staticmethod
    def _pricing_rule_params(rule: PricingRule) -> tuple:
        return (
            rule.rule_name,
            str(rule.base_price),
            str(rule.peak_multiplier),
            str(rule.off_peak_multiplier),
            _opt_str(rule.adult_price),
            _opt_str(rule.child_price),
            _opt_str(rule.local_price),
            _opt_str(rule.foreign_price),
            _encode_days(rule.applicable_days),
            _iso(rule.start_date),
            _iso(rule.end_date),
            rule.priority,
            int(rule.is_active),
        )

    def create_pricing_rule(self, rule: PricingRule) -> PricingRule:
        created_at = rule.created_at or datetime.now()
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO PricingRules (
                    rule_name, base_price, peak_multiplier, off_peak_multiplier,
                    adult_price, child_price, local_price, foreign_price,
                    applicable_days, start_date, end_date, priority, is_active,
                    destination_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                self._pricing_rule_params(rule)
                + (rule.destination_id, created_at.isoformat()),
            )
            conn.commit()
            rule_id = int(cursor.lastrowid)
        created = self.get_pricing_rule(rule_id)
        assert created is not None
        return created

    def get_pricing_rule(self, rule_id: int) -> Optional[PricingRule]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM PricingRules WHERE id = ?;", (rule_id,))
            row = cursor.fetchone()
            return self._row_to_pricing_rule(row) if row is not None else None

    def list_pricing_rules(self, destination_id: int) -> list[PricingRule]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM PricingRules
                WHERE destination_id = ?
                ORDER BY priority DESC, created_at DESC, id DESC;
                """,
                (destination_id,),
            )
            return [self._row_to_pricing_rule(row) for row in cursor.fetchall()]

    def update_pricing_rule(self, rule: PricingRule) -> bool:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE PricingRules
                SET rule_name = ?, base_price = ?, peak_multiplier = ?,
                    off_peak_multiplier = ?, adult_price = ?, child_price = ?,
                    local_price = ?, foreign_price = ?, applicable_days = ?,
                    start_date = ?, end_date = ?, priority = ?, is_active = ?
                WHERE id = ?;
                """,
                self._pricing_rule_params(rule) + (rule.rule_id,),
            )
            conn.commit()
            return cursor.rowcount > 0

    def delete_pricing_rule(self, rule_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM PricingRules WHERE id = ?;", (rule_id,))
            conn.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Operational decisions
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_decision(row: sqlite3.Row) -> OperationalDecision:
        return OperationalDecision(
            decision_id=int(row["id"]),
            destination_id=int(row["destination_id"]),
            decision_date=date.fromisoformat(row["decision_date"]),
            status=OperationalStatus(row["status"]),
            effective_capacity=int(row["effective_capacity"]),
            notes=str(row["notes"]),
            issued_by=str(row["issued_by"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def upsert_decision(
        self,
        destination_id: int,
        decision_date: date,
        status: OperationalStatus,
        effective_capacity: int,
        notes: str,
        issued_by: str,
    ) -> OperationalDecision:
        """Record the decision for a day, superseding any earlier one."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO OperationalDecisions (
                    destination_id, decision_date, status, effective_capacity,
                    notes, issued_by, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (destination_id, decision_date) DO UPDATE SET
                    status = excluded.status,
                    effective_capacity = excluded.effective_capacity,
                    notes = excluded.notes,
                    issued_by = excluded.issued_by,
                    created_at = excluded.created_at;
                """,
                (
                    destination_id,
                    decision_date.isoformat(),
                    status.value,
                    effective_capacity,
                    notes,
                    issued_by,
                    datetime.now().isoformat(),
                ),
            )
            conn.commit()
        decision = self.get_decision(destination_id, decision_date)
        assert decision is not None
        return decision

    def get_decision(
        self,
        destination_id: int,
        decision_date: date,
    ) -> Optional[OperationalDecision]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM OperationalDecisions
                WHERE destination_id = ? AND decision_date = ?;
                """,
                (destination_id, decision_date.isoformat()),
            )
            row = cursor.fetchone()
            return self._row_to_decision(row) if row is not None else None

    def delete_decision(self, destination_id: int, decision_date: date) -> bool:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                DELETE FROM OperationalDecisions
                WHERE destination_id = ? AND decision_date = ?;
                """,
                (destination_id, decision_date.isoformat()),
            )
            conn.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Occupancy and bookings
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_booking(row: sqlite3.Row) -> Booking:
        return Booking(
            booking_id=int(row["id"]),
            destination_id=int(row["destination_id"]),
            visit_date=date.fromisoformat(row["visit_date"]),
            number_of_visitors=int(row["number_of_visitors"]),
            status=BookingStatus(row["status"]),
            reservation_token=str(row["reservation_token"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            total_price=_opt_decimal(row["total_price"]),
            payment_ref=row["payment_ref"],
            confirmed_at=_opt_datetime(row["confirmed_at"]),
            entry_time=_opt_datetime(row["entry_time"]),
            exit_time=_opt_datetime(row["exit_time"]),
            cancellation_reason=row["cancellation_reason"],
            zone_id=int(row["zone_id"]) if row["zone_id"] is not None else None,
        )

    @staticmethod
    def _ensure_occupancy_row(
        cursor: sqlite3.Cursor,
        destination_id: int,
        visit_date: date,
    ) -> None:
        cursor.execute(
            """
            INSERT INTO DailyOccupancy (destination_id, visit_date)
            VALUES (?, ?)
            ON CONFLICT (destination_id, visit_date) DO NOTHING;
            """,
            (destination_id, visit_date.isoformat()),
        )

    @staticmethod
    def _read_occupancy(
        cursor: sqlite3.Cursor,
        destination_id: int,
        visit_date: date,
    ) -> DailyOccupancy:
        cursor.execute(
            """
            SELECT admitted_count, on_site_count
            FROM DailyOccupancy
            WHERE destination_id = ? AND visit_date = ?;
            """,
            (destination_id, visit_date.isoformat()),
        )
        row = cursor.fetchone()
        if row is None:
            return DailyOccupancy(destination_id=destination_id, visit_date=visit_date)
        return DailyOccupancy(
            destination_id=destination_id,
            visit_date=visit_date,
            admitted_today=int(row["admitted_count"]),
            on_site_now=int(row["on_site_count"]),
        )

    def get_daily_occupancy(self, destination_id: int, visit_date: date) -> DailyOccupancy:
        with self._connect() as conn:
            return self._read_occupancy(conn.cursor(), destination_id, visit_date)

    def reserve_capacity(
        self,
        *,
        destination_id: int,
        visit_date: date,
        visitors: int,
        effective_capacity: int,
        reservation_token: str,
        total_price: Optional[Decimal],
        created_at: datetime,
        zone_id: Optional[int] = None,
        zone_capacity: Optional[int] = None,
    ) -> ReservationOutcome:
        """Conditionally add visitors to the day's count and insert the booking.

        All writes happen in one IMMEDIATE transaction; each UPDATE only
        matches when the new total stays within its cap. With a zone, the
        zone counter is gated by ``zone_capacity`` as well, and a zone
        rejection leaves the destination counter untouched.
        """
        with self._immediate_transaction() as conn:
            cursor = conn.cursor()
            self._ensure_occupancy_row(cursor, destination_id, visit_date)
            before = self._read_occupancy(cursor, destination_id, visit_date)
            cursor.execute(
                """
                UPDATE DailyOccupancy
                SET admitted_count = admitted_count + ?
                WHERE destination_id = ?
                  AND visit_date = ?
                  AND admitted_count + ? <= ?;
                """,
                (visitors, destination_id, visit_date.isoformat(), visitors, effective_capacity),
            )
            if cursor.rowcount == 0:
                return ReservationOutcome(booking=None, admitted_count=before.admitted_today)

            zone_admitted: Optional[int] = None
            if zone_id is not None:
                cursor.execute(
                    """
                    INSERT INTO ZoneOccupancy (zone_id, visit_date)
                    VALUES (?, ?)
                    ON CONFLICT (zone_id, visit_date) DO NOTHING;
                    """,
                    (zone_id, visit_date.isoformat()),
                )
                cursor.execute(
                    """
                    UPDATE ZoneOccupancy
                    SET admitted_count = admitted_count + ?
                    WHERE zone_id = ?
                      AND visit_date = ?
                      AND admitted_count + ? <= ?;
                    """,
                    (visitors, zone_id, visit_date.isoformat(), visitors, zone_capacity),
                )
                zone_admitted_ok = cursor.rowcount > 0
                cursor.execute(
                    """
                    SELECT admitted_count FROM ZoneOccupancy
                    WHERE zone_id = ? AND visit_date = ?;
                    """,
                    (zone_id, visit_date.isoformat()),
                )
                zone_admitted = int(cursor.fetchone()["admitted_count"])
                if not zone_admitted_ok:
                    conn.rollback()
                    return ReservationOutcome(
                        booking=None,
                        admitted_count=before.admitted_today,
                        zone_admitted_count=zone_admitted,
                        rejected_by_zone=True,
                    )

            occupancy = self._read_occupancy(cursor, destination_id, visit_date)
            cursor.execute(
                """
                INSERT INTO Bookings (
                    destination_id, visit_date, number_of_visitors, status,
                    reservation_token, total_price, created_at, zone_id
                )
                VALUES (?, ?, ?, 'PENDING', ?, ?, ?, ?);
                """,
                (
                    destination_id,
                    visit_date.isoformat(),
                    visitors,
                    reservation_token,
                    _opt_str(total_price),
                    created_at.isoformat(),
                    zone_id,
                ),
            )
            cursor.execute("SELECT * FROM Bookings WHERE id = ?;", (cursor.lastrowid,))
            booking = self._row_to_booking(cursor.fetchone())
            return ReservationOutcome(
                booking=booking,
                admitted_count=occupancy.admitted_today,
                zone_admitted_count=zone_admitted,
            )

    def release_booking(
        self,
        *,
        booking_id: int,
        expected_statuses: tuple[BookingStatus, ...],
        reason: str,
    ) -> Optional[ReleaseOutcome]:
        """Cancel a booking and give its visitors back to the day's count.

        Returns None when the booking is no longer in one of
        ``expected_statuses`` (another request moved it first). A zoned
        booking also gives its visitors back to the zone counter.
        """
        placeholders = ",".join("?" for _ in expected_statuses)
        with self._immediate_transaction() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                UPDATE Bookings
                SET status = 'CANCELLED', cancellation_reason = ?
                WHERE id = ? AND status IN ({placeholders});
                """,
                (reason, booking_id, *[status.value for status in expected_statuses]),
            )
            if cursor.rowcount == 0:
                return None
            cursor.execute("SELECT * FROM Bookings WHERE id = ?;", (booking_id,))
            booking = self._row_to_booking(cursor.fetchone())

            self._ensure_occupancy_row(cursor, booking.destination_id, booking.visit_date)
            before = self._read_occupancy(cursor, booking.destination_id, booking.visit_date)
            remaining = before.admitted_today - booking.number_of_visitors
            cursor.execute(
                """
                UPDATE DailyOccupancy
                SET admitted_count = ?
                WHERE destination_id = ? AND visit_date = ?;
                """,
                (max(0, remaining), booking.destination_id, booking.visit_date.isoformat()),
            )
            if booking.zone_id is not None:
                cursor.execute(
                    """
                    UPDATE ZoneOccupancy
                    SET admitted_count = MAX(0, admitted_count - ?)
                    WHERE zone_id = ? AND visit_date = ?;
                    """,
                    (booking.number_of_visitors, booking.zone_id, booking.visit_date.isoformat()),
                )
            return ReleaseOutcome(
                booking=booking,
                admitted_count=max(0, remaining),
                clamped=remaining < 0,
            )

    def transition_booking(
        self,
        *,
        booking_id: int,
        from_status: BookingStatus,
        to_status: BookingStatus,
        on_site_delta: int = 0,
        payment_ref: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Optional[tuple[Booking, DailyOccupancy]]:
        """Compare-and-set a booking status, optionally moving the on-site count.

        The admitted counter is never touched here.
        """
        stamp = (at or datetime.now()).isoformat()
        timestamp_column = {
            BookingStatus.CONFIRMED: "confirmed_at",
            BookingStatus.CHECKED_IN: "entry_time",
            BookingStatus.COMPLETED: "exit_time",
        }.get(to_status)
        assignments = ["status = ?"]
        params: list[object] = [to_status.value]
        if timestamp_column is not None:
            assignments.append(f"{timestamp_column} = ?")
            params.append(stamp)
        if payment_ref is not None:
            assignments.append("payment_ref = ?")
            params.append(payment_ref)

        with self._immediate_transaction() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                UPDATE Bookings
                SET {", ".join(assignments)}
                WHERE id = ? AND status = ?;
                """,
                (*params, booking_id, from_status.value),
            )
            if cursor.rowcount == 0:
                return None
            cursor.execute("SELECT * FROM Bookings WHERE id = ?;", (booking_id,))
            booking = self._row_to_booking(cursor.fetchone())

            self._ensure_occupancy_row(cursor, booking.destination_id, booking.visit_date)
            if on_site_delta:
                cursor.execute(
                    """
                    UPDATE DailyOccupancy
                    SET on_site_count = MAX(0, on_site_count + ?)
                    WHERE destination_id = ? AND visit_date = ?;
                    """,
                    (on_site_delta, booking.destination_id, booking.visit_date.isoformat()),
                )
            occupancy = self._read_occupancy(cursor, booking.destination_id, booking.visit_date)
            return booking, occupancy

    def adjust_admitted(
        self,
        destination_id: int,
        visit_date: date,
        delta: int,
    ) -> DailyOccupancy:
        """Manual staff correction of the admitted counter, clamped at zero."""
        with self._immediate_transaction() as conn:
            cursor = conn.cursor()
            self._ensure_occupancy_row(cursor, destination_id, visit_date)
            cursor.execute(
                """
                UPDATE DailyOccupancy
                SET admitted_count = MAX(0, admitted_count + ?)
                WHERE destination_id = ? AND visit_date = ?;
                """,
                (delta, destination_id, visit_date.isoformat()),
            )
            return self._read_occupancy(cursor, destination_id, visit_date)

    def get_booking(self, booking_id: int) -> Optional[Booking]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM Bookings WHERE id = ?;", (booking_id,))
            row = cursor.fetchone()
            return self._row_to_booking(row) if row is not None else None

    def list_stale_pending_bookings(self, created_before: datetime) -> list[Booking]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM Bookings
                WHERE status = 'PENDING' AND created_at < ?
                ORDER BY created_at ASC, id ASC;
                """,
                (created_before.isoformat(),),
            )
            return [self._row_to_booking(row) for row in cursor.fetchall()]

    def count_bookings(self, destination_id: int, status: BookingStatus) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT COUNT(*) AS count FROM Bookings
                WHERE destination_id = ? AND status = ?;
                """,
                (destination_id, status.value),
            )
            return int(cursor.fetchone()["count"])

    # ------------------------------------------------------------------
    # Weather audit log
    # ------------------------------------------------------------------

    def save_weather_log(self, destination_id: int, snapshot: WeatherSnapshot) -> None:
        """Persist fetched weather for observability and audit trails."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO WeatherLogs (
                    destination_id, condition, temperature, rainfall_mm,
                    wind_speed_kmph, visibility_meters, timestamp
                )
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    destination_id,
                    snapshot.condition,
                    snapshot.temperature,
                    snapshot.rainfall_mm,
                    snapshot.wind_speed_kmph,
                    snapshot.visibility_meters,
                    snapshot.timestamp.isoformat(),
                ),
            )
            conn.commit()
        logger.debug(
            "Weather logged | %s",
            fields(destination_id=destination_id, condition=snapshot.condition),
        )

    def count_weather_logs(self, destination_id: int) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*) AS count FROM WeatherLogs WHERE destination_id = ?;",
                (destination_id,),
            )
            return int(cursor.fetchone()["count"])
