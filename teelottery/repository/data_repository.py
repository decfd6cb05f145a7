"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import random
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional, Sequence

from teelottery.domain.constraints import WindowConfig
from teelottery.domain.models import (
    AvailabilityRule,
    EligibilityRule,
    FairnessRecord,
    FrequencyRule,
    LotteryRequest,
    Member,
    PendingRequests,
    RequestStatus,
    RuleType,
    Slot,
    SpeedProfile,
    SpeedTier,
    TimeRule,
    TimeWindow,
)
from teelottery.utils.config import Settings, get_settings
from teelottery.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class ProcessingEntryLog:
    """Per-request audit row written for every lottery run."""

    request_id: int
    entry_type: str
    preferred_window: str
    alternate_window: Optional[str]
    outcome: str
    priority: float
    assigned_slot_id: Optional[int] = None
    assigned_start_minute: Optional[int] = None
    assignment_reason: Optional[str] = None
    violated_restrictions: bool = False
    restriction_details: Optional[dict] = None
    fairness_score_before: Optional[int] = None
    fairness_score_after: Optional[int] = None
    preference_granted: Optional[bool] = None


def _split_csv(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [item for item in value.split(",") if item]


def _parse_date(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    return date.fromisoformat(str(value))


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


class DataRepository:
    """Encapsulates SQLite access so the lottery engine stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS Members (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        member_class TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS SpeedProfiles (
                        member_id INTEGER PRIMARY KEY,
                        speed_tier TEXT NOT NULL DEFAULT 'AVERAGE'
                            CHECK (speed_tier IN ('FAST', 'AVERAGE', 'SLOW')),
                        admin_adjustment INTEGER NOT NULL DEFAULT 0,
                        FOREIGN KEY (member_id) REFERENCES Members(id) ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS Slots (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        slot_date TEXT NOT NULL,
                        start_minute INTEGER NOT NULL
                            CHECK (start_minute >= 0 AND start_minute < 1440),
                        capacity INTEGER NOT NULL CHECK (capacity > 0)
                    );

                    CREATE TABLE IF NOT EXISTS LotteryRequests (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        organizer_id INTEGER NOT NULL,
                        requested_date TEXT NOT NULL,
                        preferred_window TEXT NOT NULL,
                        alternate_window TEXT,
                        submitted_at TEXT NOT NULL,
                        is_group INTEGER NOT NULL DEFAULT 0 CHECK (is_group IN (0, 1)),
                        status TEXT NOT NULL DEFAULT 'PENDING',
                        assigned_slot_id INTEGER,
                        processed_at TEXT,
                        FOREIGN KEY (assigned_slot_id) REFERENCES Slots(id)
                    );

                    CREATE TABLE IF NOT EXISTS LotteryRequestMembers (
                        request_id INTEGER NOT NULL,
                        member_id INTEGER NOT NULL,
                        position INTEGER NOT NULL,
                        PRIMARY KEY (request_id, member_id),
                        FOREIGN KEY (request_id) REFERENCES LotteryRequests(id) ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS EligibilityRules (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        description TEXT NOT NULL DEFAULT '',
                        rule_type TEXT NOT NULL
                            CHECK (rule_type IN ('TIME', 'FREQUENCY', 'AVAILABILITY')),
                        is_active INTEGER NOT NULL DEFAULT 1,
                        can_override INTEGER NOT NULL DEFAULT 0,
                        priority INTEGER NOT NULL DEFAULT 0,
                        member_classes TEXT NOT NULL DEFAULT '',
                        days_of_week TEXT NOT NULL DEFAULT '',
                        start_minute INTEGER,
                        end_minute INTEGER,
                        start_date TEXT,
                        end_date TEXT,
                        max_count INTEGER,
                        period_days INTEGER
                    );

                    CREATE TABLE IF NOT EXISTS Bookings (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        slot_id INTEGER NOT NULL,
                        member_id INTEGER NOT NULL,
                        request_id INTEGER,
                        booking_date TEXT NOT NULL,
                        start_minute INTEGER NOT NULL,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (slot_id) REFERENCES Slots(id)
                    );

                    CREATE TABLE IF NOT EXISTS FairnessRecords (
                        member_id INTEGER NOT NULL,
                        period TEXT NOT NULL,
                        total_entries INTEGER NOT NULL DEFAULT 0,
                        preferences_granted INTEGER NOT NULL DEFAULT 0,
                        fulfillment_rate REAL NOT NULL DEFAULT 0,
                        days_without_good_time INTEGER NOT NULL DEFAULT 0,
                        fairness_score INTEGER NOT NULL DEFAULT 0,
                        last_updated TEXT NOT NULL,
                        PRIMARY KEY (member_id, period)
                    );

                    CREATE TABLE IF NOT EXISTS SiteWindowConfig (
                        id INTEGER PRIMARY KEY CHECK (id = 1),
                        open_minute INTEGER NOT NULL,
                        close_minute INTEGER NOT NULL,
                        bucket_count INTEGER NOT NULL,
                        labels TEXT NOT NULL DEFAULT '',
                        buckets TEXT NOT NULL DEFAULT '[]'
                    );

                    CREATE TABLE IF NOT EXISTS ProcessingRuns (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        lottery_date TEXT NOT NULL,
                        processed_at TEXT NOT NULL,
                        total_requests INTEGER NOT NULL,
                        assigned_count INTEGER NOT NULL,
                        group_count INTEGER NOT NULL,
                        individual_count INTEGER NOT NULL,
                        violation_count INTEGER NOT NULL DEFAULT 0,
                        bookings_created INTEGER NOT NULL DEFAULT 0
                    );

                    CREATE TABLE IF NOT EXISTS ProcessingEntryLogs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        run_id INTEGER NOT NULL,
                        request_id INTEGER NOT NULL,
                        entry_type TEXT NOT NULL,
                        preferred_window TEXT,
                        alternate_window TEXT,
                        outcome TEXT NOT NULL,
                        priority REAL NOT NULL,
                        assigned_slot_id INTEGER,
                        assigned_start_minute INTEGER,
                        assignment_reason TEXT,
                        violated_restrictions INTEGER NOT NULL DEFAULT 0,
                        restriction_details TEXT,
                        fairness_score_before INTEGER,
                        fairness_score_after INTEGER,
                        preference_granted INTEGER,
                        FOREIGN KEY (run_id) REFERENCES ProcessingRuns(id) ON DELETE CASCADE
                    );

                    CREATE INDEX IF NOT EXISTS idx_requests_date_status
                    ON LotteryRequests(requested_date, status);

                    CREATE INDEX IF NOT EXISTS idx_slots_date_start
                    ON Slots(slot_date, start_minute);

                    CREATE INDEX IF NOT EXISTS idx_bookings_slot
                    ON Bookings(slot_id);

                    CREATE INDEX IF NOT EXISTS idx_bookings_member_date
                    ON Bookings(member_id, booking_date);

                    CREATE INDEX IF NOT EXISTS idx_entry_logs_run
                    ON ProcessingEntryLogs(run_id);
                    """
                )

                cursor.execute("PRAGMA table_info(SiteWindowConfig);")
                window_columns = {str(row["name"]) for row in cursor.fetchall()}
                if "buckets" not in window_columns:
                    cursor.execute(
                        """
                        ALTER TABLE SiteWindowConfig
                        ADD COLUMN buckets TEXT NOT NULL DEFAULT '[]';
                        """
                    )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Demo data
    # ------------------------------------------------------------------

    def seed_demo_data(self) -> None:
        """Seed a deterministic demo club only when no members exist."""
        random.seed(self._settings.demo_random_seed)
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) AS count FROM Members;")
                if int(cursor.fetchone()["count"]) > 0:
                    logger.info("Demo data already present; skipping seed")
                    return

                member_classes = ("FULL", "FULL", "FULL", "RESTRICTED", "JUNIOR")
                tiers = ("FAST", "AVERAGE", "AVERAGE", "SLOW")
                member_ids: list[int] = []
                for index in range(self._settings.demo_members):
                    cursor.execute(
                        "INSERT INTO Members (name, member_class) VALUES (?, ?);",
                        (f"Member {index + 1:03d}", random.choice(member_classes)),
                    )
                    member_id = int(cursor.lastrowid)
                    member_ids.append(member_id)
                    cursor.execute(
                        """
                        INSERT INTO SpeedProfiles (member_id, speed_tier, admin_adjustment)
                        VALUES (?, ?, 0);
                        """,
                        (member_id, random.choice(tiers)),
                    )

                lottery_date = datetime.now(timezone.utc).date() + timedelta(
                    days=self._settings.demo_seed_days_ahead
                )
                slot_rows = [
                    (lottery_date.isoformat(), minute, self._settings.demo_slot_capacity)
                    for minute in range(
                        self._settings.window_open_minute,
                        self._settings.window_close_minute,
                        self._settings.demo_slot_interval_minutes,
                    )
                ]
                cursor.executemany(
                    "INSERT INTO Slots (slot_date, start_minute, capacity) VALUES (?, ?, ?);",
                    slot_rows,
                )

                cursor.execute(
                    """
                    INSERT INTO EligibilityRules (
                        name, description, rule_type, priority, member_classes,
                        days_of_week, start_minute, end_minute
                    )
                    VALUES (?, ?, 'TIME', 10, 'RESTRICTED', '0,1,2,3,4', ?, ?);
                    """,
                    (
                        "Restricted weekday mornings",
                        "Restricted members may not play weekday mornings",
                        6 * 60,
                        12 * 60,
                    ),
                )

                windows = ("MORNING", "MIDDAY", "AFTERNOON", "EVENING")
                demand = (0.5, 0.25, 0.15, 0.10)
                submitted = datetime.now(timezone.utc) - timedelta(days=1)
                request_count = 0
                available = list(member_ids)
                random.shuffle(available)
                while available:
                    party = min(len(available), random.choice((1, 1, 2, 3, 4)))
                    members = [available.pop() for _ in range(party)]
                    preferred = random.choices(windows, weights=demand)[0]
                    alternate = random.choice([w for w in windows if w != preferred] + [None])
                    submitted += timedelta(minutes=random.randint(1, 30))
                    cursor.execute(
                        """
                        INSERT INTO LotteryRequests (
                            organizer_id, requested_date, preferred_window,
                            alternate_window, submitted_at, is_group
                        )
                        VALUES (?, ?, ?, ?, ?, ?);
                        """,
                        (
                            members[0],
                            lottery_date.isoformat(),
                            preferred,
                            alternate,
                            submitted.isoformat(),
                            1 if party > 1 else 0,
                        ),
                    )
                    request_id = int(cursor.lastrowid)
                    cursor.executemany(
                        """
                        INSERT INTO LotteryRequestMembers (request_id, member_id, position)
                        VALUES (?, ?, ?);
                        """,
                        [(request_id, member_id, position) for position, member_id in enumerate(members)],
                    )
                    request_count += 1
                conn.commit()
            logger.info(
                "Demo seed completed | date=%s | members=%s | slots=%s | requests=%s",
                lottery_date.isoformat(),
                len(member_ids),
                len(slot_rows),
                request_count,
            )
        except sqlite3.Error as exc:
            raise RuntimeError(f"Demo data seeding failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Members and profiles
    # ------------------------------------------------------------------

    def create_member(self, name: str, member_class: str) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO Members (name, member_class) VALUES (?, ?);",
                (name, member_class),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def list_members(self, member_ids: Iterable[int]) -> dict[int, Member]:
        ids = sorted(set(member_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT id, name, member_class FROM Members WHERE id IN ({placeholders});",
                tuple(ids),
            )
            return {
                int(row["id"]): Member(
                    member_id=int(row["id"]),
                    member_class=str(row["member_class"]),
                    name=str(row["name"]),
                )
                for row in cursor.fetchall()
            }

    def save_speed_profile(self, profile: SpeedProfile) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO SpeedProfiles (member_id, speed_tier, admin_adjustment)
                VALUES (?, ?, ?)
                ON CONFLICT(member_id) DO UPDATE SET
                    speed_tier = excluded.speed_tier,
                    admin_adjustment = excluded.admin_adjustment;
                """,
                (profile.member_id, profile.speed_tier.value, profile.admin_adjustment),
            )
            conn.commit()

    def get_speed_profile(self, member_id: int) -> Optional[SpeedProfile]:
        return self.list_speed_profiles([member_id]).get(member_id)

    def list_speed_profiles(self, member_ids: Iterable[int]) -> dict[int, SpeedProfile]:
        ids = sorted(set(member_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT member_id, speed_tier, admin_adjustment
                FROM SpeedProfiles
                WHERE member_id IN ({placeholders});
                """,
                tuple(ids),
            )
            return {
                int(row["member_id"]): SpeedProfile(
                    member_id=int(row["member_id"]),
                    speed_tier=SpeedTier(str(row["speed_tier"])),
                    admin_adjustment=int(row["admin_adjustment"]),
                )
                for row in cursor.fetchall()
            }

    # ------------------------------------------------------------------
    # Site configuration
    # ------------------------------------------------------------------

    def save_window_config(self, config: WindowConfig) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO SiteWindowConfig (
                    id, open_minute, close_minute, bucket_count, labels, buckets
                )
                VALUES (1, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    open_minute = excluded.open_minute,
                    close_minute = excluded.close_minute,
                    bucket_count = excluded.bucket_count,
                    labels = excluded.labels,
                    buckets = excluded.buckets;
                """,
                (
                    config.open_minute,
                    config.close_minute,
                    config.bucket_count,
                    ",".join(config.labels),
                    json.dumps(
                        [
                            [window.label, window.start_minute, window.end_minute]
                            for window in config.buckets
                        ]
                    ),
                ),
            )
            conn.commit()

    def get_window_config(self) -> Optional[WindowConfig]:
        """Return the stored site window config, if the club has saved one."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT open_minute, close_minute, bucket_count, labels, buckets
                FROM SiteWindowConfig
                WHERE id = 1;
                """
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return WindowConfig(
                open_minute=int(row["open_minute"]),
                close_minute=int(row["close_minute"]),
                bucket_count=int(row["bucket_count"]),
                labels=tuple(_split_csv(row["labels"])),
                buckets=tuple(
                    TimeWindow(label=str(label), start_minute=int(start), end_minute=int(end))
                    for label, start, end in json.loads(row["buckets"] or "[]")
                ),
            )

    # ------------------------------------------------------------------
    # Slots and bookings
    # ------------------------------------------------------------------

    def create_slot(self, slot_date: date, start_minute: int, capacity: int) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO Slots (slot_date, start_minute, capacity) VALUES (?, ?, ?);",
                (slot_date.isoformat(), start_minute, capacity),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def list_slots(self, slot_date: date) -> list[Slot]:
        """Return every slot of a date with capacity net of confirmed bookings."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT
                    s.id,
                    s.slot_date,
                    s.start_minute,
                    s.capacity,
                    s.capacity - COUNT(b.id) AS remaining
                FROM Slots AS s
                LEFT JOIN Bookings AS b ON b.slot_id = s.id
                WHERE s.slot_date = ?
                GROUP BY s.id
                ORDER BY s.start_minute ASC, s.id ASC;
                """,
                (slot_date.isoformat(),),
            )
            return [
                Slot(
                    slot_id=int(row["id"]),
                    slot_date=date.fromisoformat(str(row["slot_date"])),
                    start_minute=int(row["start_minute"]),
                    total_capacity=int(row["capacity"]),
                    remaining_capacity=max(0, int(row["remaining"])),
                )
                for row in cursor.fetchall()
            ]

    def list_available_slots(self, slot_date: date) -> list[Slot]:
        return [slot for slot in self.list_slots(slot_date) if slot.remaining_capacity > 0]

    def create_booking(
        self,
        slot_id: int,
        member_id: int,
        booking_date: date,
        start_minute: int,
        request_id: Optional[int] = None,
    ) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Bookings (
                    slot_id, member_id, request_id, booking_date, start_minute, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (slot_id, member_id, request_id, booking_date.isoformat(), start_minute, _utc_now()),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def get_booking_history(
        self,
        member_ids: Iterable[int],
        start_date: date,
        end_date: date,
    ) -> dict[int, list[date]]:
        """Confirmed booking dates per member within `[start_date, end_date]`."""
        ids = sorted(set(member_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT member_id, booking_date
                FROM Bookings
                WHERE member_id IN ({placeholders})
                  AND booking_date >= ?
                  AND booking_date <= ?
                ORDER BY booking_date ASC;
                """,
                (*ids, start_date.isoformat(), end_date.isoformat()),
            )
            history: dict[int, list[date]] = {}
            for row in cursor.fetchall():
                history.setdefault(int(row["member_id"]), []).append(
                    date.fromisoformat(str(row["booking_date"]))
                )
            return history

    def count_bookings(self, slot_id: Optional[int] = None) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            if slot_id is None:
                cursor.execute("SELECT COUNT(*) AS count FROM Bookings;")
            else:
                cursor.execute(
                    "SELECT COUNT(*) AS count FROM Bookings WHERE slot_id = ?;",
                    (slot_id,),
                )
            return int(cursor.fetchone()["count"])

    # ------------------------------------------------------------------
    # Eligibility rules
    # ------------------------------------------------------------------

    def create_rule(self, rule: EligibilityRule) -> int:
        """Insert a rule; the rule's own `rule_id` is ignored."""
        member_classes = getattr(rule, "member_classes", frozenset())
        days_of_week = getattr(rule, "days_of_week", frozenset())
        start_date = getattr(rule, "start_date", None)
        end_date = getattr(rule, "end_date", None)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO EligibilityRules (
                    name, description, rule_type, is_active, can_override, priority,
                    member_classes, days_of_week, start_minute, end_minute,
                    start_date, end_date, max_count, period_days
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    rule.name,
                    rule.description,
                    rule.rule_type.value,
                    int(rule.is_active),
                    int(rule.can_override),
                    rule.priority,
                    ",".join(sorted(member_classes)),
                    ",".join(str(day) for day in sorted(days_of_week)),
                    getattr(rule, "start_minute", None),
                    getattr(rule, "end_minute", None),
                    start_date.isoformat() if start_date else None,
                    end_date.isoformat() if end_date else None,
                    getattr(rule, "max_count", None),
                    getattr(rule, "period_days", None),
                ),
            )
            conn.commit()
            return int(cursor.lastrowid)

    @staticmethod
    def _rule_from_row(row: sqlite3.Row) -> EligibilityRule:
        common = {
            "rule_id": int(row["id"]),
            "name": str(row["name"]),
            "description": str(row["description"]),
            "is_active": bool(row["is_active"]),
            "can_override": bool(row["can_override"]),
            "priority": int(row["priority"]),
        }
        rule_type = RuleType(str(row["rule_type"]))
        member_classes = frozenset(_split_csv(row["member_classes"]))
        if rule_type == RuleType.TIME:
            return TimeRule(
                start_minute=int(row["start_minute"] or 0),
                end_minute=int(row["end_minute"] if row["end_minute"] is not None else 1440),
                member_classes=member_classes,
                days_of_week=frozenset(int(day) for day in _split_csv(row["days_of_week"])),
                start_date=_parse_date(row["start_date"]),
                end_date=_parse_date(row["end_date"]),
                **common,
            )
        if rule_type == RuleType.FREQUENCY:
            return FrequencyRule(
                max_count=int(row["max_count"]),
                period_days=int(row["period_days"]),
                member_classes=member_classes,
                **common,
            )
        return AvailabilityRule(
            start_date=date.fromisoformat(str(row["start_date"])),
            end_date=date.fromisoformat(str(row["end_date"])),
            **common,
        )

    def list_active_rules(self, target_date: date) -> list[EligibilityRule]:
        """Active rules whose optional date range covers the target date."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT *
                FROM EligibilityRules
                WHERE is_active = 1
                  AND (start_date IS NULL OR start_date <= ?)
                  AND (end_date IS NULL OR end_date >= ?)
                ORDER BY priority DESC, id ASC;
                """,
                (target_date.isoformat(), target_date.isoformat()),
            )
            return [self._rule_from_row(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Lottery requests
    # ------------------------------------------------------------------

    def create_request(
        self,
        organizer_id: int,
        member_ids: Sequence[int],
        requested_date: date,
        preferred_window: str,
        alternate_window: Optional[str] = None,
        submitted_at: Optional[datetime] = None,
    ) -> int:
        """Insert a request and its member list, organizer first."""
        ordered = [organizer_id, *[m for m in member_ids if m != organizer_id]]
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO LotteryRequests (
                    organizer_id, requested_date, preferred_window,
                    alternate_window, submitted_at, is_group
                )
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (
                    organizer_id,
                    requested_date.isoformat(),
                    preferred_window,
                    alternate_window,
                    (submitted_at or datetime.now(timezone.utc)).isoformat(),
                    1 if len(ordered) > 1 else 0,
                ),
            )
            request_id = int(cursor.lastrowid)
            cursor.executemany(
                """
                INSERT INTO LotteryRequestMembers (request_id, member_id, position)
                VALUES (?, ?, ?);
                """,
                [(request_id, member_id, position) for position, member_id in enumerate(ordered)],
            )
            conn.commit()
            return request_id

    def _load_requests(self, where: str, params: tuple) -> list[LotteryRequest]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT
                    id,
                    organizer_id,
                    requested_date,
                    preferred_window,
                    alternate_window,
                    submitted_at,
                    is_group,
                    status,
                    assigned_slot_id
                FROM LotteryRequests
                WHERE {where}
                ORDER BY submitted_at ASC, id ASC;
                """,
                params,
            )
            rows = cursor.fetchall()
            if not rows:
                return []
            request_ids = [int(row["id"]) for row in rows]
            placeholders = ",".join("?" for _ in request_ids)
            cursor.execute(
                f"""
                SELECT request_id, member_id
                FROM LotteryRequestMembers
                WHERE request_id IN ({placeholders})
                ORDER BY request_id ASC, position ASC;
                """,
                tuple(request_ids),
            )
            members_by_request: dict[int, list[int]] = {}
            for member_row in cursor.fetchall():
                members_by_request.setdefault(int(member_row["request_id"]), []).append(
                    int(member_row["member_id"])
                )

        return [
            LotteryRequest(
                request_id=int(row["id"]),
                organizer_id=int(row["organizer_id"]),
                member_ids=tuple(members_by_request.get(int(row["id"]), [])),
                requested_date=date.fromisoformat(str(row["requested_date"])),
                preferred_window=str(row["preferred_window"]),
                alternate_window=(
                    str(row["alternate_window"]) if row["alternate_window"] is not None else None
                ),
                submitted_at=_parse_timestamp(str(row["submitted_at"])),
                status=RequestStatus(str(row["status"])),
                assigned_slot_id=(
                    int(row["assigned_slot_id"]) if row["assigned_slot_id"] is not None else None
                ),
                is_group=bool(row["is_group"]),
            )
            for row in rows
        ]

    def get_request(self, request_id: int) -> Optional[LotteryRequest]:
        requests = self._load_requests("id = ?", (request_id,))
        return requests[0] if requests else None

    def list_pending_requests(self, requested_date: date) -> PendingRequests:
        """Return pending requests for a date split into individuals and groups."""
        requests = self._load_requests(
            "requested_date = ? AND status = 'PENDING'",
            (requested_date.isoformat(),),
        )
        return PendingRequests(
            individual=[request for request in requests if not request.is_group],
            groups=[request for request in requests if request.is_group],
        )

    def list_members_with_active_requests(
        self,
        member_ids: Iterable[int],
        requested_date: date,
    ) -> set[int]:
        """Members already entered, alone or in a group, for a date."""
        ids = sorted(set(member_ids))
        if not ids:
            return set()
        placeholders = ",".join("?" for _ in ids)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT DISTINCT m.member_id
                FROM LotteryRequestMembers AS m
                JOIN LotteryRequests AS r ON r.id = m.request_id
                WHERE r.requested_date = ?
                  AND r.status != 'CANCELLED'
                  AND m.member_id IN ({placeholders});
                """,
                (requested_date.isoformat(), *ids),
            )
            return {int(row["member_id"]) for row in cursor.fetchall()}

    def persist_assignment(
        self,
        request_id: int,
        slot_id: int,
        member_ids: Sequence[int],
        start_minute: int,
    ) -> bool:
        """Write the bookings and flip the request to ASSIGNED in one transaction.

        The status update is guarded on PENDING so a replayed call cannot book
        the same request twice. Returns False when nothing was written.
        """
        now = _utc_now()
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT slot_date FROM Slots WHERE id = ?;", (slot_id,))
            slot_row = cursor.fetchone()
            if slot_row is None:
                raise RuntimeError(f"Slot {slot_id} does not exist")
            booking_date = str(slot_row["slot_date"])
            cursor.execute(
                """
                UPDATE LotteryRequests
                SET status = 'ASSIGNED', assigned_slot_id = ?, processed_at = ?
                WHERE id = ? AND status = 'PENDING';
                """,
                (slot_id, now, request_id),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                logger.warning(
                    "Assignment not persisted | request_id=%s | reason=request not pending",
                    request_id,
                )
                return False
            cursor.executemany(
                """
                INSERT INTO Bookings (
                    slot_id, member_id, request_id, booking_date, start_minute, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                [
                    (slot_id, member_id, request_id, booking_date, start_minute, now)
                    for member_id in member_ids
                ],
            )
            conn.commit()
        return True

    def mark_request_status(
        self,
        request_id: int,
        status: RequestStatus,
        slot_id: Optional[int] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE LotteryRequests
                SET status = ?, assigned_slot_id = ?, processed_at = ?
                WHERE id = ?;
                """,
                (status.value, slot_id, _utc_now(), request_id),
            )
            conn.commit()

    def get_request_status(self, request_id: int) -> Optional[str]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT status FROM LotteryRequests WHERE id = ?;",
                (request_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return str(row["status"])

    # ------------------------------------------------------------------
    # Fairness
    # ------------------------------------------------------------------

    def get_fairness_record(self, member_id: int, period: str) -> Optional[FairnessRecord]:
        return self.list_fairness_records([member_id], period).get(member_id)

    def list_fairness_records(
        self,
        member_ids: Iterable[int],
        period: str,
    ) -> dict[int, FairnessRecord]:
        ids = sorted(set(member_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT
                    member_id,
                    period,
                    total_entries,
                    preferences_granted,
                    fulfillment_rate,
                    days_without_good_time,
                    fairness_score
                FROM FairnessRecords
                WHERE period = ? AND member_id IN ({placeholders});
                """,
                (period, *ids),
            )
            return {
                int(row["member_id"]): FairnessRecord(
                    member_id=int(row["member_id"]),
                    period=str(row["period"]),
                    total_entries=int(row["total_entries"]),
                    preferences_granted=int(row["preferences_granted"]),
                    fulfillment_rate=float(row["fulfillment_rate"]),
                    days_without_good_time=int(row["days_without_good_time"]),
                    fairness_score=int(row["fairness_score"]),
                )
                for row in cursor.fetchall()
            }

    def save_fairness_record(self, record: FairnessRecord) -> None:
        self.save_fairness_records([record])

    def save_fairness_records(self, records: Iterable[FairnessRecord]) -> None:
        rows = [
            (
                record.member_id,
                record.period,
                record.total_entries,
                record.preferences_granted,
                record.fulfillment_rate,
                record.days_without_good_time,
                record.fairness_score,
                _utc_now(),
            )
            for record in records
        ]
        if not rows:
            return
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO FairnessRecords (
                    member_id, period, total_entries, preferences_granted,
                    fulfillment_rate, days_without_good_time, fairness_score, last_updated
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(member_id, period) DO UPDATE SET
                    total_entries = excluded.total_entries,
                    preferences_granted = excluded.preferences_granted,
                    fulfillment_rate = excluded.fulfillment_rate,
                    days_without_good_time = excluded.days_without_good_time,
                    fairness_score = excluded.fairness_score,
                    last_updated = excluded.last_updated;
                """,
                rows,
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Processing audit log
    # ------------------------------------------------------------------

    def create_processing_run(
        self,
        *,
        lottery_date: date,
        total_requests: int,
        assigned_count: int,
        group_count: int,
        individual_count: int,
        violation_count: int,
        bookings_created: int,
    ) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO ProcessingRuns (
                    lottery_date, processed_at, total_requests, assigned_count,
                    group_count, individual_count, violation_count, bookings_created
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    lottery_date.isoformat(),
                    _utc_now(),
                    total_requests,
                    assigned_count,
                    group_count,
                    individual_count,
                    violation_count,
                    bookings_created,
                ),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def save_processing_entry_logs(
        self,
        run_id: int,
        entries: Iterable[ProcessingEntryLog],
    ) -> None:
        rows = [
            (
                run_id,
                entry.request_id,
                entry.entry_type,
                entry.preferred_window,
                entry.alternate_window,
                entry.outcome,
                entry.priority,
                entry.assigned_slot_id,
                entry.assigned_start_minute,
                entry.assignment_reason,
                int(entry.violated_restrictions),
                json.dumps(entry.restriction_details) if entry.restriction_details else None,
                entry.fairness_score_before,
                entry.fairness_score_after,
                None if entry.preference_granted is None else int(entry.preference_granted),
            )
            for entry in entries
        ]
        if not rows:
            return
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO ProcessingEntryLogs (
                    run_id, request_id, entry_type, preferred_window, alternate_window,
                    outcome, priority, assigned_slot_id, assigned_start_minute,
                    assignment_reason, violated_restrictions, restriction_details,
                    fairness_score_before, fairness_score_after, preference_granted
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                rows,
            )
            conn.commit()

    def list_processing_entry_logs(self, lottery_date: date) -> list[ProcessingEntryLog]:
        """Entry logs of the most recent run for a date."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT l.*
                FROM ProcessingEntryLogs AS l
                WHERE l.run_id = (
                    SELECT MAX(id) FROM ProcessingRuns WHERE lottery_date = ?
                )
                ORDER BY l.id ASC;
                """,
                (lottery_date.isoformat(),),
            )
            return [
                ProcessingEntryLog(
                    request_id=int(row["request_id"]),
                    entry_type=str(row["entry_type"]),
                    preferred_window=str(row["preferred_window"]),
                    alternate_window=row["alternate_window"],
                    outcome=str(row["outcome"]),
                    priority=float(row["priority"]),
                    assigned_slot_id=row["assigned_slot_id"],
                    assigned_start_minute=row["assigned_start_minute"],
                    assignment_reason=row["assignment_reason"],
                    violated_restrictions=bool(row["violated_restrictions"]),
                    restriction_details=(
                        json.loads(row["restriction_details"])
                        if row["restriction_details"]
                        else None
                    ),
                    fairness_score_before=row["fairness_score_before"],
                    fairness_score_after=row["fairness_score_after"],
                    preference_granted=(
                        None
                        if row["preference_granted"] is None
                        else bool(row["preference_granted"])
                    ),
                )
                for row in cursor.fetchall()
            ]

    def count_processing_runs(self) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM ProcessingRuns;")
            return int(cursor.fetchone()["count"])
