import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence
from uuid import uuid4

from repairmatch.models import ClientRequest, QuoteCandidate, TechnicianProfile, TimelineEvent

logger = logging.getLogger(__name__)


REQUEST_STATUSES = (
    "published",
    "matched",
    "quoted",
    "direct_sent",
    "selected",
    "scheduled",
    "in_progress",
    "completed",
    "cancelled",
)

TERMINAL_STATUSES = {"completed", "cancelled"}

ASSIGNED_STATUSES = {"selected", "scheduled", "in_progress", "completed"}

QUOTE_STATUSES = ("pending", "submitted", "accepted", "rejected")

CLEARED_TARGET = {
    "mode": "marketplace",
    "target_technician_id": None,
    "target_technician_name": None,
    "target_technician_phone": None,
    "direct_expires_at": None,
}

CLEARED_ASSIGNMENT = {
    "assigned_technician_id": None,
    "assigned_technician_name": None,
    "assigned_technician_phone": None,
    "selected_match_id": None,
}

_REQUEST_COLUMNS = {
    "id",
    "client_id",
    "title",
    "category",
    "address",
    "city",
    "description",
    "urgency",
    "preferred_window",
    "mode",
    "status",
    "radius_km",
    "location_lat",
    "location_lng",
    "target_technician_id",
    "target_technician_name",
    "target_technician_phone",
    "assigned_technician_id",
    "assigned_technician_name",
    "assigned_technician_phone",
    "direct_expires_at",
    "selected_match_id",
    "created_at",
    "updated_at",
}

_MATCH_COLUMNS = {
    "technician_name",
    "technician_phone",
    "technician_specialty",
    "technician_city",
    "technician_rating",
    "score",
    "quote_status",
    "price_ars",
    "eta_hours",
    "distance_km",
    "note",
}

_PROFILE_COLUMNS = (
    "id",
    "full_name",
    "business_name",
    "phone",
    "specialties",
    "city",
    "coverage_area",
    "address",
    "working_hours",
    "public_rating",
    "last_seen_at",
    "service_lat",
    "service_lng",
    "service_radius_km",
)


class RequestStoreError(ValueError):
    """Base class for user-visible request-store errors."""


class RequestValidationError(RequestStoreError):
    pass


class RequestNotFoundError(RequestStoreError):
    pass


class RequestConflictError(RequestStoreError):
    pass


class RequestPermissionError(RequestStoreError):
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class RequestStore:
    db_path: str
    seed_demo_data: bool = True
    clock: Callable[[], datetime] = field(default=utc_now)

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()
        if self.seed_demo_data:
            self._seed_if_needed()

    def now(self) -> datetime:
        return self.clock()

    def now_iso(self) -> str:
        return self.now().isoformat()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """One write-locked transaction; everything inside commits or nothing does."""
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error:
                conn.close()
                raise
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS client_requests (
                    id TEXT PRIMARY KEY,
                    client_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    category TEXT NOT NULL,
                    address TEXT NOT NULL,
                    city TEXT NOT NULL DEFAULT '',
                    description TEXT NOT NULL,
                    urgency TEXT NOT NULL DEFAULT 'media',
                    preferred_window TEXT NOT NULL DEFAULT '',
                    mode TEXT NOT NULL DEFAULT 'marketplace',
                    status TEXT NOT NULL,
                    radius_km REAL NOT NULL DEFAULT 20,
                    location_lat REAL,
                    location_lng REAL,
                    target_technician_id TEXT,
                    target_technician_name TEXT,
                    target_technician_phone TEXT,
                    assigned_technician_id TEXT,
                    assigned_technician_name TEXT,
                    assigned_technician_phone TEXT,
                    direct_expires_at TEXT,
                    selected_match_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS client_request_matches (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL,
                    technician_id TEXT NOT NULL,
                    technician_name TEXT NOT NULL,
                    technician_phone TEXT,
                    technician_specialty TEXT,
                    technician_city TEXT,
                    technician_rating REAL,
                    score REAL NOT NULL DEFAULT 0,
                    quote_status TEXT NOT NULL DEFAULT 'pending',
                    price_ars REAL,
                    eta_hours INTEGER,
                    distance_km REAL,
                    note TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (request_id, technician_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS client_request_events (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    label TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS technician_profiles (
                    id TEXT PRIMARY KEY,
                    full_name TEXT NOT NULL DEFAULT '',
                    business_name TEXT NOT NULL DEFAULT '',
                    phone TEXT NOT NULL DEFAULT '',
                    specialties TEXT NOT NULL DEFAULT '',
                    city TEXT NOT NULL DEFAULT '',
                    coverage_area TEXT NOT NULL DEFAULT '',
                    address TEXT NOT NULL DEFAULT '',
                    working_hours TEXT NOT NULL DEFAULT '',
                    public_rating REAL,
                    last_seen_at TEXT,
                    service_lat REAL,
                    service_lng REAL,
                    service_radius_km REAL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_client ON client_requests (client_id, updated_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_status ON client_requests (status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_matches_request ON client_request_matches (request_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_request ON client_request_events (request_id)")

    def _seed_if_needed(self) -> None:
        seed_technicians = [
            TechnicianProfile(
                id="tech_1",
                full_name="Lucia Fernandez",
                business_name="Electro Lucia",
                phone="+54 11 5555-0101",
                specialties="Electricidad, tableros y cableado",
                city="Buenos Aires",
                coverage_area="Palermo, Recoleta, Buenos Aires",
                address="Av. Santa Fe 3200, Buenos Aires",
                working_hours='{"weekday": {"from": "08:00", "to": "19:00"}, "saturday": {"enabled": true, "from": "09:00", "to": "13:00"}}',
                public_rating=4.8,
                last_seen_at="2026-01-10T12:00:00+00:00",
                service_lat=-34.5889,
                service_lng=-58.4306,
                service_radius_km=20,
            ),
            TechnicianProfile(
                id="tech_2",
                full_name="Martin Gomez",
                business_name="Plomeria Gomez",
                phone="+54 11 5555-0202",
                specialties="Plomería, sanitarios y cañerías",
                city="Buenos Aires",
                coverage_area="Caballito, Almagro, Buenos Aires",
                address="Av. Rivadavia 5000, Buenos Aires",
                working_hours="Lun a Vie 9:00 a 18:00, Sab 9:00 a 13:00",
                public_rating=4.5,
                last_seen_at="2026-01-12T15:30:00+00:00",
                service_lat=-34.6186,
                service_lng=-58.4420,
                service_radius_km=15,
            ),
            TechnicianProfile(
                id="tech_3",
                full_name="Sofia Herrera",
                business_name="Gas Seguro",
                phone="+54 11 5555-0303",
                specialties="Gas, calefacción",
                city="Buenos Aires",
                coverage_area="Belgrano, Nuñez, Buenos Aires",
                address="Av. Cabildo 2000, Buenos Aires",
                working_hours="",
                public_rating=4.2,
                last_seen_at="2026-01-08T09:00:00+00:00",
                service_lat=-34.5627,
                service_lng=-58.4583,
                service_radius_km=25,
            ),
            TechnicianProfile(
                id="tech_4",
                full_name="Diego Ramirez",
                business_name="Pinturas Ramirez",
                phone="",
                specialties="Pintura interior y exterior",
                city="La Plata",
                coverage_area="La Plata, Berisso",
                address="Calle 7 1200, La Plata",
                working_hours="Lunes a Viernes 8:00 a 17:00",
                public_rating=4.0,
                last_seen_at="2026-01-05T18:00:00+00:00",
                service_lat=-34.9205,
                service_lng=-57.9536,
                service_radius_km=30,
            ),
        ]
        with self.transaction() as conn:
            existing = conn.execute("SELECT COUNT(*) AS total FROM technician_profiles").fetchone()
            if existing and int(existing["total"]) > 0:
                return
            for profile in seed_technicians:
                self._write_technician_profile(conn, profile)
        logger.info("Seeded %s demo technician profiles", len(seed_technicians))

    # -- technician profiles -------------------------------------------------

    def _write_technician_profile(self, conn: sqlite3.Connection, profile: TechnicianProfile) -> None:
        values = profile.model_dump(include=set(_PROFILE_COLUMNS))
        columns = ", ".join(_PROFILE_COLUMNS)
        placeholders = ", ".join("?" for _ in _PROFILE_COLUMNS)
        updates = ", ".join(f"{column} = excluded.{column}" for column in _PROFILE_COLUMNS if column != "id")
        conn.execute(
            f"""
            INSERT INTO technician_profiles ({columns}) VALUES ({placeholders})
            ON CONFLICT (id) DO UPDATE SET {updates}
            """,
            tuple(values[column] for column in _PROFILE_COLUMNS),
        )

    def save_technician_profile(self, profile: TechnicianProfile) -> TechnicianProfile:
        with self.transaction() as conn:
            self._write_technician_profile(conn, profile)
            saved = self.load_technician_profile(conn, profile.id)
        if saved is None:
            raise RequestNotFoundError("Technician profile not found after save")
        return saved

    def _profile_from_row(self, row: sqlite3.Row) -> TechnicianProfile:
        return TechnicianProfile(**{column: row[column] for column in _PROFILE_COLUMNS})

    def load_technician_profile(self, conn: sqlite3.Connection, technician_id: str) -> Optional[TechnicianProfile]:
        row = conn.execute("SELECT * FROM technician_profiles WHERE id = ?", (technician_id,)).fetchone()
        return self._profile_from_row(row) if row else None

    def get_technician_profile(self, technician_id: str) -> Optional[TechnicianProfile]:
        with self.transaction() as conn:
            return self.load_technician_profile(conn, technician_id)

    def list_technician_profiles(
        self,
        conn: sqlite3.Connection,
        *,
        exclude_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[TechnicianProfile]:
        rows = conn.execute(
            "SELECT * FROM technician_profiles WHERE id != ? ORDER BY id ASC LIMIT ?",
            (exclude_id or "", limit),
        ).fetchall()
        return [self._profile_from_row(row) for row in rows]

    def update_technician_location(
        self,
        conn: sqlite3.Connection,
        technician_id: str,
        *,
        lat: float,
        lng: float,
        coverage_area: Optional[str] = None,
    ) -> None:
        if coverage_area is None:
            conn.execute(
                "UPDATE technician_profiles SET service_lat = ?, service_lng = ? WHERE id = ?",
                (lat, lng, technician_id),
            )
            return
        conn.execute(
            "UPDATE technician_profiles SET service_lat = ?, service_lng = ?, coverage_area = ? WHERE id = ?",
            (lat, lng, coverage_area, technician_id),
        )

    # -- requests ------------------------------------------------------------

    def insert_request(self, conn: sqlite3.Connection, values: Dict[str, Any]) -> str:
        unknown = set(values) - _REQUEST_COLUMNS
        if unknown:
            raise ValueError(f"Unknown request columns: {sorted(unknown)}")
        row = dict(values)
        row.setdefault("id", f"req_{uuid4().hex[:10]}")
        now_iso = self.now_iso()
        row.setdefault("created_at", now_iso)
        row.setdefault("updated_at", now_iso)
        columns = list(row)
        conn.execute(
            f"INSERT INTO client_requests ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            tuple(row[column] for column in columns),
        )
        return str(row["id"])

    def load_request_row(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        client_id: Optional[str] = None,
    ) -> sqlite3.Row:
        if client_id is None:
            row = conn.execute("SELECT * FROM client_requests WHERE id = ?", (request_id,)).fetchone()
        else:
            row = conn.execute(
                "SELECT * FROM client_requests WHERE id = ? AND client_id = ?",
                (request_id, client_id),
            ).fetchone()
        if not row:
            raise RequestNotFoundError("Request not found")
        return row

    def list_request_rows(
        self,
        conn: sqlite3.Connection,
        *,
        client_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        order_by: str = "updated_at",
        limit: Optional[int] = None,
    ) -> List[sqlite3.Row]:
        if order_by not in {"updated_at", "created_at"}:
            raise ValueError(f"Unsupported request ordering: {order_by}")
        clauses: List[str] = []
        params: List[Any] = []
        if client_id is not None:
            clauses.append("client_id = ?")
            params.append(client_id)
        if statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        sql = "SELECT * FROM client_requests"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {order_by} DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return conn.execute(sql, tuple(params)).fetchall()

    def update_request(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        values: Dict[str, Any],
        *,
        expected_status: Optional[str] = None,
        touch: bool = True,
    ) -> None:
        """Apply ``values`` to one request.

        With ``expected_status`` the write only lands while the row still holds
        that status; otherwise a conflict is raised and the caller's
        transaction rolls back.
        """
        payload = dict(values)
        unknown = set(payload) - _REQUEST_COLUMNS
        if unknown or "id" in payload:
            raise ValueError(f"Unknown request columns: {sorted(unknown | ({'id'} & set(payload)))}")
        if touch:
            payload["updated_at"] = self.now_iso()
        if not payload:
            return
        assignments = ", ".join(f"{column} = ?" for column in payload)
        params: List[Any] = list(payload.values())
        sql = f"UPDATE client_requests SET {assignments} WHERE id = ?"
        params.append(request_id)
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status)
        cursor = conn.execute(sql, tuple(params))
        if cursor.rowcount:
            return
        exists = conn.execute("SELECT status FROM client_requests WHERE id = ?", (request_id,)).fetchone()
        if not exists:
            raise RequestNotFoundError("Request not found")
        raise RequestConflictError(
            f"Request status changed from {expected_status} to {exists['status']}; reload and retry"
        )

    def transition_request(
        self,
        conn: sqlite3.Connection,
        row: sqlite3.Row,
        next_status: str,
        values: Optional[Dict[str, Any]] = None,
        *,
        actor_id: str,
        label: str,
    ) -> None:
        """Move a request to ``next_status`` and append its timeline event.

        Keeps the row invariants: the direct expiry only survives in
        ``direct_sent`` and assignment fields only survive in the assigned
        statuses. The write is conditional on the status ``row`` was read with.
        """
        if next_status not in REQUEST_STATUSES:
            raise RequestValidationError(f"Unknown status: {next_status}")
        payload = dict(values or {})
        payload["status"] = next_status
        if next_status != "direct_sent":
            payload["direct_expires_at"] = None
        if next_status in ASSIGNED_STATUSES:
            assigned = payload.get("assigned_technician_id", row["assigned_technician_id"])
            if not assigned:
                raise RequestValidationError("A technician must be assigned before this status")
        else:
            payload.update(CLEARED_ASSIGNMENT)
        self.update_request(conn, str(row["id"]), payload, expected_status=str(row["status"]))
        self.insert_event(conn, str(row["id"]), actor_id, label)
        logger.info("request %s: %s -> %s", row["id"], row["status"], next_status)

    # -- matches -------------------------------------------------------------

    def list_match_rows(self, conn: sqlite3.Connection, request_ids: Sequence[str]) -> List[sqlite3.Row]:
        if not request_ids:
            return []
        placeholders = ", ".join("?" for _ in request_ids)
        return conn.execute(
            f"""
            SELECT *
            FROM client_request_matches
            WHERE request_id IN ({placeholders})
            ORDER BY score DESC, rowid ASC
            """,
            tuple(request_ids),
        ).fetchall()

    def load_match_row(self, conn: sqlite3.Connection, match_id: str, request_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT * FROM client_request_matches WHERE id = ? AND request_id = ?",
            (match_id, request_id),
        ).fetchone()
        if not row:
            raise RequestNotFoundError("Match not found for this request")
        return row

    def insert_matches_if_absent(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        candidates: Sequence[Dict[str, Any]],
    ) -> int:
        """Insert candidate rows; an existing (request, technician) pair is kept as is."""
        now_iso = self.now_iso()
        inserted = 0
        for candidate in candidates:
            cursor = conn.execute(
                """
                INSERT INTO client_request_matches (
                    id, request_id, technician_id, technician_name, technician_phone, technician_specialty,
                    technician_city, technician_rating, score, quote_status, price_ars, eta_hours, distance_km,
                    note, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', NULL, NULL, ?, '', ?, ?)
                ON CONFLICT (request_id, technician_id) DO NOTHING
                """,
                (
                    f"mt_{uuid4().hex[:10]}",
                    request_id,
                    candidate["technician_id"],
                    candidate["technician_name"],
                    candidate.get("technician_phone"),
                    candidate.get("technician_specialty"),
                    candidate.get("technician_city"),
                    candidate.get("technician_rating"),
                    float(candidate.get("score") or 0),
                    candidate.get("distance_km"),
                    now_iso,
                    now_iso,
                ),
            )
            inserted += cursor.rowcount
        return inserted

    def upsert_submitted_offer(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        values: Dict[str, Any],
    ) -> sqlite3.Row:
        now_iso = self.now_iso()
        conn.execute(
            """
            INSERT INTO client_request_matches (
                id, request_id, technician_id, technician_name, technician_phone, technician_specialty,
                technician_city, technician_rating, score, quote_status, price_ars, eta_hours, distance_km,
                note, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 'submitted', ?, ?, NULL, ?, ?, ?)
            ON CONFLICT (request_id, technician_id) DO UPDATE SET
                technician_name = excluded.technician_name,
                technician_phone = excluded.technician_phone,
                technician_specialty = excluded.technician_specialty,
                technician_city = excluded.technician_city,
                quote_status = 'submitted',
                price_ars = excluded.price_ars,
                eta_hours = excluded.eta_hours,
                note = excluded.note,
                updated_at = excluded.updated_at
            """,
            (
                f"mt_{uuid4().hex[:10]}",
                request_id,
                values["technician_id"],
                values["technician_name"],
                values.get("technician_phone"),
                values.get("technician_specialty"),
                values.get("technician_city"),
                values.get("technician_rating"),
                values["price_ars"],
                values["eta_hours"],
                values.get("note") or "",
                now_iso,
                now_iso,
            ),
        )
        return conn.execute(
            "SELECT * FROM client_request_matches WHERE request_id = ? AND technician_id = ?",
            (request_id, values["technician_id"]),
        ).fetchone()

    def update_match(
        self,
        conn: sqlite3.Connection,
        match_id: str,
        values: Dict[str, Any],
        *,
        expected_status: Optional[str] = None,
    ) -> None:
        unknown = set(values) - _MATCH_COLUMNS
        if unknown:
            raise ValueError(f"Unknown match columns: {sorted(unknown)}")
        payload = dict(values)
        payload["updated_at"] = self.now_iso()
        assignments = ", ".join(f"{column} = ?" for column in payload)
        params: List[Any] = list(payload.values())
        sql = f"UPDATE client_request_matches SET {assignments} WHERE id = ?"
        params.append(match_id)
        if expected_status is not None:
            sql += " AND quote_status = ?"
            params.append(expected_status)
        cursor = conn.execute(sql, tuple(params))
        if not cursor.rowcount:
            raise RequestConflictError("Quote changed concurrently; reload and retry")

    def reject_submitted_siblings(self, conn: sqlite3.Connection, request_id: str, keep_match_id: str) -> int:
        cursor = conn.execute(
            """
            UPDATE client_request_matches
            SET quote_status = 'rejected', updated_at = ?
            WHERE request_id = ? AND id != ? AND quote_status IN ('submitted', 'accepted')
            """,
            (self.now_iso(), request_id, keep_match_id),
        )
        return cursor.rowcount

    def count_quote_statuses(self, conn: sqlite3.Connection, request_id: str) -> Dict[str, int]:
        rows = conn.execute(
            """
            SELECT quote_status, COUNT(*) AS total
            FROM client_request_matches
            WHERE request_id = ?
            GROUP BY quote_status
            """,
            (request_id,),
        ).fetchall()
        return {str(row["quote_status"]): int(row["total"]) for row in rows}

    # -- timeline ------------------------------------------------------------

    def insert_event(self, conn: sqlite3.Connection, request_id: str, actor_id: str, label: str) -> None:
        conn.execute(
            """
            INSERT INTO client_request_events (id, request_id, actor_id, label, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (f"evt_{uuid4().hex[:10]}", request_id, actor_id, label, self.now_iso()),
        )

    def list_event_rows(self, conn: sqlite3.Connection, request_ids: Sequence[str]) -> List[sqlite3.Row]:
        if not request_ids:
            return []
        placeholders = ", ".join("?" for _ in request_ids)
        # rowid keeps insertion order for events written within the same instant.
        return conn.execute(
            f"""
            SELECT *
            FROM client_request_events
            WHERE request_id IN ({placeholders})
            ORDER BY created_at DESC, rowid DESC
            """,
            tuple(request_ids),
        ).fetchall()

    # -- row mapping ---------------------------------------------------------

    def match_from_row(self, row: sqlite3.Row) -> QuoteCandidate:
        return QuoteCandidate(
            id=row["id"],
            request_id=row["request_id"],
            technician_id=row["technician_id"],
            technician_name=row["technician_name"] or "Tecnico",
            technician_phone=row["technician_phone"],
            specialty=row["technician_specialty"],
            city=row["technician_city"],
            score=float(row["score"] or 0),
            quote_status=row["quote_status"],
            price_ars=row["price_ars"],
            eta_hours=row["eta_hours"],
            rating=row["technician_rating"],
            distance_km=row["distance_km"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def event_from_row(self, row: sqlite3.Row) -> TimelineEvent:
        return TimelineEvent(
            id=row["id"],
            request_id=row["request_id"],
            actor_id=row["actor_id"],
            label=row["label"],
            created_at=row["created_at"],
        )

    def request_from_row(
        self,
        row: sqlite3.Row,
        quotes: Optional[List[QuoteCandidate]] = None,
        timeline: Optional[List[TimelineEvent]] = None,
    ) -> ClientRequest:
        status = row["status"] if row["status"] in REQUEST_STATUSES else "published"
        return ClientRequest(
            id=row["id"],
            client_id=row["client_id"],
            title=row["title"],
            category=row["category"],
            address=row["address"],
            city=row["city"] or "",
            description=row["description"],
            urgency=row["urgency"],
            preferred_window=row["preferred_window"] or "",
            mode=row["mode"],
            status=status,
            radius_km=float(row["radius_km"]),
            location_lat=row["location_lat"],
            location_lng=row["location_lng"],
            target_technician_id=row["target_technician_id"],
            target_technician_name=row["target_technician_name"],
            target_technician_phone=row["target_technician_phone"],
            assigned_technician_id=row["assigned_technician_id"],
            assigned_technician_name=row["assigned_technician_name"],
            assigned_technician_phone=row["assigned_technician_phone"],
            direct_expires_at=row["direct_expires_at"],
            selected_match_id=row["selected_match_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            quotes=quotes or [],
            timeline=timeline or [],
        )

    def hydrate_requests(self, conn: sqlite3.Connection, rows: Sequence[sqlite3.Row]) -> List[ClientRequest]:
        request_ids = [str(row["id"]) for row in rows]
        quotes: Dict[str, List[QuoteCandidate]] = {}
        for match_row in self.list_match_rows(conn, request_ids):
            quotes.setdefault(str(match_row["request_id"]), []).append(self.match_from_row(match_row))
        timeline: Dict[str, List[TimelineEvent]] = {}
        for event_row in self.list_event_rows(conn, request_ids):
            timeline.setdefault(str(event_row["request_id"]), []).append(self.event_from_row(event_row))
        return [
            self.request_from_row(row, quotes.get(str(row["id"]), []), timeline.get(str(row["id"]), []))
            for row in rows
        ]

    def get_request(self, request_id: str, client_id: Optional[str] = None) -> ClientRequest:
        with self.transaction() as conn:
            row = self.load_request_row(conn, request_id, client_id)
            return self.hydrate_requests(conn, [row])[0]


default_db = str(Path(__file__).resolve().parents[2] / "data" / "requests.sqlite3")
request_store = RequestStore(db_path=os.getenv("REQUESTS_DB_PATH", default_db))
