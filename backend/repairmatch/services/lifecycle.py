"""Request status state machine.

    published ─┬─> matched ─> quoted ─┐
               │                      ├─> selected ─> scheduled ─> in_progress ─> completed
    direct_sent┴──────────────────────┘
    (any non-terminal) ─> cancelled

Every action runs in one store transaction, writes the status conditionally
on the status it read and appends exactly one timeline event.
"""

import logging
import sqlite3
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from repairmatch.env import env_int
from repairmatch.models import (
    ClientRequest,
    ClientRequestCreate,
    ClientWorkspaceSnapshot,
    KnownTechnician,
    QuoteCandidate,
    RequestActionPayload,
)
from repairmatch.services.geo import (
    DEFAULT_MATCH_LIMIT,
    BackfillScoring,
    CreationTimeScoring,
    ScoredCandidate,
    normalize_radius,
    rank_candidates,
    technician_city,
    to_finite_number,
)
from repairmatch.services.geocoder import NominatimGeocoder, geocoder
from repairmatch.services.negotiation import NEGOTIABLE_STATUSES, QuoteNegotiationHandler, negotiation_handler
from repairmatch.services.request_store import (
    CLEARED_TARGET,
    REQUEST_STATUSES,
    TERMINAL_STATUSES,
    RequestStore,
    RequestValidationError,
    request_store,
)
from repairmatch.services.working_hours import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)

DIRECT_OFFER_TIMEOUT_MINUTES = env_int("DIRECT_OFFER_TIMEOUT_MINUTES", 20)

REQUEST_MODES = {"marketplace", "direct"}
URGENCY_LEVELS = {"baja", "media", "alta"}

ADVANCE_LADDER = {
    "selected": ("scheduled", "Job scheduled."),
    "scheduled": ("in_progress", "Job started."),
    "in_progress": ("completed", "Job completed."),
}

# Edges reachable through the named actions; set_status may only use these.
ALLOWED_TRANSITIONS: Dict[str, set[str]] = {
    "published": {"matched", "quoted", "selected", "cancelled"},
    "matched": {"published", "quoted", "selected", "cancelled"},
    "quoted": {"published", "matched", "selected", "cancelled"},
    "direct_sent": {"published", "quoted", "selected", "cancelled"},
    "selected": {"published", "matched", "quoted", "scheduled", "cancelled"},
    "scheduled": {"published", "in_progress", "cancelled"},
    "in_progress": {"published", "completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

# Statuses where backfilling more candidates still makes sense.
MATCHABLE_STATUSES = ("published", "matched", "quoted")

OPEN_MARKETPLACE_LABEL = "Request opened to the marketplace."
DIRECT_EXPIRED_LABEL = "Direct invitation expired. Request opened to the marketplace."
DIRECT_REJECTED_LABEL = "Direct invitation declined. Request opened to the marketplace."
MATCHES_FOUND_LABEL = "Compatible technicians found by trade and area."
NO_MATCHES_LABEL = "No compatible technicians found this round."


def _clean(value: Optional[str]) -> str:
    return str(value or "").strip()


class RequestLifecycleController:
    def __init__(
        self,
        store: RequestStore,
        negotiation: Optional[QuoteNegotiationHandler] = None,
        geocoder: Optional[NominatimGeocoder] = None,
        direct_timeout_minutes: int = DIRECT_OFFER_TIMEOUT_MINUTES,
        tz_name: str = DEFAULT_TIMEZONE,
    ):
        self.store = store
        self.negotiation = negotiation or QuoteNegotiationHandler(store)
        self.geocoder = geocoder
        self.direct_timeout = timedelta(minutes=direct_timeout_minutes)
        self.tz_name = tz_name
        self._actions: Dict[str, Callable[[str, str, RequestActionPayload], None]] = {
            "open_marketplace": lambda rid, cid, p: self.open_marketplace(rid, cid),
            "direct_accepted": lambda rid, cid, p: self.direct_accepted(rid, cid),
            "direct_rejected": lambda rid, cid, p: self.direct_rejected(rid, cid),
            "ensure_matches": lambda rid, cid, p: self.ensure_matches(rid, cid, p.limit or DEFAULT_MATCH_LIMIT),
            "select_match": lambda rid, cid, p: self.select_match(rid, cid, p.match_id),
            "quote_accept": lambda rid, cid, p: self.negotiation.quote_accept(rid, cid, p.match_id),
            "quote_reject": lambda rid, cid, p: self.negotiation.quote_reject(rid, cid, p.match_id, p.reason),
            "counter_offer": lambda rid, cid, p: self.negotiation.counter_offer(
                rid, cid, p.match_id, p.price_ars, p.eta_hours, p.note
            ),
            "advance": lambda rid, cid, p: self.advance(rid, cid),
            "cancel": lambda rid, cid, p: self.cancel(rid, cid),
            "set_status": lambda rid, cid, p: self.set_status(rid, cid, p.status),
        }

    @property
    def supported_actions(self) -> List[str]:
        return sorted(self._actions)

    # -- creation ------------------------------------------------------------

    def _resolve_coordinates(
        self,
        payload: ClientRequestCreate,
        address: str,
        city: str,
    ) -> Tuple[Optional[float], Optional[float]]:
        lat = to_finite_number(payload.location_lat)
        lng = to_finite_number(payload.location_lng)
        if lat is not None and lng is not None:
            return lat, lng
        if self.geocoder is None:
            return None, None
        result = self.geocoder.geocode_first_result(", ".join(part for part in (address, city) if part))
        if result is None:
            return None, None
        return result.lat, result.lng

    def create_request(self, client_id: str, payload: ClientRequestCreate) -> Tuple[ClientRequest, List[QuoteCandidate]]:
        title = _clean(payload.title)
        category = _clean(payload.category)
        address = _clean(payload.address)
        city = _clean(payload.city)
        description = _clean(payload.description)
        mode = _clean(payload.mode).lower() or "marketplace"
        urgency = _clean(payload.urgency).lower() or "media"
        target_id = _clean(payload.target_technician_id)

        if not title or not category or not address or not description:
            raise RequestValidationError("Title, category, address and description are required")
        if mode not in REQUEST_MODES:
            raise RequestValidationError("Invalid mode. Allowed: marketplace, direct")
        if urgency not in URGENCY_LEVELS:
            raise RequestValidationError("Invalid urgency. Allowed: baja, media, alta")
        if mode == "direct" and not target_id:
            raise RequestValidationError("Pick a technician for a direct request")
        if mode == "direct" and target_id == client_id:
            raise RequestValidationError("A direct request cannot target yourself")

        radius_km = normalize_radius(payload.radius_km)
        # Geocoding is network I/O; resolve before taking the store lock.
        lat, lng = self._resolve_coordinates(payload, address, city)
        now = self.store.now()

        with self.store.transaction() as conn:
            values = {
                "client_id": client_id,
                "title": title,
                "category": category,
                "address": address,
                "city": city,
                "description": description,
                "urgency": urgency,
                "preferred_window": _clean(payload.preferred_window),
                "mode": mode,
                "radius_km": radius_km,
                "location_lat": lat,
                "location_lng": lng,
            }
            if mode == "direct":
                target = self.store.load_technician_profile(conn, target_id)
                if target is None:
                    raise RequestValidationError("Selected technician not found")
                values.update(
                    {
                        "status": "direct_sent",
                        "target_technician_id": target.id,
                        "target_technician_name": target.display_name,
                        "target_technician_phone": target.phone.strip() or None,
                        "direct_expires_at": (now + self.direct_timeout).isoformat(),
                    }
                )
                label = f"Direct request sent to {target.display_name}."
            else:
                values["status"] = "published"
                label = "Request published to the marketplace."

            request_id = self.store.insert_request(conn, values)
            self.store.insert_event(conn, request_id, client_id, label)

            if mode == "marketplace" and lat is not None and lng is not None:
                strategy = CreationTimeScoring(
                    request_lat=lat,
                    request_lng=lng,
                    request_radius_km=radius_km,
                    urgency=urgency,
                    now=now,
                    tz_name=self.tz_name,
                )
                ranked = rank_candidates(
                    strategy,
                    self.store.list_technician_profiles(conn, exclude_id=client_id),
                    DEFAULT_MATCH_LIMIT,
                )
                logger.info("%s scoring ranked %d technician(s) for %s", strategy.name, len(ranked), request_id)
                if ranked:
                    self.store.insert_matches_if_absent(conn, request_id, self._match_rows(ranked, category))
                    self.store.insert_event(
                        conn,
                        request_id,
                        client_id,
                        f"{len(ranked)} nearby technician(s) ranked within {radius_km:g} km.",
                    )

            row = self.store.load_request_row(conn, request_id)
            request = self.store.hydrate_requests(conn, [row])[0]
        logger.info("request %s created by %s in %s mode with %s match(es)", request.id, client_id, mode, len(request.quotes))
        return request, request.quotes

    def _match_rows(self, ranked: List[ScoredCandidate], category: str) -> List[Dict[str, object]]:
        return [
            {
                "technician_id": candidate.profile.id,
                "technician_name": candidate.profile.display_name,
                "technician_phone": candidate.profile.phone.strip() or None,
                "technician_specialty": candidate.profile.specialties.strip() or category or "General",
                "technician_city": technician_city(candidate.profile) or None,
                "technician_rating": candidate.profile.public_rating,
                "score": candidate.score,
                "distance_km": candidate.distance_km,
            }
            for candidate in ranked
        ]

    # -- actions -------------------------------------------------------------

    def apply_action(self, request_id: str, client_id: str, payload: RequestActionPayload) -> None:
        action = _clean(payload.action)
        if not action:
            raise RequestValidationError("Action is required")
        handler = self._actions.get(action)
        if handler is None:
            raise RequestValidationError(f"Unsupported action. Allowed: {', '.join(self.supported_actions)}")
        handler(request_id, client_id, payload)

    def _load_open(self, conn: sqlite3.Connection, request_id: str, client_id: str) -> sqlite3.Row:
        row = self.store.load_request_row(conn, request_id, client_id)
        if str(row["status"]) in TERMINAL_STATUSES:
            raise RequestValidationError("The request is already closed")
        return row

    def open_marketplace(self, request_id: str, client_id: str, label: str = OPEN_MARKETPLACE_LABEL) -> None:
        with self.store.transaction() as conn:
            row = self._load_open(conn, request_id, client_id)
            self.store.transition_request(conn, row, "published", CLEARED_TARGET, actor_id=client_id, label=label)

    def direct_rejected(self, request_id: str, client_id: str) -> None:
        self.open_marketplace(request_id, client_id, label=DIRECT_REJECTED_LABEL)

    def direct_accepted(self, request_id: str, client_id: str) -> None:
        with self.store.transaction() as conn:
            row = self.store.load_request_row(conn, request_id, client_id)
            if row["status"] != "direct_sent":
                raise RequestValidationError("The request is not waiting on a direct invitation")
            name = row["target_technician_name"] or "Tecnico"
            self.store.transition_request(
                conn,
                row,
                "selected",
                {
                    "assigned_technician_id": row["target_technician_id"],
                    "assigned_technician_name": row["target_technician_name"],
                    "assigned_technician_phone": row["target_technician_phone"],
                },
                actor_id=client_id,
                label=f"Direct request accepted by {name}.",
            )

    def ensure_matches(self, request_id: str, client_id: str, limit: int = DEFAULT_MATCH_LIMIT) -> List[QuoteCandidate]:
        with self.store.transaction() as conn:
            row = self._load_open(conn, request_id, client_id)
            if row["mode"] != "marketplace":
                raise RequestValidationError("Direct requests must be opened to the marketplace before matching")
            if str(row["status"]) not in MATCHABLE_STATUSES:
                raise RequestValidationError(f"Matches cannot be generated while the request is {row['status']}")
            existing = self.store.list_match_rows(conn, [request_id])
            inserted = 0
            if not existing:
                strategy = BackfillScoring(category=row["category"], city=row["city"], address=row["address"])
                ranked = rank_candidates(
                    strategy,
                    self.store.list_technician_profiles(conn, exclude_id=client_id),
                    limit,
                )
                inserted = self.store.insert_matches_if_absent(conn, request_id, self._match_rows(ranked, row["category"]))
                logger.info("%s scoring added %d match(es) to %s", strategy.name, inserted, request_id)
            match_rows = existing or self.store.list_match_rows(conn, [request_id])

            if not match_rows:
                # Touching updated_at restarts the watchdog delay before the next round.
                self.store.update_request(conn, request_id, {}, expected_status=str(row["status"]))
                self.store.insert_event(conn, request_id, client_id, NO_MATCHES_LABEL)
            elif row["status"] == "published":
                self.store.transition_request(conn, row, "matched", actor_id=client_id, label=MATCHES_FOUND_LABEL)
            elif inserted:
                self.store.insert_event(conn, request_id, client_id, MATCHES_FOUND_LABEL)
        return [self.store.match_from_row(match_row) for match_row in match_rows]

    def select_match(self, request_id: str, client_id: str, match_id: Optional[str]) -> None:
        if not _clean(match_id):
            raise RequestValidationError("matchId is required")
        with self.store.transaction() as conn:
            row = self.store.load_request_row(conn, request_id, client_id)
            if str(row["status"]) not in NEGOTIABLE_STATUSES:
                raise RequestValidationError(f"A technician cannot be selected while the request is {row['status']}")
            match = self.store.load_match_row(conn, str(match_id), request_id)
            name = match["technician_name"] or "Tecnico"
            self.store.transition_request(
                conn,
                row,
                "selected",
                {
                    "selected_match_id": match["id"],
                    "assigned_technician_id": match["technician_id"],
                    "assigned_technician_name": name,
                    "assigned_technician_phone": match["technician_phone"],
                },
                actor_id=client_id,
                label=f"Technician selected: {name}.",
            )

    def advance(self, request_id: str, client_id: str) -> str:
        with self.store.transaction() as conn:
            row = self.store.load_request_row(conn, request_id, client_id)
            step = ADVANCE_LADDER.get(str(row["status"]))
            if step is None:
                raise RequestValidationError(f"The request cannot advance from {row['status']}")
            next_status, label = step
            self.store.transition_request(conn, row, next_status, actor_id=client_id, label=label)
        return next_status

    def cancel(self, request_id: str, client_id: str) -> None:
        with self.store.transaction() as conn:
            row = self._load_open(conn, request_id, client_id)
            self.store.transition_request(
                conn,
                row,
                "cancelled",
                actor_id=client_id,
                label="Request cancelled by the client.",
            )

    def set_status(self, request_id: str, client_id: str, status: Optional[str]) -> None:
        next_status = _clean(status)
        if next_status not in REQUEST_STATUSES:
            raise RequestValidationError("Invalid status")
        with self.store.transaction() as conn:
            row = self.store.load_request_row(conn, request_id, client_id)
            current = str(row["status"])
            if next_status not in ALLOWED_TRANSITIONS.get(current, set()):
                raise RequestValidationError(f"Invalid status transition: {current} -> {next_status}")
            values = CLEARED_TARGET if next_status == "published" else None
            self.store.transition_request(
                conn,
                row,
                next_status,
                values,
                actor_id=client_id,
                label=f"Status updated to {next_status}.",
            )

    # -- reads ---------------------------------------------------------------

    def workspace_snapshot(self, client_id: str) -> ClientWorkspaceSnapshot:
        with self.store.transaction() as conn:
            rows = self.store.list_request_rows(conn, client_id=client_id)
            requests = self.store.hydrate_requests(conn, rows)
        return ClientWorkspaceSnapshot(requests=requests, known_technicians=build_known_technicians(requests))


def build_known_technicians(requests: List[ClientRequest]) -> List[KnownTechnician]:
    seen: set[str] = set()
    result: List[KnownTechnician] = []
    for request in requests:
        candidates = (
            (request.assigned_technician_id, request.assigned_technician_name, request.assigned_technician_phone),
            (request.target_technician_id, request.target_technician_name, request.target_technician_phone),
        )
        for technician_id, name, phone in candidates:
            if not technician_id or not name or not phone or technician_id in seen:
                continue
            seen.add(technician_id)
            result.append(
                KnownTechnician(
                    id=technician_id,
                    name=name,
                    phone=phone,
                    specialty=request.category or "General",
                    last_job_at=request.updated_at,
                )
            )
    return result


lifecycle_controller = RequestLifecycleController(
    store=request_store,
    negotiation=negotiation_handler,
    geocoder=geocoder,
)
