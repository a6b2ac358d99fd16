"""Per-candidate quote negotiation.

Each match moves ``pending -> submitted -> accepted | rejected``; a counter
offer puts it back to ``submitted``. Every change recomputes the parent
request status inside the same store transaction, so accepting one quote and
rejecting its siblings is observed all at once.
"""

import logging
import math
import sqlite3
from typing import Any, Optional, Tuple

from repairmatch.models import QuoteCandidate
from repairmatch.services.geo import technician_city
from repairmatch.services.request_store import (
    RequestConflictError,
    RequestNotFoundError,
    RequestPermissionError,
    RequestStore,
    RequestValidationError,
    request_store,
)

logger = logging.getLogger(__name__)

MIN_ETA_HOURS = 1
MAX_ETA_HOURS = 720

NEGOTIABLE_STATUSES = {"published", "matched", "quoted", "direct_sent", "selected"}
OFFER_OPEN_STATUSES = {"published", "matched", "quoted", "direct_sent"}


def parse_price_ars(value: Any) -> Optional[float]:
    """Accept numbers or Argentine formatted text such as ``"15.000,50"``."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        parsed = float(value)
    else:
        normalized = "".join(str(value).split()).replace("$", "").replace(".", "").replace(",", ".", 1)
        try:
            parsed = float(normalized)
        except ValueError:
            return None
    return parsed if math.isfinite(parsed) else None


def parse_eta_hours(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        parsed = float(str(value).strip().replace(",", ".")) if isinstance(value, str) else float(value)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def validate_offer_terms(price: Any, eta: Any) -> Tuple[float, int]:
    parsed_price = parse_price_ars(price)
    if parsed_price is None or parsed_price <= 0:
        raise RequestValidationError("Enter a valid price in ARS greater than zero")
    parsed_eta = parse_eta_hours(eta)
    if parsed_eta is None or parsed_eta < MIN_ETA_HOURS or parsed_eta > MAX_ETA_HOURS:
        raise RequestValidationError(f"ETA must be between {MIN_ETA_HOURS} and {MAX_ETA_HOURS} hours")
    eta_hours = max(MIN_ETA_HOURS, min(MAX_ETA_HOURS, int(round(parsed_eta))))
    return round(parsed_price, 2), eta_hours


def format_ars(value: float) -> str:
    if float(value).is_integer():
        text = f"{int(value):,}"
    else:
        text = f"{value:,.2f}".rstrip("0").rstrip(".")
    return "$" + text.replace(",", "_").replace(".", ",").replace("_", ".")


def _terms_suffix(price: Optional[float], eta: Optional[int]) -> str:
    parts = []
    if price is not None:
        parts.append(format_ars(price))
    if eta is not None:
        parts.append(f"ETA {eta} h")
    return ": " + " - ".join(parts) if parts else ""


class QuoteNegotiationHandler:
    def __init__(self, store: RequestStore):
        self.store = store

    def _load_negotiable(self, conn: sqlite3.Connection, request_id: str, client_id: str) -> sqlite3.Row:
        row = self.store.load_request_row(conn, request_id, client_id)
        if str(row["status"]) not in NEGOTIABLE_STATUSES:
            raise RequestValidationError(f"Quotes cannot change while the request is {row['status']}")
        return row

    def refresh_request_status_from_quotes(
        self,
        conn: sqlite3.Connection,
        row: sqlite3.Row,
        *,
        actor_id: str,
        label: str,
    ) -> str:
        counts = self.store.count_quote_statuses(conn, str(row["id"]))
        next_status = "quoted" if counts.get("submitted", 0) > 0 else "matched"
        self.store.transition_request(conn, row, next_status, actor_id=actor_id, label=label)
        return next_status

    def quote_accept(self, request_id: str, client_id: str, match_id: Optional[str]) -> QuoteCandidate:
        if not match_id:
            raise RequestValidationError("matchId is required")
        with self.store.transaction() as conn:
            row = self._load_negotiable(conn, request_id, client_id)
            match = self.store.load_match_row(conn, match_id, request_id)
            if str(match["quote_status"]) == "accepted":
                raise RequestConflictError("Quote already accepted")

            self.store.update_match(conn, match_id, {"quote_status": "accepted"}, expected_status=match["quote_status"])
            rejected = self.store.reject_submitted_siblings(conn, request_id, keep_match_id=match_id)
            name = match["technician_name"] or "Tecnico"
            self.store.transition_request(
                conn,
                row,
                "selected",
                {
                    "selected_match_id": match_id,
                    "assigned_technician_id": match["technician_id"],
                    "assigned_technician_name": name,
                    "assigned_technician_phone": match["technician_phone"],
                },
                actor_id=client_id,
                label=f"Quote from {name} accepted{_terms_suffix(match['price_ars'], match['eta_hours'])}.",
            )
            updated = self.store.load_match_row(conn, match_id, request_id)
        logger.info("request %s: accepted match %s, rejected %s sibling(s)", request_id, match_id, rejected)
        return self.store.match_from_row(updated)

    def quote_reject(
        self,
        request_id: str,
        client_id: str,
        match_id: Optional[str],
        reason: str = "",
    ) -> QuoteCandidate:
        if not match_id:
            raise RequestValidationError("matchId is required")
        with self.store.transaction() as conn:
            row = self._load_negotiable(conn, request_id, client_id)
            match = self.store.load_match_row(conn, match_id, request_id)
            if str(match["quote_status"]) == "rejected":
                raise RequestConflictError("Quote already rejected")

            self.store.update_match(conn, match_id, {"quote_status": "rejected"}, expected_status=match["quote_status"])
            label = f"Quote from {match['technician_name'] or 'Tecnico'} rejected."
            if reason.strip():
                label += f" Reason: {reason.strip()}"
            self.refresh_request_status_from_quotes(conn, row, actor_id=client_id, label=label)
            updated = self.store.load_match_row(conn, match_id, request_id)
        return self.store.match_from_row(updated)

    def counter_offer(
        self,
        request_id: str,
        client_id: str,
        match_id: Optional[str],
        price: Any,
        eta_hours: Any,
        note: str = "",
    ) -> QuoteCandidate:
        if not match_id:
            raise RequestValidationError("matchId is required")
        price_ars, eta = validate_offer_terms(price, eta_hours)
        with self.store.transaction() as conn:
            row = self._load_negotiable(conn, request_id, client_id)
            match = self.store.load_match_row(conn, match_id, request_id)
            self.store.update_match(
                conn,
                match_id,
                {"quote_status": "submitted", "price_ars": price_ars, "eta_hours": eta, "note": note.strip()},
                expected_status=match["quote_status"],
            )
            label = f"Counter-offer sent to {match['technician_name'] or 'Tecnico'}{_terms_suffix(price_ars, eta)}."
            if note.strip():
                label += f" Note: {note.strip()}"
            # A new offer invalidates any earlier selection.
            self.store.transition_request(conn, row, "quoted", actor_id=client_id, label=label)
            updated = self.store.load_match_row(conn, match_id, request_id)
        return self.store.match_from_row(updated)

    def submit_offer(
        self,
        request_id: str,
        technician_id: str,
        price: Any,
        eta_hours: Any,
        note: str = "",
    ) -> Tuple[str, QuoteCandidate]:
        """Technician side: create or replace the caller's own offer on a request."""
        price_ars, eta = validate_offer_terms(price, eta_hours)
        with self.store.transaction() as conn:
            profile = self.store.load_technician_profile(conn, technician_id)
            if profile is None:
                raise RequestNotFoundError("Technician profile not found")
            row = self.store.load_request_row(conn, request_id)
            current_status = str(row["status"])
            if current_status not in OFFER_OPEN_STATUSES:
                raise RequestValidationError("This request no longer accepts offers")
            if row["mode"] == "direct" and row["target_technician_id"] and row["target_technician_id"] != technician_id:
                raise RequestPermissionError("This direct request is not assigned to your profile")
            if row["client_id"] == technician_id:
                raise RequestPermissionError("You cannot quote your own request")

            name = (profile.business_name or profile.full_name or "Tecnico").strip() or "Tecnico"
            match = self.store.upsert_submitted_offer(
                conn,
                request_id,
                {
                    "technician_id": technician_id,
                    "technician_name": name,
                    "technician_phone": profile.phone.strip() or None,
                    "technician_specialty": profile.specialties.strip() or None,
                    "technician_city": technician_city(profile) or None,
                    "technician_rating": profile.public_rating,
                    "price_ars": price_ars,
                    "eta_hours": eta,
                    "note": note.strip(),
                },
            )
            label = f"Offer received from {name}{_terms_suffix(price_ars, eta)}."
            if current_status == "quoted":
                self.store.insert_event(conn, request_id, technician_id, label)
                next_status = current_status
            else:
                next_status = "quoted"
                self.store.transition_request(conn, row, next_status, actor_id=technician_id, label=label)
        return next_status, self.store.match_from_row(match)


negotiation_handler = QuoteNegotiationHandler(store=request_store)
