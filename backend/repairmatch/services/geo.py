"""Distance and ranking of technician candidates against a client request.

Two ranking passes exist. ``CreationTimeScoring`` runs when a marketplace
request is created with resolvable coordinates and ranks by distance, rating,
urgency and availability. ``BackfillScoring`` runs from ``ensure_matches``
when a request still has no candidates and ranks by specialty and locality
text. Both plug into ``rank_candidates`` so limits and ordering live in one
place.
"""

import math
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from repairmatch.models import TechnicianProfile
from repairmatch.services.working_hours import (
    DEFAULT_TIMEZONE,
    is_within_working_hours,
    parse_working_hours,
    strip_accents,
)

EARTH_RADIUS_KM = 6371.0
DEFAULT_MATCH_RADIUS_KM = 20
DEFAULT_MATCH_LIMIT = 5
MAX_MATCH_LIMIT = 10

URGENCY_WEIGHTS = {"alta": 15, "media": 8, "baja": 2}


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def urgency_weight(urgency: Optional[str]) -> int:
    return URGENCY_WEIGHTS.get(str(urgency or "").strip().lower(), URGENCY_WEIGHTS["baja"])


def normalize_radius(value: Any, default: float = DEFAULT_MATCH_RADIUS_KM) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return float(default)
    if not math.isfinite(parsed) or parsed <= 0:
        return float(default)
    return float(min(100, max(1, round(parsed))))


def clamp_match_limit(limit: Any) -> int:
    try:
        parsed = int(limit)
    except (TypeError, ValueError):
        return DEFAULT_MATCH_LIMIT
    if parsed <= 0:
        return DEFAULT_MATCH_LIMIT
    return max(1, min(MAX_MATCH_LIMIT, parsed))


def to_finite_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def normalize_text(value: Any) -> str:
    return strip_accents(str(value or "")).lower().strip()


def name_collation_key(name: str) -> Tuple[str, str]:
    # Spanish-style ordering: accents and case only break ties.
    folded = normalize_text(name)
    return folded, unicodedata.normalize("NFC", name)


def category_tokens(category: Any) -> List[str]:
    value = normalize_text(category)
    if not value:
        return []
    if "electric" in value:
        return ["electricidad", "electrico", "electrica", "tablero", "cableado"]
    if "plomer" in value or "sanitar" in value:
        return ["plomeria", "sanitario", "agua", "caneria"]
    if "gas" in value:
        return ["gas"]
    if "alban" in value or "mampost" in value:
        return ["albanileria", "mamposteria", "revoque"]
    if "pint" in value:
        return ["pintura", "pintor", "pintar"]
    return [value]


def city_from_address(address: Any) -> str:
    raw = str(address or "").strip()
    if not raw:
        return ""
    parts = [part.strip() for part in raw.split(",") if part.strip()]
    return normalize_text(parts[-1]) if parts else normalize_text(raw)


def technician_city(profile: TechnicianProfile) -> str:
    if profile.city.strip():
        return profile.city.strip()
    return profile.coverage_area.split(",")[0].strip()


@dataclass
class ScoredCandidate:
    profile: TechnicianProfile
    score: float
    distance_km: Optional[float] = None
    last_seen_ts: float = 0.0
    extras: Dict[str, Any] = field(default_factory=dict)


class ScoringStrategy(Protocol):
    name: str

    def score(self, profile: TechnicianProfile) -> Optional[ScoredCandidate]:
        """Score one candidate, or return None to exclude it."""

    def sort_key(self, candidate: ScoredCandidate) -> Tuple[Any, ...]:
        """Ascending sort key; best candidate first."""

    def select(self, ranked: List[ScoredCandidate], limit: int) -> List[ScoredCandidate]:
        """Pick the final subset from the already ordered candidates."""


@dataclass
class CreationTimeScoring:
    """``100 - km*3 + rating*10 + urgency weight + 5 when inside working hours``."""

    request_lat: float
    request_lng: float
    request_radius_km: float
    urgency: str
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    tz_name: str = DEFAULT_TIMEZONE
    name: str = "creation_time"

    def score(self, profile: TechnicianProfile) -> Optional[ScoredCandidate]:
        lat = to_finite_number(profile.service_lat)
        lng = to_finite_number(profile.service_lng)
        if lat is None or lng is None:
            return None
        technician_radius = normalize_radius(profile.service_radius_km or self.request_radius_km)
        max_distance = min(normalize_radius(self.request_radius_km), technician_radius)
        distance = haversine_km(self.request_lat, self.request_lng, lat, lng)
        if not math.isfinite(distance) or distance > max_distance:
            return None
        within_hours = is_within_working_hours(parse_working_hours(profile.working_hours), self.now, self.tz_name)
        score = creation_time_score(
            distance_km=distance,
            rating=profile.public_rating or 0.0,
            urgency=self.urgency,
            within_working_hours=within_hours,
        )
        return ScoredCandidate(
            profile=profile,
            score=score,
            distance_km=round(distance, 2),
            extras={"within_working_hours": within_hours},
        )

    def sort_key(self, candidate: ScoredCandidate) -> Tuple[Any, ...]:
        return (-candidate.score, candidate.distance_km if candidate.distance_km is not None else math.inf)

    def select(self, ranked: List[ScoredCandidate], limit: int) -> List[ScoredCandidate]:
        return ranked[:limit]


def creation_time_score(
    *,
    distance_km: float,
    rating: float,
    urgency: str,
    within_working_hours: bool,
) -> float:
    score = 100 - distance_km * 3 + rating * 10 + urgency_weight(urgency)
    if within_working_hours:
        score += 5
    return round(score, 2)


@dataclass
class BackfillScoring:
    """Text heuristics used when a request has no candidates yet.

    8 for a specialty token hit, 4 for the same city, 3 when the coverage area
    mentions the request city, 2 when the request address mentions the
    technician city and 1 for a reachable phone.
    """

    category: str
    city: str
    address: str
    name: str = "backfill"

    def __post_init__(self) -> None:
        self._tokens = category_tokens(self.category)
        self._request_city = normalize_text(self.city) or city_from_address(self.address)
        self._request_address = normalize_text(self.address)

    def score(self, profile: TechnicianProfile) -> Optional[ScoredCandidate]:
        if not profile.id or not profile.display_name:
            return None
        specialty = normalize_text(profile.specialties)
        city = normalize_text(profile.city)
        coverage = normalize_text(profile.coverage_area)

        score = 0
        if any(token and token in specialty for token in self._tokens):
            score += 8
        if self._request_city and city == self._request_city:
            score += 4
        if self._request_city and self._request_city in coverage:
            score += 3
        if self._request_address and city and city in self._request_address:
            score += 2
        if profile.phone.strip():
            score += 1
        return ScoredCandidate(profile=profile, score=float(score), last_seen_ts=_timestamp(profile.last_seen_at))

    def sort_key(self, candidate: ScoredCandidate) -> Tuple[Any, ...]:
        return (-candidate.score, -candidate.last_seen_ts, name_collation_key(candidate.profile.display_name))

    def select(self, ranked: List[ScoredCandidate], limit: int) -> List[ScoredCandidate]:
        positive = [candidate for candidate in ranked if candidate.score > 0]
        # Nobody scored: offer the whole ordered pool instead of nothing.
        return (positive or ranked)[:limit]


def _timestamp(value: Optional[str]) -> float:
    if not value:
        return 0.0
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def rank_candidates(
    strategy: ScoringStrategy,
    profiles: Iterable[TechnicianProfile],
    limit: int = DEFAULT_MATCH_LIMIT,
) -> List[ScoredCandidate]:
    safe_limit = clamp_match_limit(limit)
    scored: List[ScoredCandidate] = []
    for profile in profiles:
        candidate = strategy.score(profile)
        if candidate is not None:
            scored.append(candidate)
    scored.sort(key=strategy.sort_key)
    return strategy.select(scored, safe_limit)
