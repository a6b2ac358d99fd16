import logging
from datetime import datetime
from typing import List, Optional

from repairmatch.models import NearbyRequest, NearbyRequestsResponse, NearbyTechnicianSummary, TechnicianProfile
from repairmatch.services.geo import DEFAULT_MATCH_RADIUS_KM, haversine_km, normalize_radius, to_finite_number
from repairmatch.services.geocoder import NominatimGeocoder, geocoder
from repairmatch.services.request_store import RequestNotFoundError, RequestStore, request_store
from repairmatch.services.working_hours import (
    DEFAULT_TIMEZONE,
    format_working_hours_label,
    is_within_working_hours,
    parse_working_hours,
)

logger = logging.getLogger(__name__)

VISIBLE_STATUSES = ("published", "matched", "direct_sent")
CANDIDATE_SCAN_LIMIT = 180
FEED_LIMIT = 80

URGENCY_PRIORITY = {"alta": 0, "media": 1}


class NearbyRequestFeed:
    """Requests a technician can quote, filtered by both coverage radii."""

    def __init__(
        self,
        store: RequestStore,
        geocoder: Optional[NominatimGeocoder] = None,
        tz_name: str = DEFAULT_TIMEZONE,
    ):
        self.store = store
        self.geocoder = geocoder
        self.tz_name = tz_name

    def _geocode(self, *parts: Optional[str]):
        if self.geocoder is None:
            return None
        return self.geocoder.geocode_first_result(", ".join(part.strip() for part in parts if part and part.strip()))

    def _technician_location(self, profile: TechnicianProfile) -> tuple[Optional[float], Optional[float]]:
        lat = to_finite_number(profile.service_lat)
        lng = to_finite_number(profile.service_lng)
        if lat is not None and lng is not None:
            return lat, lng
        result = self._geocode(profile.address, profile.city)
        if result is None:
            return None, None
        coverage = (
            f"Radio de {DEFAULT_MATCH_RADIUS_KM} km desde {profile.city}"
            if profile.city.strip()
            else f"Radio de {DEFAULT_MATCH_RADIUS_KM} km desde tu ciudad base"
        )
        with self.store.transaction() as conn:
            self.store.update_technician_location(
                conn,
                profile.id,
                lat=result.lat,
                lng=result.lng,
                coverage_area=None if profile.coverage_area.strip() else coverage,
            )
        return result.lat, result.lng

    def list_for_technician(self, technician_id: str, now: Optional[datetime] = None) -> NearbyRequestsResponse:
        profile = self.store.get_technician_profile(technician_id)
        if profile is None:
            raise RequestNotFoundError("Technician profile not found")

        current = now or self.store.now()
        hours = parse_working_hours(profile.working_hours)
        within_hours = is_within_working_hours(hours, current, self.tz_name)
        radius_km = normalize_radius(profile.service_radius_km)

        tech_lat, tech_lng = self._technician_location(profile)
        if tech_lat is None or tech_lng is None:
            return NearbyRequestsResponse(
                requests=[],
                technician=NearbyTechnicianSummary(
                    radius_km=radius_km,
                    within_working_hours=within_hours,
                    working_hours_label=format_working_hours_label(hours),
                ),
                warning="Add a base address and city to enable radius matching.",
            )

        with self.store.transaction() as conn:
            rows = self.store.list_request_rows(
                conn,
                statuses=VISIBLE_STATUSES,
                order_by="created_at",
                limit=CANDIDATE_SCAN_LIMIT,
            )

        items: List[NearbyRequest] = []
        for row in rows:
            if row["mode"] == "direct" and row["target_technician_id"] and row["target_technician_id"] != technician_id:
                continue
            if row["client_id"] == technician_id:
                continue

            req_lat = to_finite_number(row["location_lat"])
            req_lng = to_finite_number(row["location_lng"])
            if req_lat is None or req_lng is None:
                result = self._geocode(row["address"], row["city"])
                if result is None:
                    continue
                req_lat, req_lng = result.lat, result.lng
                with self.store.transaction() as conn:
                    self.store.update_request(
                        conn,
                        str(row["id"]),
                        {"location_lat": req_lat, "location_lng": req_lng},
                        touch=False,
                    )

            max_distance = min(radius_km, normalize_radius(row["radius_km"] or radius_km))
            distance = haversine_km(tech_lat, tech_lng, req_lat, req_lng)
            if distance > max_distance:
                continue
            items.append(
                NearbyRequest(
                    id=row["id"],
                    title=row["title"] or "Untitled request",
                    category=row["category"] or "General",
                    city=row["city"] or "",
                    address=row["address"] or "",
                    description=row["description"] or "",
                    urgency=row["urgency"] or "media",
                    preferred_window=row["preferred_window"] or None,
                    status=row["status"],
                    mode=row["mode"] or "marketplace",
                    created_at=row["created_at"],
                    distance_km=round(distance, 1),
                    match_radius_km=max_distance,
                    location_lat=round(req_lat, 6),
                    location_lng=round(req_lng, 6),
                )
            )

        # Newest first inside equal urgency and distance; sorts are stable.
        items.sort(key=lambda item: item.created_at, reverse=True)
        items.sort(key=lambda item: (URGENCY_PRIORITY.get(item.urgency.lower(), 2), item.distance_km))
        return NearbyRequestsResponse(
            requests=items[:FEED_LIMIT],
            technician=NearbyTechnicianSummary(
                radius_km=radius_km,
                within_working_hours=within_hours,
                working_hours_label=format_working_hours_label(hours),
                service_lat=round(tech_lat, 6),
                service_lng=round(tech_lng, 6),
            ),
        )


nearby_feed = NearbyRequestFeed(store=request_store, geocoder=geocoder)
