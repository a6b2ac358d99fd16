from typing import Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class TechnicianProfile(BaseModel):
    id: str
    full_name: str = ""
    business_name: str = ""
    phone: str = ""
    specialties: str = ""
    city: str = ""
    coverage_area: str = ""
    address: str = ""
    working_hours: str = ""
    public_rating: Optional[float] = None
    last_seen_at: Optional[str] = None
    service_lat: Optional[float] = None
    service_lng: Optional[float] = None
    service_radius_km: Optional[float] = None

    @property
    def display_name(self) -> str:
        return (self.full_name or self.business_name or "Tecnico").strip() or "Tecnico"


class TimelineEvent(BaseModel):
    id: str
    request_id: str
    actor_id: str
    label: str
    created_at: str


class QuoteCandidate(BaseModel):
    id: str
    request_id: str
    technician_id: str
    technician_name: str
    technician_phone: Optional[str] = None
    specialty: Optional[str] = None
    city: Optional[str] = None
    score: float = 0.0
    quote_status: Literal["pending", "submitted", "accepted", "rejected"] = "pending"
    price_ars: Optional[float] = None
    eta_hours: Optional[int] = None
    rating: Optional[float] = None
    distance_km: Optional[float] = None
    created_at: str
    updated_at: str


class ClientRequest(BaseModel):
    id: str
    client_id: str
    title: str
    category: str
    address: str
    city: str = ""
    description: str
    urgency: Literal["baja", "media", "alta"] = "media"
    preferred_window: str = ""
    mode: Literal["marketplace", "direct"] = "marketplace"
    status: Literal[
        "published",
        "matched",
        "quoted",
        "direct_sent",
        "selected",
        "scheduled",
        "in_progress",
        "completed",
        "cancelled",
    ]
    radius_km: float
    location_lat: Optional[float] = None
    location_lng: Optional[float] = None
    target_technician_id: Optional[str] = None
    target_technician_name: Optional[str] = None
    target_technician_phone: Optional[str] = None
    assigned_technician_id: Optional[str] = None
    assigned_technician_name: Optional[str] = None
    assigned_technician_phone: Optional[str] = None
    direct_expires_at: Optional[str] = None
    selected_match_id: Optional[str] = None
    created_at: str
    updated_at: str
    quotes: list[QuoteCandidate] = Field(default_factory=list)
    timeline: list[TimelineEvent] = Field(default_factory=list)


class KnownTechnician(BaseModel):
    id: str
    name: str
    phone: str
    specialty: str = "General"
    last_job_at: Optional[str] = None


class ClientWorkspaceSnapshot(BaseModel):
    requests: list[ClientRequest]
    known_technicians: list[KnownTechnician] = Field(default_factory=list)


class ClientRequestCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    category: str = ""
    address: str = ""
    city: str = ""
    description: str = ""
    urgency: str = "media"
    preferred_window: str = Field(
        default="",
        validation_alias=AliasChoices("preferred_window", "preferredWindow"),
    )
    mode: str = "marketplace"
    radius_km: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("radius_km", "radiusKm"),
    )
    location_lat: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("location_lat", "lat"),
    )
    location_lng: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("location_lng", "lng"),
    )
    target_technician_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("target_technician_id", "targetTechnicianId"),
    )


class ClientRequestCreated(BaseModel):
    request: ClientRequest
    matches: list[QuoteCandidate]
    snapshot: ClientWorkspaceSnapshot


class RequestActionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str = ""
    match_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("match_id", "matchId"),
    )
    status: Optional[str] = None
    price_ars: Optional[Union[float, str]] = Field(
        default=None,
        validation_alias=AliasChoices("price_ars", "priceArs", "price"),
    )
    eta_hours: Optional[Union[float, str]] = Field(
        default=None,
        validation_alias=AliasChoices("eta_hours", "etaHours"),
    )
    note: str = ""
    reason: str = ""
    limit: Optional[int] = None


class TechnicianOfferRequest(BaseModel):
    price_ars: Optional[Union[float, str]] = None
    eta_hours: Optional[Union[float, str]] = None
    note: str = ""


class TechnicianOfferResult(BaseModel):
    ok: bool = True
    message: str
    request_id: str
    request_status: str
    match: QuoteCandidate


class NearbyRequest(BaseModel):
    id: str
    title: str
    category: str
    city: str = ""
    address: str = ""
    description: str = ""
    urgency: str = "media"
    preferred_window: Optional[str] = None
    status: str
    mode: str = "marketplace"
    created_at: str
    distance_km: float
    match_radius_km: float
    location_lat: float
    location_lng: float


class NearbyTechnicianSummary(BaseModel):
    radius_km: float
    within_working_hours: bool
    working_hours_label: str
    service_lat: Optional[float] = None
    service_lng: Optional[float] = None


class NearbyRequestsResponse(BaseModel):
    requests: list[NearbyRequest]
    technician: NearbyTechnicianSummary
    warning: Optional[str] = None


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = ""


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    role: Literal["client", "technician"] = "client"
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    role: Literal["client", "technician"] = "client"
    is_technician: bool = False
