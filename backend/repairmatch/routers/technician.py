from fastapi import APIRouter, Depends

from repairmatch.auth import require_technician
from repairmatch.models import NearbyRequestsResponse, TechnicianOfferRequest, TechnicianOfferResult
from repairmatch.routers.errors import raise_request_http_error
from repairmatch.services.nearby import nearby_feed
from repairmatch.services.negotiation import negotiation_handler
from repairmatch.services.request_store import RequestStoreError

router = APIRouter(prefix="/technician", tags=["technician"])


@router.get("/requests/nearby", response_model=NearbyRequestsResponse)
def list_nearby_requests(user_id: str = Depends(require_technician)):
    try:
        return nearby_feed.list_for_technician(user_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.post("/requests/{request_id}/offer", response_model=TechnicianOfferResult)
def submit_offer(
    request_id: str,
    payload: TechnicianOfferRequest,
    user_id: str = Depends(require_technician),
):
    try:
        request_status, match = negotiation_handler.submit_offer(
            request_id=request_id.strip(),
            technician_id=user_id,
            price=payload.price_ars,
            eta_hours=payload.eta_hours,
            note=payload.note,
        )
    except RequestStoreError as exc:
        raise_request_http_error(exc)
    return TechnicianOfferResult(
        message="Offer sent.",
        request_id=request_id.strip(),
        request_status=request_status,
        match=match,
    )
