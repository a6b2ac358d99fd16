from fastapi import APIRouter, Depends

from repairmatch.auth import require_client
from repairmatch.models import (
    ClientRequest,
    ClientRequestCreate,
    ClientRequestCreated,
    ClientWorkspaceSnapshot,
    RequestActionPayload,
)
from repairmatch.routers.errors import raise_request_http_error
from repairmatch.services.lifecycle import lifecycle_controller
from repairmatch.services.request_store import RequestStoreError, request_store
from repairmatch.services.watchdog import timeout_watchdog

router = APIRouter(prefix="/requests", tags=["requests"])


@router.get("", response_model=ClientWorkspaceSnapshot)
def list_requests(user_id: str = Depends(require_client)):
    timeout_watchdog.tick(client_id=user_id)
    return lifecycle_controller.workspace_snapshot(user_id)


@router.post("", response_model=ClientRequestCreated)
def create_request(payload: ClientRequestCreate, user_id: str = Depends(require_client)):
    try:
        request, matches = lifecycle_controller.create_request(user_id, payload)
    except RequestStoreError as exc:
        raise_request_http_error(exc)
    return ClientRequestCreated(
        request=request,
        matches=matches,
        snapshot=lifecycle_controller.workspace_snapshot(user_id),
    )


@router.get("/{request_id}", response_model=ClientRequest)
def get_request(request_id: str, user_id: str = Depends(require_client)):
    timeout_watchdog.tick(client_id=user_id)
    try:
        return request_store.get_request(request_id, client_id=user_id)
    except RequestStoreError as exc:
        raise_request_http_error(exc)


@router.patch("/{request_id}", response_model=ClientWorkspaceSnapshot)
def update_request(
    request_id: str,
    payload: RequestActionPayload,
    user_id: str = Depends(require_client),
):
    try:
        lifecycle_controller.apply_action(request_id.strip(), user_id, payload)
    except RequestStoreError as exc:
        raise_request_http_error(exc)
    return lifecycle_controller.workspace_snapshot(user_id)
