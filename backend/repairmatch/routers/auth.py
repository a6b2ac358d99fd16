import hmac

from fastapi import APIRouter, Depends, HTTPException

from repairmatch.auth import DEMO_PASSWORD, AuthenticatedUser, create_access_token, require_authenticated_user
from repairmatch.models import AuthLoginRequest, AuthLoginResponse, AuthMeResponse
from repairmatch.services.request_store import request_store

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest):
    user_id = payload.user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    if not hmac.compare_digest(payload.password, DEMO_PASSWORD):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    role = "technician" if request_store.get_technician_profile(user_id) is not None else "client"
    token, expires_at = create_access_token(user_id=user_id, role=role)
    return AuthLoginResponse(access_token=token, user_id=user_id, role=role, expires_at=expires_at)


@router.get("/me", response_model=AuthMeResponse)
def me(user: AuthenticatedUser = Depends(require_authenticated_user)):
    return AuthMeResponse(user_id=user.user_id, role=user.role, is_technician=user.is_technician)
