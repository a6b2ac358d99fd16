from fastapi import HTTPException

from repairmatch.services.request_store import (
    RequestConflictError,
    RequestNotFoundError,
    RequestPermissionError,
    RequestStoreError,
)


def raise_request_http_error(exc: RequestStoreError) -> None:
    if isinstance(exc, RequestNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, RequestPermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, RequestConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))
