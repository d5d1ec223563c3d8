from fastapi import HTTPException, status

from models.operations.errors import (
    NOT_FOUND_KINDS,
    VALIDATION_KINDS,
    AuctionError,
    AuctionErrorKind,
)

RETRY_AFTER_SECONDS = "1"


def status_for(error: AuctionError) -> int:
    if error.kind in VALIDATION_KINDS:
        return status.HTTP_400_BAD_REQUEST
    if error.kind in NOT_FOUND_KINDS:
        return status.HTTP_404_NOT_FOUND
    if error.kind == AuctionErrorKind.FORBIDDEN:
        return status.HTTP_403_FORBIDDEN
    if error.is_transient:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_409_CONFLICT


def http_error(error: AuctionError) -> HTTPException:
    """HTTP exception whose detail carries the typed rejection."""
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if error.is_transient else None
    return HTTPException(
        status_code=status_for(error),
        detail=error.model_dump(mode="json"),
        headers=headers,
    )
