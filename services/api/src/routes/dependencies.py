from typing import Optional

from couchbase.exceptions import CouchbaseException
from fastapi import Header, HTTPException, status

from models.operations.users import user_create_if_not_exists_and_get
from utils import log

logger = log.get_logger(__name__)


async def current_user_get(
    x_wallet_address: Optional[str] = Header(None, alias="X-Wallet-Address"),
) -> dict:
    """Resolve the caller from the wallet address supplied by the wallet SDK.

    The address is an opaque key; the user document is created on first sight.
    """
    if not x_wallet_address or not x_wallet_address.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Wallet address is required",
        )

    try:
        user_obj = await user_create_if_not_exists_and_get(x_wallet_address)
    except CouchbaseException as e:
        logger.error(f"Failed to ensure user existence for {x_wallet_address}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="User store unavailable",
        )

    return {
        "sub": user_obj.id,
        "wallet_address": user_obj.data.wallet_address,
        "role": user_obj.data.role,
        "db_user": user_obj,
    }


require_authenticated = current_user_get
