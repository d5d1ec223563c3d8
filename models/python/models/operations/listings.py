import asyncio
import logging
from typing import Callable, Optional

from couchbase.exceptions import CASMismatchException

from models.entities.couchbase.listings import Listing, ListingData, ListingStatus

logger = logging.getLogger(__name__)


async def listing_create(farmer_id: str, data: ListingData) -> Listing:
    data.farmer_id = farmer_id
    return await Listing.create(data, user_id=farmer_id)


async def listing_get(listing_id: str) -> Optional[Listing]:
    return await Listing.get(listing_id)


async def _listing_cas_retry(
    listing_id: str,
    mutator: Callable[[ListingData], Optional[str]],
    max_retries: int = 5,
) -> tuple[bool, Optional[str]]:
    """Read-modify-write a listing with CAS-guarded retry.

    *mutator* receives ``ListingData`` and mutates it in place.  It returns
    ``None`` on success or an error string to abort early.  On
    ``CASMismatchException`` the helper re-reads and retries with
    exponential backoff (10 ms, 20 ms, 40 ms, …).
    """
    backoff_ms = 10
    for attempt in range(max_retries + 1):
        listing = await Listing.get(listing_id)
        if not listing:
            return False, f"Listing {listing_id} not found"

        error = mutator(listing.data)
        if error is not None:
            return False, error

        try:
            await Listing.update(listing)
            return True, None
        except CASMismatchException:
            if attempt == max_retries:
                return False, "Concurrent update conflict, please retry"
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2

    return False, "Max retries exceeded"


async def listing_set_status(
    listing_id: str,
    status: ListingStatus,
    expected: Optional[ListingStatus] = None,
) -> tuple[bool, Optional[str]]:
    """Set the crop listing's status (e.g. ``under_auction`` when an auction opens).

    With *expected*, the transition only happens from that status, which lets
    two concurrent auction creations on one listing race safely.
    """

    def _mutate(data: ListingData) -> Optional[str]:
        if expected is not None and data.status != expected:
            return f"Listing is not {expected} (status: {data.status})"
        if data.status == "sold" and status != "sold":
            return f"Listing {listing_id} is already sold"
        data.status = status
        return None

    ok, err = await _listing_cas_retry(listing_id, _mutate)
    if ok:
        logger.info(f"Listing {listing_id} status -> {status}")
    return ok, err
