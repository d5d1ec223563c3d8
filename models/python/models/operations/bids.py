"""
Bid document operations.

The ``bids`` collection is a projection of each auction's ledger, written
after the auction CAS commit. Only two writes touch ``is_winning``:

- ``bid_project`` inserts a freshly committed bid as winning, and only if
  the document does not exist yet;
- ``bid_demote`` flips it to ``False`` (creating the document already demoted
  when the projection has not caught up).

so a demoted bid can never be promoted back, whatever order the post-commit
writes of concurrent bidders land in.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from couchbase.exceptions import CASMismatchException, DocumentExistsException

from models.entities.couchbase.auctions import LedgerEntry
from models.entities.couchbase.bids import Bid, BidData
from models.operations.errors import (
    AuctionError,
    AuctionErrorKind,
    bid_not_found,
    concurrent_update_conflict,
)

logger = logging.getLogger(__name__)


async def _bid_cas_retry(
    bid_id: str,
    mutator: Callable[[BidData], Optional[AuctionError]],
    max_retries: int = 5,
) -> tuple[Optional[Bid], Optional[AuctionError]]:
    """Read-modify-write a bid document with CAS-guarded retry.

    The write is skipped when *mutator* leaves the document unchanged.
    """
    backoff_ms = 10
    for attempt in range(max_retries + 1):
        bid = await Bid.get(bid_id)
        if not bid:
            return None, bid_not_found(bid_id)

        before = bid.data.model_dump()
        error = mutator(bid.data)
        if error is not None:
            return None, error
        if bid.data.model_dump() == before:
            return bid, None

        try:
            await Bid.update(bid)
            return bid, None
        except CASMismatchException:
            if attempt == max_retries:
                return None, concurrent_update_conflict()
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2

    return None, concurrent_update_conflict()


def bid_from_ledger(auction_id: str, entry: LedgerEntry, is_winning: bool) -> Bid:
    """In-memory Bid built from a ledger entry (not persisted)."""
    return Bid(
        id=entry.bid_id,
        data=BidData(
            auction_id=auction_id,
            bidder_id=entry.bidder_id,
            amount=entry.amount,
            bid_time=entry.bid_time,
            is_winning=is_winning,
            external_transaction_reference=entry.external_transaction_reference,
            created_by_user_id=entry.bidder_id,
        ),
    )


# ---------------------------------------------------------------------------
# Projection writes
# ---------------------------------------------------------------------------

async def bid_project(auction_id: str, entry: LedgerEntry) -> Bid:
    """Write a just-committed bid as the winning bid, unless already projected."""
    data = bid_from_ledger(auction_id, entry, is_winning=True).data
    try:
        return await Bid.create(data, key=entry.bid_id, user_id=entry.bidder_id)
    except DocumentExistsException:
        # A later bid already demoted it, or a sync got here first
        existing = await Bid.get(entry.bid_id)
        return existing or bid_from_ledger(auction_id, entry, is_winning=False)


async def bid_demote(auction_id: str, entry: LedgerEntry, max_retries: int = 5) -> bool:
    """Mark a bid as no longer winning. Safe to repeat.

    Returns ``False`` if the bid could not be demoted.
    """

    def _mutate(d: BidData) -> Optional[AuctionError]:
        d.is_winning = False
        return None

    for _ in range(max_retries + 1):
        _, err = await _bid_cas_retry(entry.bid_id, _mutate)
        if err is None:
            return True
        if err.kind != AuctionErrorKind.BID_NOT_FOUND:
            logger.warning(f"Failed to demote bid {entry.bid_id}: {err}")
            return False

        # Not projected yet: create it already demoted
        data = bid_from_ledger(auction_id, entry, is_winning=False).data
        try:
            await Bid.create(data, key=entry.bid_id, user_id=entry.bidder_id)
            return True
        except DocumentExistsException:
            continue

    logger.warning(f"Gave up demoting bid {entry.bid_id} after {max_retries + 1} attempts")
    return False


async def bid_set_receipt(
    bid_id: str, external_transaction_reference: str
) -> tuple[Optional[Bid], Optional[AuctionError]]:
    """Attach an external transaction reference to the bid document.

    Writes once; repeating the same reference is a no-op and a different
    reference is a ``receipt_conflict``.
    """

    def _mutate(d: BidData) -> Optional[AuctionError]:
        current = d.external_transaction_reference
        if current and current != external_transaction_reference:
            return AuctionError(
                kind=AuctionErrorKind.RECEIPT_CONFLICT,
                message=f"Bid {bid_id} already has transaction reference {current}",
            )
        d.external_transaction_reference = external_transaction_reference
        return None

    return await _bid_cas_retry(bid_id, _mutate)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def bid_get(bid_id: str) -> Optional[Bid]:
    return await Bid.get(bid_id)


async def bid_get_by_bidder(bidder_id: str, limit: int = 50) -> List[Bid]:
    """Get a bidder's bid history across auctions, most recent first."""
    keyspace = Bid.get_keyspace()
    query = (
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE bidder_id = $bidder_id "
        f"ORDER BY bid_time DESC "
        f"LIMIT {limit}"
    )
    rows = await keyspace.query(query, consistent=True, bidder_id=bidder_id)
    return Bid.from_query_rows(rows)
