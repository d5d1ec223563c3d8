"""
Reconciliation between committed bids and the external ledger.

A bid is accepted on its off-chain amount alone. The transaction receipt
from the blockchain arrives later (or never) through ``bid_attach_receipt``,
which can be re-submitted any number of times with the same reference.
"""

import logging
from typing import Dict, Optional

from couchbase.exceptions import CouchbaseException

from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.bids import Bid
from models.operations.auctions import auction_find_by_bid, auction_record_receipt, auction_search
from models.operations.bids import bid_demote, bid_get, bid_project, bid_set_receipt
from models.operations.errors import (
    AuctionError,
    AuctionErrorKind,
    auction_not_found,
    bid_not_found,
)

logger = logging.getLogger(__name__)


async def bid_attach_receipt(
    bid_id: str,
    external_transaction_reference: str,
    bidder_id: Optional[str] = None,
) -> tuple[Optional[Bid], Optional[AuctionError]]:
    """Attach a confirmed transaction reference to an accepted bid.

    The auction ledger entry is written first, then the bid document, so a
    crash between the two is healed by calling this again. Attaching the
    reference a bid already carries changes nothing. A bid committed to a
    ledger whose document was never written is projected first. When
    *bidder_id* is given only that bidder may attach the receipt.
    """
    bid = await bid_get(bid_id)
    if not bid:
        auction = await auction_find_by_bid(bid_id)
        if auction:
            await bid_sync_from_ledger(auction.id)
            bid = await bid_get(bid_id)
    if not bid:
        err = bid_not_found(bid_id)
        logger.warning(f"Receipt {external_transaction_reference} not attached: {err}")
        return None, err

    if bidder_id is not None and bid.data.bidder_id != bidder_id:
        logger.warning(f"Receipt for bid {bid_id} refused: {bidder_id} is not the bidder")
        return None, AuctionError(kind=AuctionErrorKind.FORBIDDEN, message="Not your bid")

    current = bid.data.external_transaction_reference
    if current and current != external_transaction_reference:
        return None, AuctionError(
            kind=AuctionErrorKind.RECEIPT_CONFLICT,
            message=f"Bid {bid_id} already has transaction reference {current}",
        )

    _, err = await auction_record_receipt(
        bid.data.auction_id, bid_id, external_transaction_reference
    )
    if err and err.kind != AuctionErrorKind.AUCTION_NOT_FOUND:
        logger.warning(f"Receipt for bid {bid_id} not recorded on auction: {err}")
        return None, err

    bid, err = await bid_set_receipt(bid_id, external_transaction_reference)
    if err:
        logger.warning(f"Receipt for bid {bid_id} not recorded on bid: {err}")
        return None, err

    logger.info(f"Bid {bid_id} reconciled with transaction {external_transaction_reference}")
    return bid, None


async def bid_sync_from_ledger(auction_id: str) -> tuple[Optional[Dict[str, int]], Optional[AuctionError]]:
    """Bring an auction's bid documents in line with its ledger.

    Projects the current winner if its document is missing, demotes every
    other bid still marked winning (creating missing ones already demoted)
    and copies receipts recorded on the ledger. Safe to run at any time,
    concurrently with bidding.
    """
    auction = await Auction.get(auction_id)
    if not auction:
        return None, auction_not_found(auction_id)

    d = auction.data
    counts = {"projected": 0, "demoted": 0, "receipts": 0}
    for entry in d.ledger:
        bid = await bid_get(entry.bid_id)
        if entry.bid_id == d.current_winning_bid_id:
            if bid is None:
                bid = await bid_project(auction_id, entry)
                counts["projected"] += 1
        elif bid is None or bid.data.is_winning:
            await bid_demote(auction_id, entry)
            bid = await bid_get(entry.bid_id)
            counts["demoted"] += 1

        reference = entry.external_transaction_reference
        if reference and bid and bid.data.external_transaction_reference != reference:
            _, err = await bid_set_receipt(entry.bid_id, reference)
            if err:
                logger.warning(f"Receipt sync for bid {entry.bid_id} failed: {err}")
            else:
                counts["receipts"] += 1

    if any(counts.values()):
        logger.info(f"Auction {auction_id} bid projection repaired: {counts}")
    return counts, None


async def bid_sync_all(page_size: int = 200) -> Dict[str, int]:
    """Run ``bid_sync_from_ledger`` over auctions of every status, page by page."""
    totals = {"auctions": 0, "failed": 0}
    offset = 0
    while True:
        page = await auction_search(
            status=None, limit=page_size, offset=offset, consistent=True
        )
        for auction in page:
            try:
                _, err = await bid_sync_from_ledger(auction.id)
            except CouchbaseException as e:
                logger.error(f"Bid sync for auction {auction.id} failed: {e}", exc_info=True)
                totals["failed"] += 1
                continue
            if err:
                totals["failed"] += 1
            else:
                totals["auctions"] += 1
        if len(page) < page_size:
            break
        offset += page_size
    return totals
