"""
Auction business logic with CAS-guarded atomic operations.

The auction document is the only contended resource and the commit point
for every state change:

- _auction_cas_retry for atomic read-modify-write
- Exponential backoff on CASMismatchException, bounded by max_retries
- Bid acceptance appends to the auction's ledger in the same CAS write that
  moves the price, so a bid is either fully committed or not at all
- listing_set_status keeps the crop listing in step with the auction
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone, timedelta

from couchbase.exceptions import CASMismatchException, CouchbaseException

from models.entities.couchbase.auctions import (
    DEFAULT_BID_INCREMENT,
    Auction,
    AuctionData,
    AuctionOutcome,
    LedgerEntry,
)
from models.entities.couchbase.bids import Bid
from models.operations.bidding import auction_is_expired, bid_validate, ledger_audit, to_cents
from models.operations.bids import bid_demote, bid_from_ledger, bid_project
from models.operations.errors import (
    AuctionError,
    AuctionErrorKind,
    auction_not_found,
    concurrent_update_conflict,
)
from models.operations.listings import listing_get, listing_set_status

logger = logging.getLogger(__name__)

MAX_BID_RETRIES = 5
MAX_DURATION_HOURS = 24 * 365


# ---------------------------------------------------------------------------
# CAS-retry helper (same pattern as listings.py)
# ---------------------------------------------------------------------------

async def _auction_cas_retry(
    auction_id: str,
    mutator: Callable[[Auction], Optional[AuctionError]],
    max_retries: int = MAX_BID_RETRIES,
) -> tuple[Optional[Auction], Optional[AuctionError]]:
    """Read-modify-write an auction with CAS-guarded retry.

    *mutator* receives the freshly read ``Auction`` and mutates its data in
    place.  It returns ``None`` on success or an ``AuctionError`` to abort.
    On ``CASMismatchException`` the helper re-reads, re-runs the mutator
    against the new state and retries with exponential backoff (10 ms,
    20 ms, 40 ms, …).  When the mutator changes nothing no write is made.
    """
    backoff_ms = 10
    for attempt in range(max_retries + 1):
        auction = await Auction.get(auction_id)
        if not auction:
            return None, auction_not_found(auction_id)

        before = auction.data.model_dump()
        error = mutator(auction)
        if error is not None:
            return None, error
        if auction.data.model_dump() == before:
            return auction, None

        try:
            await Auction.update(auction)
            return auction, None
        except CASMismatchException:
            if attempt == max_retries:
                logger.warning(
                    f"Auction {auction_id}: CAS conflict persisted after {attempt + 1} attempts"
                )
                return None, concurrent_update_conflict()
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2

    return None, concurrent_update_conflict()


def _invalid(kind: AuctionErrorKind, message: str) -> AuctionError:
    return AuctionError(kind=kind, message=message)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

async def auction_create(
    seller_id: str,
    listing_id: str,
    starting_price: float,
    duration_hours: float,
    reserve_price: Optional[float] = None,
    bid_increment: Optional[float] = None,
) -> tuple[Optional[Auction], Optional[AuctionError]]:
    """Open an auction on a crop listing and mark the listing as under auction.

    The auction is active immediately: ``start_time`` is now and ``end_time``
    is ``duration_hours`` later.
    """
    if bid_increment is None:
        bid_increment = DEFAULT_BID_INCREMENT

    starting_cents = to_cents(starting_price)
    if starting_cents is None or starting_cents <= 0:
        return None, _invalid(
            AuctionErrorKind.INVALID_AMOUNT,
            "starting_price must be a positive amount in whole cents",
        )
    if reserve_price is not None:
        reserve_cents = to_cents(reserve_price)
        if reserve_cents is None or reserve_cents < starting_cents:
            return None, _invalid(
                AuctionErrorKind.INVALID_RESERVE_PRICE,
                f"reserve_price must be whole cents and at least the starting price ({starting_price:.2f})",
            )
    increment_cents = to_cents(bid_increment)
    if increment_cents is None or increment_cents <= 0:
        return None, _invalid(
            AuctionErrorKind.INVALID_BID_INCREMENT,
            "bid_increment must be a positive amount in whole cents",
        )
    if duration_hours is None or not 0 < duration_hours <= MAX_DURATION_HOURS:
        return None, _invalid(
            AuctionErrorKind.INVALID_DURATION,
            f"duration_hours must be greater than zero and at most {MAX_DURATION_HOURS}",
        )

    listing = await listing_get(listing_id)
    if not listing:
        return None, _invalid(
            AuctionErrorKind.LISTING_NOT_FOUND, f"Listing {listing_id} not found"
        )
    if listing.data.farmer_id != seller_id:
        return None, _invalid(
            AuctionErrorKind.FORBIDDEN, "Listing does not belong to seller"
        )

    # Claim the listing first; the expected-status guard stops a second
    # auction being opened on it concurrently
    ok, err = await listing_set_status(listing_id, "under_auction", expected="available")
    if not ok:
        return None, _invalid(AuctionErrorKind.LISTING_UNAVAILABLE, err or "Listing unavailable")

    now = datetime.now(timezone.utc)
    data = AuctionData(
        seller_id=seller_id,
        listing_id=listing_id,
        starting_price=starting_price,
        reserve_price=reserve_price,
        bid_increment=bid_increment,
        start_time=now,
        end_time=now + timedelta(hours=duration_hours),
        status="active",
    )
    try:
        auction = await Auction.create(data, user_id=seller_id)
    except CouchbaseException:
        await listing_set_status(listing_id, "available", expected="under_auction")
        raise

    logger.info(
        f"Auction {auction.id} created on listing {listing_id}: "
        f"start={starting_price}, increment={bid_increment}, ends={data.end_time.isoformat()}"
    )
    return auction, None


async def auction_get(auction_id: str) -> Optional[Auction]:
    return await Auction.get(auction_id)


async def auction_search(
    status: Optional[str] = "active",
    seller_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    consistent: bool = False,
) -> List[Auction]:
    """Search auctions with optional filters, newest first.

    Pass *consistent* when the caller must see its own recent writes.
    """
    keyspace = Auction.get_keyspace()
    conditions = []
    params: Dict[str, Any] = {}

    if status:
        conditions.append("status = $status")
        params["status"] = status
    if seller_id:
        conditions.append("seller_id = $seller_id")
        params["seller_id"] = seller_id

    where = " AND ".join(conditions) if conditions else "1=1"
    query = (
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE {where} "
        f"ORDER BY created_at DESC "
        f"LIMIT {limit} OFFSET {offset}"
    )
    rows = await keyspace.query(query, consistent=consistent, **params)
    return Auction.from_query_rows(rows)


async def auction_find_by_bid(bid_id: str) -> Optional[Auction]:
    """The auction whose ledger holds *bid_id*, or ``None``."""
    keyspace = Auction.get_keyspace()
    query = (
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE ANY e IN ledger SATISFIES e.bid_id = $bid_id END "
        f"LIMIT 1"
    )
    rows = await keyspace.query(query, consistent=True, bid_id=bid_id)
    auctions = Auction.from_query_rows(rows)
    return auctions[0] if auctions else None


# ---------------------------------------------------------------------------
# Bid placement (CAS-critical)
# ---------------------------------------------------------------------------

async def auction_place_bid(
    auction_id: str,
    bidder_id: str,
    amount: float,
    external_transaction_reference: Optional[str] = None,
    max_retries: int = MAX_BID_RETRIES,
) -> tuple[Optional[Bid], Optional[AuctionError]]:
    """
    Atomically place a bid on an auction.

    CAS flow:
    1. Read auction with CAS
    2. Validate against that state (status, expiry, amount, increment)
    3. Append the ledger entry and move high bid, winner and count
    4. CAS-replace; on mismatch go back to 1 so the bid is re-judged against
       the newer price rather than overwriting it
    5. Project the bid document and demote the previous winner

    Steps 1-4 are the commit. Step 5 can be replayed from the ledger by
    ``bid_sync_from_ledger`` if the process dies before finishing it.

    Returns (bid, error). On success error is None.
    """
    bid_id = str(uuid.uuid4())
    committed: Dict[str, Any] = {}

    def _mutate(auction: Auction) -> Optional[AuctionError]:
        d = auction.data
        now = datetime.now(timezone.utc)

        error = bid_validate(auction, amount, now, auction_id=auction_id)
        if error is not None:
            return error
        if d.seller_id == bidder_id:
            return _invalid(
                AuctionErrorKind.FORBIDDEN, "Sellers cannot bid on their own auction"
            )

        # bid_time strictly increases along the ledger
        bid_time = now
        if d.ledger and d.ledger[-1].bid_time >= bid_time:
            bid_time = d.ledger[-1].bid_time + timedelta(microseconds=1)

        entry = LedgerEntry(
            bid_id=bid_id,
            bidder_id=bidder_id,
            amount=amount,
            bid_time=bid_time,
            external_transaction_reference=external_transaction_reference,
        )
        previous = next(
            (e for e in d.ledger if e.bid_id == d.current_winning_bid_id), None
        )
        committed["entry"] = entry
        committed["previous"] = previous

        d.ledger.append(entry)
        d.current_highest_bid = amount
        d.current_winner_id = bidder_id
        d.current_winning_bid_id = bid_id
        d.total_bid_count += 1
        return None

    auction, err = await _auction_cas_retry(auction_id, _mutate, max_retries=max_retries)
    if err:
        logger.info(f"Bid of {amount} by {bidder_id} on auction {auction_id} rejected: {err}")
        return None, err

    entry: LedgerEntry = committed["entry"]
    previous: Optional[LedgerEntry] = committed["previous"]
    logger.info(
        f"Bid {entry.bid_id} accepted on auction {auction_id}: "
        f"amount={amount}, bidder={bidder_id}, count={auction.data.total_bid_count}"
    )

    # Demote before projecting so a partial failure never leaves two winners
    try:
        if previous is not None and not await bid_demote(auction_id, previous):
            logger.warning(f"Bid {entry.bid_id} not projected until {previous.bid_id} is demoted")
            return bid_from_ledger(auction_id, entry, is_winning=True), None
        bid = await bid_project(auction_id, entry)
    except CouchbaseException as e:
        logger.warning(
            f"Bid {entry.bid_id} committed but projection incomplete, sync will repair: {e}"
        )
        bid = bid_from_ledger(auction_id, entry, is_winning=True)

    return bid, None


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------

def _closing_outcome(d: AuctionData) -> AuctionOutcome:
    if d.total_bid_count == 0 or d.current_highest_bid is None:
        return "no_bids"
    if d.reserve_price is not None and d.current_highest_bid < d.reserve_price:
        return "no_sale"
    return "sold"


def auction_is_final_sale(auction: Auction) -> bool:
    """True only when the auction ended with a winner that met the reserve.

    Bid ``is_winning`` flags alone are not a sale signal: a no-sale or
    cancelled auction still carries its last winning bid.
    """
    return auction.data.status == "ended" and auction.data.outcome == "sold"


async def auction_activate(auction_id: str) -> tuple[Optional[Auction], Optional[AuctionError]]:
    """Transition an upcoming auction to active."""

    def _mutate(auction: Auction) -> Optional[AuctionError]:
        if auction.data.status != "upcoming":
            return _invalid(
                AuctionErrorKind.AUCTION_NOT_ACTIVE,
                f"Cannot activate: status is {auction.data.status}",
            )
        auction.data.status = "active"
        return None

    return await _auction_cas_retry(auction_id, _mutate)


async def auction_close(
    auction_id: str, now: Optional[datetime] = None
) -> tuple[Optional[Auction], Optional[AuctionError]]:
    """Close an active auction whose end time has passed.

    The auction becomes ``ended`` with outcome ``sold``, ``no_bids`` or
    ``no_sale`` (reserve set and not met). Closing an already ended auction
    returns it unchanged.
    """

    def _mutate(auction: Auction) -> Optional[AuctionError]:
        d = auction.data
        closing_time = now or datetime.now(timezone.utc)
        if d.status != "active":
            return _invalid(
                AuctionErrorKind.AUCTION_NOT_ACTIVE,
                f"Cannot close: status is {d.status}",
            )
        if not auction_is_expired(d, closing_time):
            return _invalid(
                AuctionErrorKind.AUCTION_STILL_RUNNING,
                f"Auction runs until {d.end_time.isoformat()}",
            )
        d.status = "ended"
        d.outcome = _closing_outcome(d)
        d.closed_at = closing_time
        return None

    auction, err = await _auction_cas_retry(auction_id, _mutate)
    if err and err.kind == AuctionErrorKind.AUCTION_NOT_ACTIVE:
        existing = await Auction.get(auction_id)
        if existing and existing.data.status == "ended":
            return existing, None
    if err:
        return None, err

    d = auction.data
    listing_status = "sold" if d.outcome == "sold" else "available"
    ok, listing_err = await listing_set_status(d.listing_id, listing_status)
    if not ok:
        logger.warning(
            f"Auction {auction_id} closed but listing {d.listing_id} not updated: {listing_err}"
        )

    logger.info(
        f"Auction {auction_id} ended: outcome={d.outcome}, "
        f"highest={d.current_highest_bid}, winner={d.current_winner_id}"
    )
    return auction, None


async def auction_cancel(auction_id: str) -> tuple[Optional[Auction], Optional[AuctionError]]:
    """Cancel an upcoming or active auction and release its listing."""

    def _mutate(auction: Auction) -> Optional[AuctionError]:
        d = auction.data
        if d.status not in ("upcoming", "active"):
            return _invalid(
                AuctionErrorKind.AUCTION_NOT_ACTIVE,
                f"Cannot cancel auction with status: {d.status}",
            )
        d.status = "cancelled"
        d.outcome = "cancelled"
        d.closed_at = datetime.now(timezone.utc)
        return None

    auction, err = await _auction_cas_retry(auction_id, _mutate)
    if err and err.kind == AuctionErrorKind.AUCTION_NOT_ACTIVE:
        existing = await Auction.get(auction_id)
        if existing and existing.data.status == "cancelled":
            return existing, None
    if err:
        return None, err

    ok, listing_err = await listing_set_status(auction.data.listing_id, "available")
    if not ok:
        logger.warning(f"Failed to release listing on cancel: {listing_err}")

    logger.info(f"Auction {auction_id} cancelled")
    return auction, None


async def auction_close_expired(
    now: Optional[datetime] = None, page_size: int = 100
) -> Dict[str, int]:
    """Close every active auction past its end time, oldest deadline first.

    Each auction is closed independently; a failure on one is logged and the
    sweep carries on. Auctions that failed to close stay active and sort ahead
    of the rest, so the page offset is the number left behind so far.
    """
    now = now or datetime.now(timezone.utc)
    counts = {"closed": 0, "failed": 0}
    keyspace = Auction.get_keyspace()
    seen: set = set()
    skipped = 0

    while True:
        query = (
            f"SELECT META().id, * FROM {keyspace} "
            f"WHERE status = $status AND STR_TO_MILLIS(end_time) <= $now_millis "
            f"ORDER BY end_time, META().id "
            f"LIMIT {page_size} OFFSET {skipped}"
        )
        rows = await keyspace.query(
            query,
            consistent=True,
            status="active",
            now_millis=int(now.timestamp() * 1000),
        )
        page = [a for a in Auction.from_query_rows(rows) if a.id not in seen]
        if not page:
            break

        for auction in page:
            seen.add(auction.id)
            if not auction_is_expired(auction.data, now):
                skipped += 1
                continue
            try:
                _, err = await auction_close(auction.id, now=now)
            except CouchbaseException as e:
                logger.error(f"Closing auction {auction.id} failed: {e}", exc_info=True)
                counts["failed"] += 1
                skipped += 1
                continue
            if err:
                logger.warning(f"Closing auction {auction.id} rejected: {err}")
                counts["failed"] += 1
                skipped += 1
            else:
                counts["closed"] += 1

        if len(rows) < page_size:
            break

    return counts


async def auction_record_receipt(
    auction_id: str, bid_id: str, external_transaction_reference: str
) -> tuple[Optional[Auction], Optional[AuctionError]]:
    """Set the transaction reference on a ledger entry (write-once)."""

    def _mutate(auction: Auction) -> Optional[AuctionError]:
        for entry in auction.data.ledger:
            if entry.bid_id != bid_id:
                continue
            existing = entry.external_transaction_reference
            if existing and existing != external_transaction_reference:
                return AuctionError(
                    kind=AuctionErrorKind.RECEIPT_CONFLICT,
                    message=f"Bid {bid_id} already has transaction reference {existing}",
                )
            entry.external_transaction_reference = external_transaction_reference
            return None
        logger.warning(f"Bid {bid_id} missing from ledger of auction {auction_id}")
        return None

    return await _auction_cas_retry(auction_id, _mutate)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def auction_get_bids(auction_id: str, limit: int = 100) -> Optional[List[Bid]]:
    """Get the bids for an auction, ordered by amount descending then bid time.

    Read from the auction's ledger so the list always matches the committed
    price state. Returns ``None`` if the auction does not exist.
    """
    auction = await Auction.get(auction_id)
    if not auction:
        return None
    d = auction.data
    ordered = sorted(d.ledger, key=lambda e: (-e.amount, e.bid_time))
    return [
        bid_from_ledger(auction_id, e, is_winning=e.bid_id == d.current_winning_bid_id)
        for e in ordered[:limit]
    ]


async def auction_audit(auction_id: str) -> tuple[Optional[List[str]], Optional[AuctionError]]:
    """Replay the auction's ledger and list any drift from its cached aggregates."""
    auction = await Auction.get(auction_id)
    if not auction:
        return None, auction_not_found(auction_id)
    return ledger_audit(auction.data), None
