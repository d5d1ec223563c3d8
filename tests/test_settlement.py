# mypy: ignore-errors
import pytest
from couchbase.exceptions import CouchbaseException

from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.bids import Bid
from models.operations.auctions import auction_create, auction_place_bid, auction_record_receipt
from models.operations.errors import AuctionErrorKind
from models.operations.settlement import bid_attach_receipt, bid_sync_all, bid_sync_from_ledger


async def _auction_with_bid(listing_factory, **bid_kwargs):
    listing = await listing_factory("farmer-1")
    auction, _ = await auction_create(
        "farmer-1", listing.id, starting_price=100.0, duration_hours=1, bid_increment=5.0
    )
    bid, err = await auction_place_bid(auction.id, "alice", 100.0, **bid_kwargs)
    assert err is None
    return auction, bid


def _ledger_entry(auction: Auction, bid_id: str):
    return next(e for e in auction.data.ledger if e.bid_id == bid_id)


# ---------------------------------------------------------------------------
# bid_attach_receipt
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_attach_receipt_sets_bid_and_ledger(listing_factory) -> None:
    auction, bid = await _auction_with_bid(listing_factory)
    assert bid.data.external_transaction_reference is None

    updated, err = await bid_attach_receipt(bid.id, "0xabc")

    assert err is None
    assert updated.data.external_transaction_reference == "0xabc"
    assert (await Bid.get(bid.id)).data.external_transaction_reference == "0xabc"
    stored = await Auction.get(auction.id)
    assert _ledger_entry(stored, bid.id).external_transaction_reference == "0xabc"


@pytest.mark.asyncio
async def test_attach_receipt_twice_changes_nothing(listing_factory, couchbase_store) -> None:
    auction, bid = await _auction_with_bid(listing_factory)
    await bid_attach_receipt(bid.id, "0xabc")
    auctions_before = dict(couchbase_store.collection("auctions").docs)
    bids_before = dict(couchbase_store.collection("bids").docs)

    again, err = await bid_attach_receipt(bid.id, "0xabc")

    assert err is None
    assert again.data.external_transaction_reference == "0xabc"
    assert couchbase_store.collection("auctions").docs == auctions_before
    assert couchbase_store.collection("bids").docs == bids_before


@pytest.mark.asyncio
async def test_attach_different_receipt_conflicts(listing_factory) -> None:
    auction, bid = await _auction_with_bid(listing_factory, external_transaction_reference="0xabc")

    _, err = await bid_attach_receipt(bid.id, "0xdef")

    assert err.kind == AuctionErrorKind.RECEIPT_CONFLICT
    assert (await Bid.get(bid.id)).data.external_transaction_reference == "0xabc"
    stored = await Auction.get(auction.id)
    assert _ledger_entry(stored, bid.id).external_transaction_reference == "0xabc"


@pytest.mark.asyncio
async def test_attach_receipt_unknown_bid() -> None:
    bid, err = await bid_attach_receipt("no-such-bid", "0xabc")
    assert bid is None
    assert err.kind == AuctionErrorKind.BID_NOT_FOUND


@pytest.mark.asyncio
async def test_attach_receipt_refused_for_other_bidder(listing_factory) -> None:
    auction, bid = await _auction_with_bid(listing_factory)

    _, err = await bid_attach_receipt(bid.id, "0xforged", bidder_id="mallory")

    assert err.kind == AuctionErrorKind.FORBIDDEN
    assert (await Bid.get(bid.id)).data.external_transaction_reference is None
    stored = await Auction.get(auction.id)
    assert _ledger_entry(stored, bid.id).external_transaction_reference is None

    updated, err = await bid_attach_receipt(bid.id, "0xabc", bidder_id="alice")
    assert err is None
    assert updated.data.external_transaction_reference == "0xabc"


@pytest.mark.asyncio
async def test_attach_receipt_to_committed_but_unprojected_bid(listing_factory, couchbase_store) -> None:
    bids = couchbase_store.collection("bids")

    def unavailable(key):
        raise CouchbaseException(message="simulated outage")

    bids.on_insert = unavailable
    auction, bid = await _auction_with_bid(listing_factory)
    bids.on_insert = None
    assert await Bid.get(bid.id) is None

    updated, err = await bid_attach_receipt(bid.id, "0xabc", bidder_id="alice")

    assert err is None
    assert updated.data.external_transaction_reference == "0xabc"
    assert updated.data.is_winning is True
    stored = await Auction.get(auction.id)
    assert _ledger_entry(stored, bid.id).external_transaction_reference == "0xabc"


@pytest.mark.asyncio
async def test_receipt_does_not_touch_price_state(listing_factory) -> None:
    auction, bid = await _auction_with_bid(listing_factory)
    before = (await Auction.get(auction.id)).data

    await bid_attach_receipt(bid.id, "0xabc")

    after = (await Auction.get(auction.id)).data
    assert after.current_highest_bid == before.current_highest_bid
    assert after.current_winner_id == before.current_winner_id
    assert after.total_bid_count == before.total_bid_count
    assert after.status == "active"


# ---------------------------------------------------------------------------
# bid_sync_from_ledger
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_failed_projection_keeps_bid_and_sync_repairs(listing_factory, couchbase_store) -> None:
    auction, first = await _auction_with_bid(listing_factory)
    bids = couchbase_store.collection("bids")

    def unavailable(key):
        raise CouchbaseException(message="simulated outage")

    bids.on_insert = unavailable
    second, err = await auction_place_bid(auction.id, "bob", 105.0)
    bids.on_insert = None

    assert err is None
    assert second.data.is_winning
    stored = await Auction.get(auction.id)
    assert stored.data.current_winning_bid_id == second.id
    assert await Bid.get(second.id) is None
    assert (await Bid.get(first.id)).data.is_winning is False

    counts, err = await bid_sync_from_ledger(auction.id)

    assert err is None
    assert counts == {"projected": 1, "demoted": 0, "receipts": 0}
    assert (await Bid.get(first.id)).data.is_winning is False
    assert (await Bid.get(second.id)).data.is_winning is True

    counts, _ = await bid_sync_from_ledger(auction.id)
    assert counts == {"projected": 0, "demoted": 0, "receipts": 0}


@pytest.mark.asyncio
async def test_sync_copies_receipts_from_ledger(listing_factory) -> None:
    auction, bid = await _auction_with_bid(listing_factory)
    _, err = await auction_record_receipt(auction.id, bid.id, "0xabc")
    assert err is None
    assert (await Bid.get(bid.id)).data.external_transaction_reference is None

    counts, _ = await bid_sync_from_ledger(auction.id)

    assert counts["receipts"] == 1
    assert (await Bid.get(bid.id)).data.external_transaction_reference == "0xabc"


@pytest.mark.asyncio
async def test_sync_unknown_auction() -> None:
    counts, err = await bid_sync_from_ledger("missing")
    assert counts is None
    assert err.kind == AuctionErrorKind.AUCTION_NOT_FOUND


@pytest.mark.asyncio
async def test_sync_all_visits_every_auction(listing_factory) -> None:
    await _auction_with_bid(listing_factory)
    await _auction_with_bid(listing_factory)

    totals = await bid_sync_all()

    assert totals == {"auctions": 2, "failed": 0}


@pytest.mark.asyncio
async def test_sync_all_pages_through_every_auction(listing_factory, couchbase_store) -> None:
    bids = couchbase_store.collection("bids")

    def unavailable(key):
        raise CouchbaseException(message="simulated outage")

    placed = []
    for _ in range(5):
        bids.on_insert = unavailable
        placed.append(await _auction_with_bid(listing_factory))
        bids.on_insert = None

    totals = await bid_sync_all(page_size=2)

    assert totals == {"auctions": 5, "failed": 0}
    for _, bid in placed:
        assert (await Bid.get(bid.id)).data.is_winning is True
