"""Tests for the swap ledger."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.orm.exc import StaleDataError

from bmn_resolver.crypto import ZERO_ADDRESS, ZERO_HASH, InvalidHexError
from bmn_resolver.ledger import (
    LedgerRepository,
    SwapLedger,
    SwapStatus,
    can_transition,
    utcnow,
    withdrawal_sides_due,
)
from bmn_resolver.ledger.swaps import SIDE_DESTINATION
from bmn_resolver.utils.locks import KeyLockRegistry
from conftest import (
    ALICE,
    BOB,
    DST_CHAIN_ID,
    DST_ESCROW,
    HASHLOCK,
    SECRET,
    SRC_CHAIN_ID,
    SRC_ESCROW,
    h32,
)

ORDER = h32(0xAA)


async def deposited_both(ledger: SwapLedger, order_hash: str = ORDER):
    """Track a swap and move it to BOB_DEPOSITED with the secret known."""
    await ledger.track(
        order_hash,
        secret=SECRET,
        alice=ALICE,
        src_chain_id=SRC_CHAIN_ID,
        dst_chain_id=DST_CHAIN_ID,
        src_amount=10**18,
        dst_amount=2 * 10**18,
    )
    now = utcnow()
    return await ledger.update_status(
        order_hash,
        SwapStatus.BOB_DEPOSITED,
        {
            "bob": BOB,
            "src_escrow": SRC_ESCROW,
            "src_deposited_at": now,
            "dst_escrow": DST_ESCROW,
            "dst_deposited_at": now,
        },
    )


class TestTracking:
    """Tests for creating swap records."""

    @pytest.mark.asyncio
    async def test_track_defaults(self, ledger: SwapLedger):
        swap = await ledger.track(ORDER)

        assert swap.order_hash == ORDER
        assert swap.status == SwapStatus.CREATED
        assert swap.hashlock == ZERO_HASH
        assert swap.alice == ZERO_ADDRESS
        assert swap.src_amount == 0
        assert swap.retry_count == 0
        assert swap.meta == {}
        assert swap.created_at is not None

    @pytest.mark.asyncio
    async def test_track_is_idempotent(self, ledger: SwapLedger):
        first = await ledger.track(ORDER, alice=ALICE)
        second = await ledger.track(ORDER, alice=BOB)

        assert second.alice == ALICE
        assert second.created_at == first.created_at

    @pytest.mark.asyncio
    async def test_track_normalizes_keys(self, ledger: SwapLedger):
        await ledger.track(ORDER.upper().replace("0X", "0x"), alice=ALICE.upper().replace("0X", "0x"))

        swap = await ledger.get_swap(ORDER)
        assert swap is not None
        assert swap.alice == ALICE

    @pytest.mark.asyncio
    async def test_track_derives_hashlock(self, ledger: SwapLedger):
        swap = await ledger.track(ORDER, secret=SECRET)
        assert swap.hashlock == HASHLOCK

    @pytest.mark.asyncio
    async def test_track_rejects_mismatched_secret(self, ledger: SwapLedger):
        with pytest.raises(ValueError, match="does not match"):
            await ledger.track(ORDER, secret=SECRET, hashlock=h32(0x01))
        assert await ledger.get_swap(ORDER) is None

    @pytest.mark.asyncio
    async def test_track_rejects_unknown_field(self, ledger: SwapLedger):
        with pytest.raises(ValueError, match="Unknown swap fields"):
            await ledger.track(ORDER, colour="blue")

    @pytest.mark.asyncio
    async def test_track_rejects_bad_order_hash(self, ledger: SwapLedger):
        with pytest.raises(InvalidHexError):
            await ledger.track("0x1234")

    @pytest.mark.asyncio
    async def test_large_amounts_survive(self, ledger: SwapLedger):
        amount = 2**255 + 7
        await ledger.track(ORDER, src_amount=amount)

        swap = await ledger.get_swap(ORDER)
        assert swap.src_amount == amount


class TestStatusUpdates:
    """Tests for the status state machine."""

    @pytest.mark.asyncio
    async def test_unknown_swap(self, ledger: SwapLedger):
        assert await ledger.update_status(ORDER, SwapStatus.ORDER_FILLED) is None

    @pytest.mark.asyncio
    async def test_awaiting_destination_escrow_scenario(self, ledger: SwapLedger):
        """A deposited source side waits for a destination escrow until one is attached."""
        await ledger.track(ORDER)
        await ledger.update_status(
            ORDER, SwapStatus.ALICE_DEPOSITED, {"src_escrow": SRC_ESCROW, "src_deposited_at": utcnow()}
        )

        waiting = await ledger.awaiting_destination_escrow()
        assert [s.order_hash for s in waiting] == [ORDER]

        await ledger.update_status(ORDER, SwapStatus.DEST_ESCROW_CREATED, {"dst_escrow": DST_ESCROW})

        assert await ledger.awaiting_destination_escrow() == []

    @pytest.mark.asyncio
    async def test_backwards_transition_refused(self, ledger: SwapLedger):
        await deposited_both(ledger)

        assert await ledger.update_status(ORDER, SwapStatus.ORDER_FILLED) is None
        swap = await ledger.get_swap(ORDER)
        assert swap.status == SwapStatus.BOB_DEPOSITED

    @pytest.mark.asyncio
    async def test_same_status_merges_patch(self, ledger: SwapLedger):
        await ledger.track(ORDER)
        swap = await ledger.update_status(ORDER, SwapStatus.CREATED, {"meta": {"note": "x"}})

        assert swap.status == SwapStatus.CREATED
        assert swap.meta == {"note": "x"}

    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, ledger: SwapLedger):
        await ledger.track(ORDER)
        failed = await ledger.mark_failed(ORDER, "boom")

        assert failed.status == SwapStatus.FAILED
        assert failed.last_error == "boom"
        assert await ledger.update_status(ORDER, SwapStatus.ORDER_FILLED) is None
        assert await ledger.update_status(ORDER, SwapStatus.EXPIRED) is None
        assert (await ledger.get_swap(ORDER)).status == SwapStatus.FAILED

    @pytest.mark.asyncio
    async def test_secret_mismatch_ignored(self, ledger: SwapLedger):
        await ledger.track(ORDER, hashlock=HASHLOCK)

        assert await ledger.update_status(ORDER, SwapStatus.ORDER_FILLED, {"secret": h32(0x99)}) is None

        swap = await ledger.get_swap(ORDER)
        assert swap.secret is None
        assert swap.status == SwapStatus.CREATED

    @pytest.mark.asyncio
    async def test_completed_requires_both_withdrawals(self, ledger: SwapLedger):
        await deposited_both(ledger)

        assert await ledger.update_status(ORDER, SwapStatus.COMPLETED) is None
        assert (await ledger.get_swap(ORDER)).status == SwapStatus.BOB_DEPOSITED

    @pytest.mark.asyncio
    async def test_completion_source_first(self, ledger: SwapLedger):
        await deposited_both(ledger)
        await ledger.update_status(ORDER, SwapStatus.SECRET_REVEALED, {"secret_revealed_at": utcnow()})

        swap = await ledger.update_status(
            ORDER, SwapStatus.SOURCE_WITHDRAWN, {"src_withdrawn_at": utcnow()}
        )
        assert swap.status == SwapStatus.SOURCE_WITHDRAWN
        assert swap.completed_at is None

        swap = await ledger.update_status(
            ORDER, SwapStatus.DEST_WITHDRAWN, {"dst_withdrawn_at": utcnow()}
        )
        assert swap.status == SwapStatus.COMPLETED
        assert swap.completed_at is not None

    @pytest.mark.asyncio
    async def test_completion_destination_first(self, ledger: SwapLedger):
        await deposited_both(ledger)

        swap = await ledger.update_status(
            ORDER,
            SwapStatus.DEST_WITHDRAWN,
            {"dst_withdrawn_at": utcnow(), "secret_revealed_at": utcnow()},
        )
        assert swap.status == SwapStatus.DEST_WITHDRAWN

        swap = await ledger.update_status(
            ORDER, SwapStatus.SOURCE_WITHDRAWN, {"src_withdrawn_at": utcnow()}
        )
        assert swap.status == SwapStatus.COMPLETED
        assert swap.is_terminal

    @pytest.mark.asyncio
    async def test_increment_retry(self, ledger: SwapLedger):
        await ledger.track(ORDER)

        await ledger.increment_retry(ORDER, "rpc down")
        swap = await ledger.increment_retry(ORDER)

        assert swap.retry_count == 2
        assert swap.last_error == "rpc down"
        assert swap.status == SwapStatus.CREATED

    @pytest.mark.asyncio
    async def test_unknown_patch_field(self, ledger: SwapLedger):
        await ledger.track(ORDER)
        with pytest.raises(ValueError):
            await ledger.update_status(ORDER, SwapStatus.ORDER_FILLED, {"status": "completed"})

    def test_transition_table(self):
        assert can_transition(SwapStatus.CREATED, SwapStatus.ALICE_DEPOSITED)
        assert can_transition(SwapStatus.SOURCE_WITHDRAWN, SwapStatus.DEST_WITHDRAWN)
        assert can_transition(SwapStatus.DEST_WITHDRAWN, SwapStatus.SOURCE_WITHDRAWN)
        assert can_transition(SwapStatus.BOB_DEPOSITED, SwapStatus.FAILED)
        assert not can_transition(SwapStatus.BOB_DEPOSITED, SwapStatus.ALICE_DEPOSITED)
        assert not can_transition(SwapStatus.COMPLETED, SwapStatus.FAILED)
        assert not can_transition(SwapStatus.EXPIRED, SwapStatus.CREATED)


class TestConcurrency:
    """Tests for isolation between concurrent writers."""

    @pytest.mark.asyncio
    async def test_concurrent_updates_on_distinct_keys(self, ledger: SwapLedger):
        orders = [h32(i) for i in range(1, 101)]
        for order in orders:
            await ledger.track(order)

        async def update(i: int, order: str):
            await ledger.update_status(
                order,
                SwapStatus.ORDER_FILLED,
                {"src_amount": i, "meta": {"writer": i}},
            )

        await asyncio.gather(*(update(i, order) for i, order in enumerate(orders, start=1)))

        for i, order in enumerate(orders, start=1):
            swap = await ledger.get_swap(order)
            assert swap.status == SwapStatus.ORDER_FILLED
            assert swap.src_amount == i
            assert swap.meta == {"writer": i}

    @pytest.mark.asyncio
    async def test_concurrent_updates_on_one_key(self, ledger: SwapLedger):
        await ledger.track(ORDER)

        await asyncio.gather(*(ledger.increment_retry(ORDER) for _ in range(25)))

        assert (await ledger.get_swap(ORDER)).retry_count == 25

    @pytest.mark.asyncio
    async def test_stale_write_detected(self, ledger: SwapLedger, database):
        await ledger.track(ORDER)

        with pytest.raises(StaleDataError):
            async with database.session() as session:
                stale = await LedgerRepository(session).get_swap(ORDER)
                await ledger.update_status(ORDER, SwapStatus.ORDER_FILLED)
                stale.retry_count = 99

        swap = await ledger.get_swap(ORDER)
        assert swap.status == SwapStatus.ORDER_FILLED
        assert swap.retry_count == 0


class TestQueries:
    """Tests for ledger queries."""

    @pytest.mark.asyncio
    async def test_lookup_by_hashlock_and_escrow(self, ledger: SwapLedger):
        await deposited_both(ledger)

        assert (await ledger.get_swap_by_hashlock(HASHLOCK)).order_hash == ORDER
        assert (await ledger.get_swap_by_escrow(SRC_CHAIN_ID, SRC_ESCROW)).order_hash == ORDER
        assert (await ledger.get_swap_by_escrow(DST_CHAIN_ID, DST_ESCROW)).order_hash == ORDER
        assert await ledger.get_swap_by_escrow(DST_CHAIN_ID, SRC_ESCROW) is None

    @pytest.mark.asyncio
    async def test_awaiting_secret_reveal(self, ledger: SwapLedger):
        await deposited_both(ledger)

        assert [s.order_hash for s in await ledger.awaiting_secret_reveal()] == [ORDER]

        await ledger.update_status(ORDER, SwapStatus.SECRET_REVEALED, {"secret_revealed_at": utcnow()})
        assert await ledger.awaiting_secret_reveal() == []

    @pytest.mark.asyncio
    async def test_awaiting_withdrawal(self, ledger: SwapLedger):
        await deposited_both(ledger)
        assert await ledger.awaiting_withdrawal() == []

        await ledger.update_status(ORDER, SwapStatus.SECRET_REVEALED, {"secret_revealed_at": utcnow()})
        waiting = await ledger.awaiting_withdrawal()
        assert [s.order_hash for s in waiting] == [ORDER]
        assert withdrawal_sides_due(waiting[0]) == ["src", "dst"]

        swap = await ledger.update_status(
            ORDER, SwapStatus.SOURCE_WITHDRAWN, {"src_withdrawn_at": utcnow()}
        )
        assert ledger.withdrawal_sides_due(swap) == ["dst"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("terminal", [SwapStatus.FAILED, SwapStatus.EXPIRED])
    async def test_destination_withdrawal_due_on_terminal_swap(self, ledger: SwapLedger, terminal):
        await deposited_both(ledger)
        await ledger.update_status(ORDER, SwapStatus.SECRET_REVEALED, {"secret_revealed_at": utcnow()})
        await ledger.update_status(ORDER, terminal, {"last_error": "gave up"})

        waiting = await ledger.awaiting_withdrawal()
        assert [s.order_hash for s in waiting] == [ORDER]
        assert withdrawal_sides_due(waiting[0]) == [SIDE_DESTINATION]

        swap = await ledger.record_terminal_withdrawal(ORDER, SIDE_DESTINATION)
        assert swap.status == terminal
        assert swap.dst_withdrawn_at is not None
        assert await ledger.awaiting_withdrawal() == []
        assert await ledger.record_terminal_withdrawal(ORDER, SIDE_DESTINATION) is None

    @pytest.mark.asyncio
    async def test_terminal_withdrawal_refused_on_active_swap(self, ledger: SwapLedger):
        await deposited_both(ledger)

        assert await ledger.record_terminal_withdrawal(ORDER, SIDE_DESTINATION) is None
        assert (await ledger.get_swap(ORDER)).dst_withdrawn_at is None

    @pytest.mark.asyncio
    async def test_pending_and_by_status(self, ledger: SwapLedger):
        await ledger.track(h32(1))
        await ledger.track(h32(2))
        await ledger.mark_failed(h32(2), "nope")

        assert [s.order_hash for s in await ledger.get_pending_swaps()] == [h32(1)]
        assert [s.order_hash for s in await ledger.get_swaps_by_status(SwapStatus.FAILED)] == [h32(2)]


class TestMaintenance:
    """Tests for expiry, statistics and cleanup."""

    @pytest.mark.asyncio
    async def test_check_expired(self, ledger: SwapLedger):
        await ledger.track(h32(1))
        await deposited_both(ledger, h32(2))
        await ledger.update_status(
            h32(2),
            SwapStatus.DEST_WITHDRAWN,
            {"src_withdrawn_at": utcnow(), "dst_withdrawn_at": utcnow(), "secret_revealed_at": utcnow()},
        )

        assert await ledger.check_expired(3600) == 0

        later = utcnow() + timedelta(hours=2)
        assert await ledger.check_expired(3600, now=later) == 1

        expired = await ledger.get_swap(h32(1))
        assert expired.status == SwapStatus.EXPIRED
        assert expired.last_error == "Swap expired after 3600 seconds"
        assert (await ledger.get_swap(h32(2))).status == SwapStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_check_expired_leaves_failed_alone(self, ledger: SwapLedger):
        await ledger.track(h32(1))
        await ledger.mark_failed(h32(1), "execution reverted")

        later = utcnow() + timedelta(hours=2)
        assert await ledger.check_expired(3600, now=later) == 0

        swap = await ledger.get_swap(h32(1))
        assert swap.status == SwapStatus.FAILED
        assert swap.last_error == "execution reverted"

    @pytest.mark.asyncio
    async def test_statistics(self, ledger: SwapLedger):
        assert (await ledger.get_statistics())["success_rate"] == 0.0

        await ledger.track(h32(1))
        await ledger.track(h32(2))
        await ledger.mark_failed(h32(2), "nope")
        await deposited_both(ledger, h32(3))
        await ledger.update_status(
            h32(3),
            SwapStatus.SOURCE_WITHDRAWN,
            {"src_withdrawn_at": utcnow(), "dst_withdrawn_at": utcnow(), "secret_revealed_at": utcnow()},
        )

        stats = await ledger.get_statistics()
        assert stats["total"] == 3
        assert stats["completed"] == 1
        assert stats["pending"] == 1
        assert stats["failed"] == 1
        assert stats["expired"] == 0
        assert stats["success_rate"] == pytest.approx(100 / 3)

    @pytest.mark.asyncio
    async def test_cleanup_old(self, ledger: SwapLedger):
        await ledger.track(h32(1))
        await deposited_both(ledger, h32(2))
        await ledger.update_status(
            h32(2),
            SwapStatus.SOURCE_WITHDRAWN,
            {"src_withdrawn_at": utcnow(), "dst_withdrawn_at": utcnow(), "secret_revealed_at": utcnow()},
        )

        assert await ledger.cleanup_old(7) == 0
        assert await ledger.cleanup_old(7, now=utcnow() + timedelta(days=8)) == 1

        assert await ledger.get_swap(h32(2)) is None
        assert await ledger.get_swap(h32(1)) is not None

    @pytest.mark.asyncio
    async def test_cleanup_prunes_locks(self, database):
        locks = KeyLockRegistry("ledger", timeout=10.0)
        ledger = SwapLedger(database, locks)
        await ledger.track(h32(1))
        await deposited_both(ledger, h32(2))
        await ledger.update_status(
            h32(2),
            SwapStatus.SOURCE_WITHDRAWN,
            {"src_withdrawn_at": utcnow(), "dst_withdrawn_at": utcnow(), "secret_revealed_at": utcnow()},
        )
        assert len(locks) == 2

        removed = []
        deleted = await ledger.cleanup_old(7, now=utcnow() + timedelta(days=8), on_deleted=removed.extend)

        assert deleted == 1
        assert removed == [(h32(2), HASHLOCK)]
        assert len(locks) == 1


class TestEventJournal:
    """Tests for the processed-event journal."""

    @pytest.mark.asyncio
    async def test_mark_and_check(self, ledger: SwapLedger):
        key = (SRC_CHAIN_ID, h32(0x77), 3)

        assert await ledger.is_event_processed(key) is False
        assert await ledger.mark_event_processed(key, "order_filled", ORDER) is True
        assert await ledger.is_event_processed(key) is True
        assert await ledger.mark_event_processed(key, "order_filled", ORDER) is False

        assert await ledger.is_event_processed((DST_CHAIN_ID, h32(0x77), 3)) is False
        assert await ledger.is_event_processed((SRC_CHAIN_ID, h32(0x77), 4)) is False
