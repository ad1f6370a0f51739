"""Tests for the coordination engine."""

import asyncio

import pytest

from bmn_resolver.chains import ChainConfig
from bmn_resolver.ledger import SecretStatus, SecretVault, SwapLedger, SwapStatus
from bmn_resolver.services import CoordinationEngine
from bmn_resolver.utils.locks import KeyLockRegistry
from bmn_resolver.watcher import (
    DestinationEscrowCreated,
    EscrowWithdrawn,
    OrderFilled,
    PostInteractionExecuted,
    PostInteractionFailed,
    SourceEscrowCreated,
)
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


def base(chain_id: int = SRC_CHAIN_ID, tx: int = 0x01, log_index: int = 0, block: int = 100) -> dict:
    return {"chain_id": chain_id, "block_number": block, "tx_hash": h32(tx), "log_index": log_index}


def order_filled(**kwargs) -> OrderFilled:
    return OrderFilled(**base(**kwargs), order_hash=ORDER, remaining_amount=0)


def src_escrow_created(**kwargs) -> SourceEscrowCreated:
    return SourceEscrowCreated(
        **base(**kwargs), escrow=SRC_ESCROW, taker=BOB, amount=10**18, order_hash=ORDER, maker=ALICE
    )


def dst_escrow_created(hashlock: str = HASHLOCK, **kwargs) -> DestinationEscrowCreated:
    return DestinationEscrowCreated(
        **base(chain_id=DST_CHAIN_ID, **kwargs), escrow=DST_ESCROW, hashlock=hashlock, taker=BOB
    )


def withdrawn(chain_id: int, escrow: str, secret: str = SECRET, **kwargs) -> EscrowWithdrawn:
    return EscrowWithdrawn(**base(chain_id=chain_id, **kwargs), escrow=escrow, receiver=BOB, secret=secret)


@pytest.fixture
def engine(
    ledger: SwapLedger,
    vault: SecretVault,
    chains: dict[int, ChainConfig],
    action_locks: KeyLockRegistry,
) -> CoordinationEngine:
    return CoordinationEngine(ledger, vault, chains, action_locks)


class TestRegisterOrder:
    """Tests for registering orders."""

    @pytest.mark.asyncio
    async def test_register_with_secret(self, engine: CoordinationEngine, vault: SecretVault):
        swap = await engine.register_order(
            ORDER, secret=SECRET, alice=ALICE, src_chain_id=SRC_CHAIN_ID, dst_chain_id=DST_CHAIN_ID
        )

        assert swap.status == SwapStatus.CREATED
        assert swap.hashlock == HASHLOCK
        assert swap.secret == SECRET
        assert await vault.get_by_order_hash(ORDER) == SECRET

    @pytest.mark.asyncio
    async def test_register_secret_for_known_order(self, engine: CoordinationEngine, ledger: SwapLedger):
        await ledger.track(ORDER, hashlock=HASHLOCK)

        swap = await engine.register_order(ORDER, secret=SECRET)

        assert swap.secret == SECRET
        assert (await ledger.get_swap(ORDER)).secret == SECRET


class TestEventHandling:
    """Tests for applying chain events."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, engine: CoordinationEngine, ledger: SwapLedger, vault: SecretVault):
        await engine.register_order(
            ORDER, secret=SECRET, alice=ALICE, src_chain_id=SRC_CHAIN_ID, dst_chain_id=DST_CHAIN_ID
        )

        assert await engine.handle_event(order_filled(tx=1))
        assert (await ledger.get_swap(ORDER)).status == SwapStatus.ORDER_FILLED

        assert await engine.handle_event(src_escrow_created(tx=1, log_index=1))
        swap = await ledger.get_swap(ORDER)
        assert swap.status == SwapStatus.ALICE_DEPOSITED
        assert swap.src_escrow == SRC_ESCROW
        assert swap.bob == BOB
        assert swap.src_amount == 10**18
        assert swap.src_deposited_at is not None

        assert await engine.handle_event(dst_escrow_created(tx=2))
        swap = await ledger.get_swap(ORDER)
        assert swap.status == SwapStatus.BOB_DEPOSITED
        assert swap.dst_escrow == DST_ESCROW

        assert await engine.handle_event(withdrawn(DST_CHAIN_ID, DST_ESCROW, tx=3))
        swap = await ledger.get_swap(ORDER)
        assert swap.status == SwapStatus.DEST_WITHDRAWN
        assert swap.secret_revealed_at is not None
        assert swap.secret_reveal_tx_hash == h32(3)
        record = await vault.get_record(HASHLOCK)
        assert record.status == SecretStatus.CONFIRMED
        assert record.tx_hash == h32(3)

        assert await engine.handle_event(withdrawn(SRC_CHAIN_ID, SRC_ESCROW, tx=4))
        swap = await ledger.get_swap(ORDER)
        assert swap.status == SwapStatus.COMPLETED
        assert swap.completed_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_event_dropped(self, engine: CoordinationEngine, ledger: SwapLedger):
        event = order_filled()

        assert await engine.handle_event(event) is True
        assert await engine.handle_event(event) is False
        assert await ledger.is_event_processed(event.key)

    @pytest.mark.asyncio
    async def test_source_escrow_before_fill(self, engine: CoordinationEngine, ledger: SwapLedger):
        """Events of one transaction can arrive in any order."""
        assert await engine.handle_event(src_escrow_created(log_index=1))
        swap = await ledger.get_swap(ORDER)
        assert swap.status == SwapStatus.ALICE_DEPOSITED
        assert swap.src_chain_id == SRC_CHAIN_ID
        assert swap.dst_chain_id == DST_CHAIN_ID
        assert swap.alice == ALICE

        assert await engine.handle_event(order_filled(log_index=0))
        assert (await ledger.get_swap(ORDER)).status == SwapStatus.ALICE_DEPOSITED

    @pytest.mark.asyncio
    async def test_post_interaction_executed(self, engine: CoordinationEngine, ledger: SwapLedger):
        event = PostInteractionExecuted(
            **base(), order_hash=ORDER, taker=BOB, src_escrow=SRC_ESCROW, dst_escrow=DST_ESCROW
        )

        assert await engine.handle_event(event)

        swap = await ledger.get_swap(ORDER)
        assert swap.status == SwapStatus.ALICE_DEPOSITED
        assert swap.src_escrow == SRC_ESCROW
        assert swap.dst_escrow is None
        assert swap.meta["expected_dst_escrow"] == DST_ESCROW

    @pytest.mark.asyncio
    async def test_post_interaction_failed(self, engine: CoordinationEngine, ledger: SwapLedger):
        await ledger.track(ORDER)
        event = PostInteractionFailed(**base(), order_hash=ORDER, taker=BOB, reason="bad timelocks")

        assert await engine.handle_event(event)

        swap = await ledger.get_swap(ORDER)
        assert swap.status == SwapStatus.FAILED
        assert swap.last_error == "PostInteraction failed: bad timelocks"

    @pytest.mark.asyncio
    async def test_uncorrelated_event_not_journaled(self, engine: CoordinationEngine, ledger: SwapLedger):
        event = dst_escrow_created(hashlock=h32(0x01))

        assert await engine.handle_event(event) is False
        assert await ledger.is_event_processed(event.key) is False

    @pytest.mark.asyncio
    async def test_withdrawal_with_wrong_secret_ignored(
        self, engine: CoordinationEngine, ledger: SwapLedger, vault: SecretVault
    ):
        await engine.handle_event(src_escrow_created())
        await ledger.update_status(ORDER, SwapStatus.ALICE_DEPOSITED, {"hashlock": HASHLOCK})
        await engine.handle_event(dst_escrow_created(tx=2))

        assert await engine.handle_event(withdrawn(DST_CHAIN_ID, DST_ESCROW, secret=h32(0x99), tx=3))

        swap = await ledger.get_swap(ORDER)
        assert swap.status == SwapStatus.BOB_DEPOSITED
        assert swap.secret is None
        assert not await vault.has_secret(HASHLOCK)

    @pytest.mark.asyncio
    async def test_events_for_terminal_swap_ignored(self, engine: CoordinationEngine, ledger: SwapLedger):
        await ledger.track(ORDER)
        await ledger.mark_failed(ORDER, "gave up")

        assert await engine.handle_event(src_escrow_created())
        swap = await ledger.get_swap(ORDER)
        assert swap.status == SwapStatus.FAILED
        assert swap.src_escrow is None

    @pytest.mark.asyncio
    async def test_withdrawal_on_failed_swap_recorded(
        self, engine: CoordinationEngine, ledger: SwapLedger, vault: SecretVault
    ):
        await engine.handle_event(src_escrow_created())
        await ledger.update_status(ORDER, SwapStatus.ALICE_DEPOSITED, {"hashlock": HASHLOCK})
        await engine.handle_event(dst_escrow_created(tx=2))
        await ledger.mark_failed(ORDER, "counterparty timeout")

        assert await engine.handle_event(withdrawn(DST_CHAIN_ID, DST_ESCROW, tx=3))

        swap = await ledger.get_swap(ORDER)
        assert swap.status == SwapStatus.FAILED
        assert swap.dst_withdrawn_at is not None
        assert swap.src_withdrawn_at is None
        assert (await vault.get_record(HASHLOCK)).status == SecretStatus.CONFIRMED


class TestEngineLoop:
    """Tests for the queue consumer."""

    @pytest.mark.asyncio
    async def test_consumes_queue_until_stopped(self, engine: CoordinationEngine, ledger: SwapLedger):
        engine.start()

        await engine.queue.put(order_filled())
        await engine.queue.put(order_filled())
        await engine.queue.put(src_escrow_created(log_index=1))
        await asyncio.wait_for(engine.queue.join(), timeout=5.0)

        assert (await ledger.get_swap(ORDER)).status == SwapStatus.ALICE_DEPOSITED

        await engine.stop()
        await engine.stop()

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_loop(self, engine: CoordinationEngine, ledger: SwapLedger):
        engine.start()

        await engine.queue.put("not an event")
        await engine.queue.put(order_filled())
        await asyncio.wait_for(engine.queue.join(), timeout=5.0)

        assert (await ledger.get_swap(ORDER)).status == SwapStatus.ORDER_FILLED
        await engine.stop()
