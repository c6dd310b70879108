"""Top-level sync runs and the trigger/status surface used by the web layer and worker.

A run walks every wallet in order, one at a time. Any unrecoverable error
ends the whole run: it is recorded on the run state and nothing is rolled
back. Triggers are fire-and-forget; callers poll the status functions.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from token_tracker.config import settings
from token_tracker.storage.database import async_session, engine
from token_tracker.storage.models import TokenWhitelist, Wallet
from token_tracker.storage.repository import find_wallets, find_whitelist
from token_tracker.sync.classifier import TransferEvent, build_whitelist_map
from token_tracker.sync.engine import (
    SyncObserver,
    WalletSyncResult,
    resolve_token_decimals,
    snapshot_wallet_balances,
    sync_wallet_transfers,
)
from token_tracker.sync.rate_gate import Pacer, RateGate, create_exclusive_delay
from token_tracker.sync.state import SyncRunState, balance_sync_state, transfer_sync_state
from token_tracker.upstream.etherscan import EtherscanClient

logger = logging.getLogger(__name__)

# Strong refs so fire-and-forget runs are not garbage-collected mid-flight
_background_tasks: set[asyncio.Task] = set()

_rate_gate: RateGate | None = None


def get_rate_gate() -> RateGate:
    """Process-wide gate, shared by every client this process builds."""
    global _rate_gate
    if _rate_gate is None:
        _rate_gate = RateGate(create_exclusive_delay(engine))
    return _rate_gate


def _short(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


class RunStateObserver(SyncObserver):
    """Mirrors engine progress into a ``SyncRunState`` for pollers."""

    def __init__(self, state: SyncRunState) -> None:
        self.state = state

    def on_page(self, wallet: Wallet, page: int, records: int, events_seen: int, inserted: int) -> None:
        self.state.log(
            f"{_short(wallet.address)} page {page}: {records} rows, "
            f"{events_seen} tracked events, {inserted} new"
        )

    def on_transfer_inserted(self, wallet: Wallet, event: TransferEvent, inserted: int) -> None:
        self.state.bump("inserted")

    def on_wallet_done(self, wallet: Wallet, result: WalletSyncResult) -> None:
        self.state.processed += 1
        self.state.bump("events_seen", result.events_seen)
        self.state.log(
            f"{_short(wallet.address)} done: {result.inserted} new of {result.events_seen} "
            f"events, {result.pages_scanned} pages"
        )

    def on_balance(self, wallet: Wallet, token: TokenWhitelist, balance: float) -> None:
        self.state.processed += 1
        self.state.bump("fetched")

    def on_retry(self, attempt: int, reason: str) -> None:
        self.state.log(f"retry #{attempt}: {reason}", level="warning")


async def _load_inputs(
    session_factory: async_sessionmaker[AsyncSession],
    wallet_tag: str | None = None,
    token_contract: str | None = None,
) -> tuple[list[Wallet], list[TokenWhitelist]]:
    async with session_factory() as session:
        wallets = await find_wallets(session, tag=wallet_tag)
        whitelist = await find_whitelist(session, settings.network_tag, contract_address=token_contract)
    return wallets, whitelist


async def run_transfer_sync(
    wallets: Sequence[Wallet] | None = None,
    whitelist: Sequence[TokenWhitelist] | None = None,
    *,
    client: EtherscanClient | None = None,
    session_factory: async_sessionmaker[AsyncSession] = async_session,
    pacer: Pacer | None = None,
    state: SyncRunState = transfer_sync_state,
    claimed: bool = False,
) -> bool:
    """Backfill every wallet's transfer history. False if a run was already active.

    ``claimed`` means the caller already took the run slot with ``try_start``.
    """
    if not claimed and not state.try_start():
        return False

    observer = RunStateObserver(state)
    owned_client = client is None
    try:
        if wallets is None or whitelist is None:
            loaded_wallets, loaded_whitelist = await _load_inputs(session_factory)
            wallets = loaded_wallets if wallets is None else wallets
            whitelist = loaded_whitelist if whitelist is None else whitelist

        if owned_client:
            client = EtherscanClient(
                before_request=get_rate_gate().acquire_slot,
                on_retry=observer.on_retry,
            )

        whitelist_map = build_whitelist_map(whitelist)
        pacer = pacer or Pacer(settings.min_interval_seconds)
        state.total = len(wallets)
        state.log(f"Transfer sync started: {len(wallets)} wallets, {len(whitelist_map)} tokens")
        if not whitelist_map:
            state.log("Token whitelist is empty; no transfers will be stored", level="warning")

        for wallet in wallets:
            await sync_wallet_transfers(
                wallet,
                whitelist_map,
                client=client,
                session_factory=session_factory,
                pacer=pacer,
                observer=observer,
            )
    except Exception as exc:
        logger.exception("Transfer sync failed")
        state.log(f"Transfer sync failed: {exc}", level="error")
        state.finish(error=f"{type(exc).__name__}: {exc}")
    else:
        state.log(
            f"Transfer sync finished: {state.counters.get('inserted', 0)} new transfers"
        )
        state.finish()
    finally:
        if owned_client and client is not None:
            await client.aclose()
    return True


async def run_balance_sync(
    wallets: Sequence[Wallet] | None = None,
    whitelist: Sequence[TokenWhitelist] | None = None,
    *,
    wallet_tag: str | None = None,
    token_contract: str | None = None,
    client: EtherscanClient | None = None,
    session_factory: async_sessionmaker[AsyncSession] = async_session,
    pacer: Pacer | None = None,
    state: SyncRunState = balance_sync_state,
    claimed: bool = False,
) -> bool:
    """Snapshot explorer balances for every wallet × whitelisted token pair."""
    if not claimed and not state.try_start():
        return False

    observer = RunStateObserver(state)
    owned_client = client is None
    try:
        if wallets is None or whitelist is None:
            loaded_wallets, loaded_whitelist = await _load_inputs(
                session_factory, wallet_tag=wallet_tag, token_contract=token_contract
            )
            wallets = loaded_wallets if wallets is None else wallets
            whitelist = loaded_whitelist if whitelist is None else whitelist

        if owned_client:
            client = EtherscanClient(
                before_request=get_rate_gate().acquire_slot,
                on_retry=observer.on_retry,
            )

        decimals = await resolve_token_decimals(whitelist, session_factory)
        pacer = pacer or Pacer(settings.min_interval_seconds)
        state.total = len(wallets) * len(whitelist)
        state.log(f"Balance sync started: {len(wallets)} wallets x {len(whitelist)} tokens")

        for wallet in wallets:
            await snapshot_wallet_balances(
                wallet,
                whitelist,
                decimals,
                client=client,
                session_factory=session_factory,
                pacer=pacer,
                observer=observer,
            )
            state.log(f"{_short(wallet.address)}: balances updated")
    except Exception as exc:
        logger.exception("Balance sync failed")
        state.log(f"Balance sync failed: {exc}", level="error")
        state.finish(error=f"{type(exc).__name__}: {exc}")
    else:
        state.log(f"Balance sync finished: {state.counters.get('fetched', 0)} balances")
        state.finish()
    finally:
        if owned_client and client is not None:
            await client.aclose()
    return True


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def trigger_transfer_sync(**kwargs) -> bool:
    """Start a transfer sync in the background. False if one is already running here."""
    if not transfer_sync_state.try_start():
        return False
    _spawn(run_transfer_sync(claimed=True, **kwargs))
    return True


def get_transfer_sync_status() -> dict:
    return transfer_sync_state.snapshot()


def trigger_balance_sync(
    wallet_tag: str | None = None,
    token_contract: str | None = None,
    **kwargs,
) -> bool:
    if not balance_sync_state.try_start():
        return False
    _spawn(
        run_balance_sync(
            wallet_tag=wallet_tag, token_contract=token_contract, claimed=True, **kwargs
        )
    )
    return True


def get_balance_sync_status() -> dict:
    return balance_sync_state.snapshot()
