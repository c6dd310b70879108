"""Per-wallet ingestion: paginate explorer history, classify, store idempotently."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from token_tracker.config import settings
from token_tracker.errors import ConflictError
from token_tracker.storage.database import async_session
from token_tracker.storage.models import TokenWhitelist, Wallet
from token_tracker.storage.repository import (
    get_known_decimals,
    insert_transfer,
    upsert_balance,
    upsert_sync_state,
)
from token_tracker.sync.classifier import (
    TransferEvent,
    WhitelistedToken,
    classify_transfer,
    normalize_address,
    normalize_amount,
)
from token_tracker.sync.rate_gate import Pacer
from token_tracker.upstream.etherscan import EtherscanClient

logger = logging.getLogger(__name__)


class SyncObserver:
    """Progress hooks for a sync run. Every method is optional; none affect the sync."""

    def on_page(self, wallet: Wallet, page: int, records: int, events_seen: int, inserted: int) -> None:
        pass

    def on_transfer_inserted(self, wallet: Wallet, event: TransferEvent, inserted: int) -> None:
        pass

    def on_wallet_done(self, wallet: Wallet, result: WalletSyncResult) -> None:
        pass

    def on_balance(self, wallet: Wallet, token: TokenWhitelist, balance: float) -> None:
        pass

    def on_retry(self, attempt: int, reason: str) -> None:
        pass


@dataclass
class WalletSyncResult:
    inserted: int = 0
    events_seen: int = 0
    pages_scanned: int = 0


async def sync_wallet_transfers(
    wallet: Wallet,
    whitelist_map: Mapping[str, WhitelistedToken],
    *,
    client: EtherscanClient,
    session_factory: async_sessionmaker[AsyncSession] = async_session,
    page_size: int | None = None,
    network: str | None = None,
    pacer: Pacer | None = None,
    observer: SyncObserver | None = None,
) -> WalletSyncResult:
    """Walk a wallet's whole transfer history and store every new whitelisted event.

    Rows already stored (same wallet, network, tx hash, log index) are skipped,
    so re-running is harmless. The wallet's sync state is stamped at the end
    even when nothing new turned up.
    """
    page_size = page_size or settings.page_size
    network = network or settings.network_tag
    observer = observer or SyncObserver()

    # read once: the ORM object may belong to a session we don't control
    wallet_id, address = wallet.id, wallet.address
    result = WalletSyncResult()

    async with session_factory() as session:
        while True:
            result.pages_scanned += 1
            if pacer is not None:
                await pacer.wait()
            records = await client.fetch_transfer_page(address, result.pages_scanned, page_size)

            for raw in records:
                event = classify_transfer(raw, address, whitelist_map)
                if event is None:
                    continue
                result.events_seen += 1
                try:
                    await insert_transfer(session, wallet_id, network, event)
                except ConflictError:
                    continue
                result.inserted += 1
                observer.on_transfer_inserted(wallet, event, result.inserted)

            observer.on_page(wallet, result.pages_scanned, len(records), result.events_seen, result.inserted)

            # a full page means there may be more; short or empty means we're done
            if len(records) < page_size:
                break

        await upsert_sync_state(
            session, wallet_id, backfill_completed=True, last_synced_at=datetime.utcnow()
        )

    logger.debug(
        "Wallet %s: %d new / %d events over %d pages",
        address, result.inserted, result.events_seen, result.pages_scanned,
    )
    observer.on_wallet_done(wallet, result)
    return result


async def resolve_token_decimals(
    tokens: Iterable[TokenWhitelist],
    session_factory: async_sessionmaker[AsyncSession] = async_session,
) -> dict[str, int]:
    """Decimals per whitelisted contract (lowercase).

    The whitelist's own value wins; otherwise whatever the explorer reported
    on ingested transfers of that token; otherwise 0.
    """
    decimals: dict[str, int] = {}
    async with session_factory() as session:
        for token in tokens:
            key = normalize_address(token.contract_address)
            if token.decimals is not None:
                decimals[key] = token.decimals
                continue
            known = await get_known_decimals(session, token.contract_address)
            if known is None:
                logger.warning(
                    "No decimals known for %s (%s); balances will be unscaled",
                    token.token_name, token.contract_address,
                )
            decimals[key] = known or 0
    return decimals


async def snapshot_wallet_balances(
    wallet: Wallet,
    tokens: Iterable[TokenWhitelist],
    decimals: Mapping[str, int],
    *,
    client: EtherscanClient,
    session_factory: async_sessionmaker[AsyncSession] = async_session,
    pacer: Pacer | None = None,
    observer: SyncObserver | None = None,
) -> int:
    """Fetch and store the current balance of every given token for one wallet."""
    observer = observer or SyncObserver()
    wallet_id, address = wallet.id, wallet.address
    stored = 0

    async with session_factory() as session:
        for token in tokens:
            if pacer is not None:
                await pacer.wait()
            raw = await client.fetch_token_balance(address, token.contract_address)
            balance = normalize_amount(raw, decimals.get(normalize_address(token.contract_address), 0))
            await upsert_balance(
                session,
                wallet_id,
                token.contract_address,
                token_name=token.token_name,
                token_symbol=token.token_symbol,
                balance_raw=raw,
                balance=balance,
                fetched_at=datetime.utcnow(),
            )
            stored += 1
            observer.on_balance(wallet, token, balance)

    return stored
