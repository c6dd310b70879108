from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from token_tracker.errors import ConflictError
from token_tracker.storage.models import (
    Erc20Transfer,
    TokenWhitelist,
    Wallet,
    WalletSyncState,
    WalletTag,
    WalletTokenBalance,
)

if TYPE_CHECKING:
    from token_tracker.sync.classifier import TransferEvent


def _dialect_insert(session: AsyncSession):
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


def _is_unique_violation(exc: IntegrityError) -> bool:
    # sqlite: "UNIQUE constraint failed", postgres: "duplicate key value violates unique constraint"
    text = str(exc.orig).lower()
    return "unique" in text or "duplicate key" in text


# --- Wallets & whitelist (read side of admin-managed data) ---


async def find_wallets(
    session: AsyncSession,
    tag: str | None = None,
    address: str | None = None,
) -> list[Wallet]:
    stmt = select(Wallet).order_by(Wallet.id)
    if tag:
        stmt = stmt.where(Wallet.tags.any(WalletTag.tag == tag))
    if address:
        stmt = stmt.where(func.lower(Wallet.address) == address.lower())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def find_whitelist(
    session: AsyncSession,
    chain: str,
    contract_address: str | None = None,
) -> list[TokenWhitelist]:
    stmt = (
        select(TokenWhitelist)
        .where(TokenWhitelist.chain == chain)
        .order_by(TokenWhitelist.token_name)
    )
    if contract_address:
        stmt = stmt.where(
            func.lower(TokenWhitelist.contract_address) == contract_address.lower()
        )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# --- Ingestion writes ---


async def insert_transfer(
    session: AsyncSession,
    wallet_id: int,
    network: str,
    event: TransferEvent,
) -> Erc20Transfer:
    """Insert one transfer; raises ConflictError if its natural key already exists."""
    row = Erc20Transfer(wallet_id=wallet_id, network=network, **event.model_dump())
    session.add(row)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        if _is_unique_violation(exc):
            raise ConflictError(
                f"transfer {event.tx_hash}#{event.log_index} already stored for wallet {wallet_id}"
            ) from exc
        raise
    return row


async def upsert_sync_state(
    session: AsyncSession,
    wallet_id: int,
    backfill_completed: bool,
    last_synced_at: datetime,
) -> None:
    insert = _dialect_insert(session)
    stmt = insert(WalletSyncState).values(
        wallet_id=wallet_id,
        backfill_completed=backfill_completed,
        last_synced_at=last_synced_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["wallet_id"],
        set_={
            "backfill_completed": stmt.excluded.backfill_completed,
            "last_synced_at": stmt.excluded.last_synced_at,
        },
    )
    await session.execute(stmt)
    await session.commit()


async def upsert_balance(
    session: AsyncSession,
    wallet_id: int,
    token_contract: str,
    token_name: str,
    token_symbol: str | None,
    balance_raw: str,
    balance: float,
    fetched_at: datetime,
) -> None:
    insert = _dialect_insert(session)
    stmt = insert(WalletTokenBalance).values(
        wallet_id=wallet_id,
        token_contract=token_contract,
        token_name=token_name,
        token_symbol=token_symbol,
        balance_raw=balance_raw,
        balance=balance,
        fetched_at=fetched_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["wallet_id", "token_contract"],
        set_={
            "token_name": stmt.excluded.token_name,
            "token_symbol": stmt.excluded.token_symbol,
            "balance_raw": stmt.excluded.balance_raw,
            "balance": stmt.excluded.balance,
            "fetched_at": stmt.excluded.fetched_at,
        },
    )
    await session.execute(stmt)
    await session.commit()


# --- Reads for status & reporting ---


async def get_sync_states(session: AsyncSession) -> dict[int, WalletSyncState]:
    result = await session.execute(select(WalletSyncState))
    return {s.wallet_id: s for s in result.scalars().all()}


async def get_known_decimals(session: AsyncSession, contract_address: str) -> int | None:
    """Decimals reported by the explorer on the most recent ingested transfer of a token."""
    stmt = (
        select(Erc20Transfer.token_decimals)
        .where(
            func.lower(Erc20Transfer.token_contract) == contract_address.lower(),
            Erc20Transfer.token_decimals.is_not(None),
        )
        .order_by(Erc20Transfer.block_number.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_transfers(
    session: AsyncSession,
    wallet_tag: str | None = None,
    token_contract: str | None = None,
    direction: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[dict]:
    stmt = (
        select(Erc20Transfer, Wallet.address, Wallet.number)
        .join(Wallet, Wallet.id == Erc20Transfer.wallet_id)
        .order_by(Erc20Transfer.block_timestamp.desc())
    )
    if wallet_tag:
        stmt = stmt.where(Wallet.tags.any(WalletTag.tag == wallet_tag))
    if token_contract:
        stmt = stmt.where(
            func.lower(Erc20Transfer.token_contract) == token_contract.lower()
        )
    if direction:
        stmt = stmt.where(Erc20Transfer.direction == direction)
    if start:
        stmt = stmt.where(Erc20Transfer.block_timestamp >= start)
    if end:
        stmt = stmt.where(Erc20Transfer.block_timestamp <= end)

    result = await session.execute(stmt)
    rows = []
    for transfer, address, number in result.all():
        rows.append({
            "wallet_address": address,
            "wallet_number": number or "",
            "direction": transfer.direction,
            "token_contract": transfer.token_contract,
            "token_name": transfer.token_name,
            "token_symbol": transfer.token_symbol,
            "amount": transfer.amount_normalized,
            "amount_raw": transfer.amount_raw,
            "tx_hash": transfer.tx_hash,
            "block_timestamp": transfer.block_timestamp,
        })
    return rows


async def list_balances(
    session: AsyncSession,
    wallet_tag: str | None = None,
    token_contract: str | None = None,
) -> list[dict]:
    stmt = (
        select(WalletTokenBalance, Wallet.address, Wallet.number)
        .join(Wallet, Wallet.id == WalletTokenBalance.wallet_id)
        .order_by(Wallet.id)
    )
    if wallet_tag:
        stmt = stmt.where(Wallet.tags.any(WalletTag.tag == wallet_tag))
    if token_contract:
        stmt = stmt.where(
            func.lower(WalletTokenBalance.token_contract) == token_contract.lower()
        )

    result = await session.execute(stmt)
    return [
        {
            "wallet_address": address,
            "wallet_number": number or "",
            "token_contract": bal.token_contract,
            "token_name": bal.token_name,
            "token_symbol": bal.token_symbol,
            "balance": bal.balance,
            "balance_raw": bal.balance_raw,
            "fetched_at": bal.fetched_at,
        }
        for bal, address, number in result.all()
    ]
