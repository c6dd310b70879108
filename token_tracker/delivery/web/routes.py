import logging
from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from token_tracker.delivery.web.dependencies import get_db
from token_tracker.reporting import (
    ledger_balances,
    pivot_stable_rows,
    sum_stable_totals,
    summarize_by_token,
    summarize_by_wallet,
)
from token_tracker.storage.repository import (
    find_wallets,
    get_sync_states,
    list_balances,
    list_transfers,
)
from token_tracker.sync.runner import (
    get_balance_sync_status,
    get_transfer_sync_status,
    trigger_balance_sync,
    trigger_transfer_sync,
)

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"

router = APIRouter()


def _trigger_response(started: bool) -> JSONResponse:
    # 202: run accepted, poll status; 409: one is already running in this process
    return JSONResponse({"started": started}, status_code=202 if started else 409)


@router.get("/health")
async def health():
    return {"ok": True, "service": "token-tracker"}


# ═══════════════════════════════════════════════════════════════════════════
# Sync triggers & status
# ═══════════════════════════════════════════════════════════════════════════

@router.post("/api/sync/transfers")
async def api_trigger_transfer_sync():
    started = trigger_transfer_sync()
    if started:
        logger.info("Transfer sync triggered via API")
    return _trigger_response(started)


@router.get("/api/sync/transfers/status")
async def api_transfer_sync_status():
    return get_transfer_sync_status()


@router.post("/api/sync/balances")
async def api_trigger_balance_sync(
    wallet_tag: str | None = None,
    token_contract: str | None = Query(None, pattern=ADDRESS_PATTERN),
):
    started = trigger_balance_sync(wallet_tag=wallet_tag, token_contract=token_contract)
    if started:
        logger.info("Balance sync triggered via API (tag=%s, token=%s)", wallet_tag, token_contract)
    return _trigger_response(started)


@router.get("/api/sync/balances/status")
async def api_balance_sync_status():
    return get_balance_sync_status()


# ═══════════════════════════════════════════════════════════════════════════
# Read-only views over ingested data
# ═══════════════════════════════════════════════════════════════════════════

@router.get("/api/wallets")
async def api_wallets(db: AsyncSession = Depends(get_db), tag: str | None = None):
    wallets = await find_wallets(db, tag=tag)
    states = await get_sync_states(db)
    out = []
    for w in wallets:
        s = states.get(w.id)
        out.append({
            "id": w.id,
            "address": w.address,
            "label": w.label,
            "number": w.number,
            "tags": w.tag_names,
            "backfill_completed": bool(s and s.backfill_completed),
            "last_synced_at": s.last_synced_at.isoformat() if s and s.last_synced_at else None,
        })
    return out


@router.get("/api/balances/ledger")
async def api_ledger_balances(
    db: AsyncSession = Depends(get_db),
    wallet_tag: str | None = None,
    token_contract: str | None = Query(None, pattern=ADDRESS_PATTERN),
    sort: Literal["asc", "desc"] = "asc",
):
    transfers = await list_transfers(db, wallet_tag=wallet_tag, token_contract=token_contract)
    rows = pivot_stable_rows(ledger_balances(transfers), sort=sort)
    return {"rows": rows, **sum_stable_totals(rows)}


@router.get("/api/balances/snapshot")
async def api_snapshot_balances(
    db: AsyncSession = Depends(get_db),
    wallet_tag: str | None = None,
    token_contract: str | None = Query(None, pattern=ADDRESS_PATTERN),
    sort: Literal["asc", "desc"] = "asc",
):
    balances = await list_balances(db, wallet_tag=wallet_tag, token_contract=token_contract)
    rows = pivot_stable_rows(balances, sort=sort)
    return {"rows": rows, **sum_stable_totals(rows)}


@router.get("/api/summary")
async def api_summary(
    db: AsyncSession = Depends(get_db),
    mode: Literal["token", "wallet"] = "token",
    direction: Literal["incoming", "outgoing"] | None = None,
    wallet_tag: str | None = None,
    token_contract: str | None = Query(None, pattern=ADDRESS_PATTERN),
    start: datetime | None = None,
    end: datetime | None = None,
):
    transfers = await list_transfers(
        db,
        wallet_tag=wallet_tag,
        token_contract=token_contract,
        direction=direction,
        start=start,
        end=end,
    )
    summary = summarize_by_token(transfers) if mode == "token" else summarize_by_wallet(transfers)
    return {"mode": mode, "transfers": len(transfers), "summary": summary}
