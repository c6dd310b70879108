"""Aggregations over stored transfers and balance snapshots.

All amounts here are the normalized float approximations, fine for
display and totals, never for exact comparisons.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Literal


def _token_key(row: dict) -> str:
    return row.get("token_symbol") or row.get("token_name") or row.get("token_contract") or "?"


def _summarize(rows: Iterable[dict], key_fn) -> dict[str, dict[str, float]]:
    summary: dict[str, dict[str, float]] = {}
    for row in rows:
        entry = summary.setdefault(key_fn(row), {"incoming": 0.0, "outgoing": 0.0})
        direction = row.get("direction")
        if direction in entry:
            entry[direction] += float(row.get("amount") or 0)
    return summary


def summarize_by_token(transfers: Iterable[dict]) -> dict[str, dict[str, float]]:
    return _summarize(transfers, _token_key)


def summarize_by_wallet(transfers: Iterable[dict]) -> dict[str, dict[str, float]]:
    return _summarize(transfers, lambda r: r.get("wallet_address", ""))


def ledger_balances(transfers: Iterable[dict]) -> list[dict]:
    """Incoming minus outgoing per (wallet, token), as recorded in our own ledger."""
    totals: dict[tuple[str, str], dict] = {}
    for t in transfers:
        key = (t.get("wallet_address", ""), (t.get("token_contract") or "").lower())
        entry = totals.setdefault(key, {
            "wallet_address": key[0],
            "wallet_number": t.get("wallet_number", ""),
            "token_contract": t.get("token_contract", ""),
            "token_name": t.get("token_name", ""),
            "token_symbol": t.get("token_symbol"),
            "balance": 0.0,
        })
        amount = float(t.get("amount") or 0)
        if t.get("direction") == "incoming":
            entry["balance"] += amount
        elif t.get("direction") == "outgoing":
            entry["balance"] -= amount
    return list(totals.values())


def pivot_stable_rows(
    rows: Iterable[dict], sort: Literal["asc", "desc"] = "asc"
) -> list[dict]:
    """One row per wallet with USDT and USDC columns, ordered by their sum."""
    by_wallet: dict[str, dict] = {}
    for r in rows:
        address = str(r.get("wallet_address") or "")
        if not address:
            continue
        entry = by_wallet.setdefault(address, {
            "wallet_address": address,
            "wallet_number": r.get("wallet_number") or "",
            "usdt": 0.0,
            "usdc": 0.0,
        })
        label = f"{r.get('token_symbol') or ''} {r.get('token_name') or ''}".upper()
        if "USDT" in label:
            entry["usdt"] += float(r.get("balance") or 0)
        if "USDC" in label:
            entry["usdc"] += float(r.get("balance") or 0)

    return sorted(
        by_wallet.values(),
        key=lambda e: e["usdt"] + e["usdc"],
        reverse=(sort == "desc"),
    )


def sum_stable_totals(rows: Iterable[dict]) -> dict[str, float]:
    totals = defaultdict(float)
    for r in rows:
        totals["total_usdt"] += float(r.get("usdt") or 0)
        totals["total_usdc"] += float(r.get("usdc") or 0)
    return {"total_usdt": totals["total_usdt"], "total_usdc": totals["total_usdc"]}
