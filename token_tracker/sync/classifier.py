"""Turn raw explorer ``tokentx`` rows into incoming/outgoing transfer events.

No I/O here. A row is dropped (``None``) when its token is not whitelisted,
it is unconfirmed, it is a wallet-to-itself transfer, the queried wallet
is on neither side of it, or its timestamp is out of range.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, Literal, Mapping, Protocol

from pydantic import BaseModel


class WhitelistedToken(Protocol):
    contract_address: str
    token_name: str


class TransferEvent(BaseModel):
    tx_hash: str
    log_index: int = 0
    direction: Literal["incoming", "outgoing"]
    token_contract: str
    token_name: str
    token_symbol: str | None = None
    token_decimals: int | None = None
    amount_raw: str = "0"  # exact on-chain integer; amount_normalized is display-only
    amount_normalized: float = 0.0
    from_address: str = ""
    to_address: str = ""
    block_number: int = 0
    block_timestamp: datetime
    confirmations: int
    is_confirmed: bool


def normalize_address(value) -> str:
    return str(value or "").lower()


def normalize_amount(raw, decimals) -> float:
    """``raw / 10**decimals`` as a float; 0.0 for anything non-numeric or non-finite."""
    try:
        d = int(decimals or 0)
        value = int(str(raw or "0")) / 10 ** d
    except (ValueError, TypeError, OverflowError):
        return 0.0
    return value if math.isfinite(value) else 0.0


def _to_int(value, default: int | None = 0) -> int | None:
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def _confirmations(raw: dict) -> float:
    try:
        return float(raw.get("confirmations") or 0)
    except (ValueError, TypeError):
        return math.nan


def build_whitelist_map(entries: Iterable[WhitelistedToken]) -> dict[str, WhitelistedToken]:
    return {normalize_address(e.contract_address): e for e in entries}


def classify_transfer(
    raw: dict,
    wallet_address: str,
    whitelist: Mapping[str, WhitelistedToken],
) -> TransferEvent | None:
    token = whitelist.get(normalize_address(raw.get("contractAddress")))
    if token is None:
        return None

    confirmations = _confirmations(raw)
    if not math.isfinite(confirmations) or confirmations <= 0:
        return None

    sender = normalize_address(raw.get("from"))
    recipient = normalize_address(raw.get("to"))
    wallet = normalize_address(wallet_address)
    if sender == wallet and recipient == wallet:
        return None

    if recipient == wallet:
        direction = "incoming"
    elif sender == wallet:
        direction = "outgoing"
    else:
        return None

    try:
        block_timestamp = datetime.utcfromtimestamp(_to_int(raw.get("timeStamp") or 0))
    except (OverflowError, ValueError, OSError):
        return None

    decimals = _to_int(raw.get("tokenDecimal"), None) if raw.get("tokenDecimal") else None

    return TransferEvent(
        tx_hash=str(raw.get("hash", "")),
        log_index=_to_int(raw.get("logIndex") or 0),
        direction=direction,
        token_contract=str(raw.get("contractAddress", "")),
        token_name=token.token_name,
        token_symbol=str(raw["tokenSymbol"]) if raw.get("tokenSymbol") else None,
        token_decimals=decimals,
        amount_raw=str(raw.get("value") or "0"),
        amount_normalized=normalize_amount(raw.get("value"), decimals),
        from_address=str(raw.get("from") or ""),
        to_address=str(raw.get("to") or ""),
        block_number=_to_int(raw.get("blockNumber") or 0),
        block_timestamp=block_timestamp,
        confirmations=int(confirmations),
        is_confirmed=confirmations > 0,
    )
