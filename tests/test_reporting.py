import pytest

from token_tracker.reporting import (
    ledger_balances,
    pivot_stable_rows,
    sum_stable_totals,
    summarize_by_token,
    summarize_by_wallet,
)

A = "0x" + "a" * 40
B = "0x" + "b" * 40
USDT = "0xdac17f958d2ee523a2206206994597c13d831ec7"
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"


def transfer(wallet, direction, amount, contract=USDT, symbol="USDT", name="Tether USD", number="1"):
    return {
        "wallet_address": wallet,
        "wallet_number": number,
        "direction": direction,
        "token_contract": contract,
        "token_name": name,
        "token_symbol": symbol,
        "amount": amount,
    }


@pytest.fixture
def transfers():
    return [
        transfer(A, "incoming", 100.0),
        transfer(A, "outgoing", 30.0),
        transfer(A, "incoming", 5.0, contract=USDC, symbol="USDC", name="USD Coin"),
        transfer(B, "incoming", 10.0, number="2"),
    ]


def test_summarize_by_token(transfers):
    summary = summarize_by_token(transfers)
    assert summary["USDT"] == {"incoming": 110.0, "outgoing": 30.0}
    assert summary["USDC"] == {"incoming": 5.0, "outgoing": 0.0}


def test_summarize_by_wallet(transfers):
    summary = summarize_by_wallet(transfers)
    assert summary[A] == {"incoming": 105.0, "outgoing": 30.0}
    assert summary[B] == {"incoming": 10.0, "outgoing": 0.0}


def test_ledger_balances_net_per_wallet_and_token(transfers):
    rows = {(r["wallet_address"], r["token_contract"]): r["balance"] for r in ledger_balances(transfers)}
    assert rows == {(A, USDT): 70.0, (A, USDC): 5.0, (B, USDT): 10.0}


def test_pivot_and_totals(transfers):
    rows = pivot_stable_rows(ledger_balances(transfers), sort="desc")

    assert [r["wallet_address"] for r in rows] == [A, B]
    assert rows[0]["usdt"] == 70.0
    assert rows[0]["usdc"] == 5.0
    assert rows[1]["wallet_number"] == "2"
    assert sum_stable_totals(rows) == {"total_usdt": 80.0, "total_usdc": 5.0}


def test_pivot_ascending_and_skips_rows_without_wallet():
    rows = pivot_stable_rows([
        {"wallet_address": A, "token_symbol": "USDT", "balance": 9.0},
        {"wallet_address": B, "token_name": "USD Coin (USDC)", "balance": 1.0},
        {"wallet_address": "", "token_symbol": "USDT", "balance": 1000.0},
    ])
    assert [r["wallet_address"] for r in rows] == [B, A]
    assert rows[0]["usdc"] == 1.0


def test_totals_of_nothing():
    assert sum_stable_totals([]) == {"total_usdt": 0.0, "total_usdc": 0.0}
