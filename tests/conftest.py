"""Shared fixtures: in-memory SQLite database, seeded wallets/whitelist, fake explorer."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from token_tracker.storage.models import Base, TokenWhitelist, Wallet, WalletTag

WALLET = "0x" + "aA" * 20
OTHER = "0x" + "b" * 40
THIRD = "0x" + "c" * 40
USDT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
UNLISTED = "0x" + "d" * 40


def make_transfer(
    n: int,
    frm: str = OTHER,
    to: str = WALLET,
    contract: str = USDT,
    value: str = "1000000",
    decimals: str | None = "6",
    confirmations: str = "12",
    symbol: str = "USDT",
) -> dict:
    """A raw ``tokentx`` row as the explorer returns it."""
    raw = {
        "blockNumber": str(18_000_000 + n),
        "timeStamp": str(1_700_000_000 + n * 12),
        "hash": f"0x{n:064x}",
        "from": frm,
        "to": to,
        "contractAddress": contract.lower(),
        "value": value,
        "tokenName": "Tether USD",
        "tokenSymbol": symbol,
        "confirmations": confirmations,
    }
    if decimals is not None:
        raw["tokenDecimal"] = decimals
    return raw


class FakeExplorer:
    """Stands in for ``EtherscanClient``; serves canned pages and balances."""

    def __init__(self, pages=None, balances=None, fail_for=None, error=None):
        self.pages: dict[str, list[list[dict]]] | list[list[dict]] = pages or []
        self.balances = balances or {}
        self.fail_for = {a.lower() for a in (fail_for or [])}
        self.error = error
        self.calls: list[tuple[str, int, int]] = []
        self.balance_calls: list[tuple[str, str]] = []

    def _pages_for(self, address: str) -> list[list[dict]]:
        if isinstance(self.pages, dict):
            return self.pages.get(address.lower(), [])
        return self.pages

    async def fetch_transfer_page(self, address, page=1, page_size=100):
        self.calls.append((address, page, page_size))
        if address.lower() in self.fail_for:
            raise self.error
        pages = self._pages_for(address)
        return pages[page - 1] if page <= len(pages) else []

    async def fetch_token_balance(self, address, contract_address):
        self.balance_calls.append((address, contract_address))
        if address.lower() in self.fail_for:
            raise self.error
        return self.balances.get((address.lower(), contract_address.lower()), "0")


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def seeded(session_factory):
    """Two wallets (one tagged 'ops') and a USDT/USDC whitelist."""
    async with session_factory() as session:
        w1 = Wallet(address=WALLET, label="treasury", number="1")
        w1.tags = [WalletTag(tag="ops")]
        w2 = Wallet(address=THIRD, label="payroll", number="2")
        w2.tags = []
        usdt = TokenWhitelist(chain="ERC20", contract_address=USDT, token_name="Tether USD",
                              token_symbol="USDT", decimals=6)
        usdc = TokenWhitelist(chain="ERC20", contract_address=USDC, token_name="USD Coin",
                              token_symbol="USDC", decimals=None)
        session.add_all([w1, w2, usdt, usdc])
        await session.commit()

    return {"wallets": [w1, w2], "whitelist": [usdt, usdc]}
