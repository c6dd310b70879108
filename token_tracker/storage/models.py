from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Wallet(Base):
    """A tracked address. Stored as entered, compared lowercase."""

    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    label: Mapped[str | None] = mapped_column(String(256), nullable=True)
    number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    tags: Mapped[list["WalletTag"]] = relationship(
        back_populates="wallet", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def tag_names(self) -> list[str]:
        return sorted(t.tag for t in self.tags)


class WalletTag(Base):
    __tablename__ = "wallet_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(
        ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False
    )
    tag: Mapped[str] = mapped_column(String(64), nullable=False)

    wallet: Mapped[Wallet] = relationship(back_populates="tags")

    __table_args__ = (
        UniqueConstraint("wallet_id", "tag", name="uq_wallet_tags_wallet_tag"),
        Index("ix_wallet_tags_tag", "tag"),
    )


class TokenWhitelist(Base):
    """Token contracts worth tracking. Transfers of anything else are dropped."""

    __tablename__ = "token_whitelist"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(16), default="ERC20", nullable=False)
    contract_address: Mapped[str] = mapped_column(String(64), nullable=False)
    token_name: Mapped[str] = mapped_column(String(128), nullable=False)
    token_symbol: Mapped[str | None] = mapped_column(String(32), nullable=True)
    decimals: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("chain", "contract_address", name="uq_token_whitelist_chain_contract"),
    )


class Erc20Transfer(Base):
    """One ingested transfer event, seen from one tracked wallet's side."""

    __tablename__ = "erc20_transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(
        ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False
    )
    network: Mapped[str] = mapped_column(String(16), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)  # incoming / outgoing
    token_contract: Mapped[str] = mapped_column(String(64), nullable=False)
    token_name: Mapped[str] = mapped_column(String(128), nullable=False)
    token_symbol: Mapped[str | None] = mapped_column(String(32), nullable=True)
    token_decimals: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount_raw: Mapped[str] = mapped_column(String(96), nullable=False)  # exact uint256 as text
    amount_normalized: Mapped[float] = mapped_column(Float, default=0.0)
    from_address: Mapped[str] = mapped_column(String(64), default="")
    to_address: Mapped[str] = mapped_column(String(64), default="")
    block_number: Mapped[int] = mapped_column(BigInteger, default=0)
    block_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    confirmations: Mapped[int] = mapped_column(Integer, default=0)
    is_confirmed: Mapped[bool] = mapped_column(Boolean, default=False)
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "wallet_id", "network", "tx_hash", "log_index",
            name="uq_erc20_transfers_natural_key",
        ),
        Index("ix_erc20_transfers_wallet_token", "wallet_id", "token_contract"),
        Index("ix_erc20_transfers_block_ts", "block_timestamp"),
    )


class WalletSyncState(Base):
    __tablename__ = "wallet_sync_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(
        ForeignKey("wallets.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    backfill_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class WalletTokenBalance(Base):
    """Latest explorer-reported balance per (wallet, token)."""

    __tablename__ = "wallet_token_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(
        ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False
    )
    token_contract: Mapped[str] = mapped_column(String(64), nullable=False)
    token_name: Mapped[str] = mapped_column(String(128), default="")
    token_symbol: Mapped[str | None] = mapped_column(String(32), nullable=True)
    balance_raw: Mapped[str] = mapped_column(String(96), default="0")
    balance: Mapped[float] = mapped_column(Float, default=0.0)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("wallet_id", "token_contract", name="uq_wallet_token_balances"),
    )
