"""Whole-run behaviour: guard, abort-on-error, progress counters, balance runs."""

import asyncio

import pytest
from sqlalchemy import func, select

from conftest import THIRD, USDC, USDT, WALLET, FakeExplorer, make_transfer
from token_tracker.config import settings
from token_tracker.errors import UpstreamHttpError
from token_tracker.storage.models import Erc20Transfer, WalletTokenBalance
from token_tracker.sync import runner
from token_tracker.sync.rate_gate import Pacer
from token_tracker.sync.state import SyncRunState, transfer_sync_state


@pytest.fixture
def state():
    return SyncRunState("transfers")


@pytest.fixture
def global_transfer_state():
    saved = transfer_sync_state.running
    transfer_sync_state.running = False
    yield transfer_sync_state
    transfer_sync_state.running = saved


class TestTransferRun:

    async def test_completes_and_reports_progress(self, session_factory, seeded, state):
        explorer = FakeExplorer(pages={
            WALLET.lower(): [[make_transfer(1), make_transfer(2)]],
            THIRD.lower(): [[make_transfer(3, to=THIRD)]],
        })

        started = await runner.run_transfer_sync(
            seeded["wallets"], seeded["whitelist"],
            client=explorer, session_factory=session_factory, pacer=Pacer(0), state=state,
        )

        assert started is True
        assert state.running is False
        assert state.error is None
        assert state.finished_at is not None
        assert state.total == 2
        assert state.processed == 2
        assert state.percent == 100.0
        assert state.counters["inserted"] == 3
        assert state.counters["events_seen"] == 3
        assert any("page 1" in entry["message"] for entry in state.logs)

    async def test_loads_wallets_and_whitelist_from_database(self, session_factory, seeded, state):
        explorer = FakeExplorer(pages={WALLET.lower(): [[make_transfer(1)]]})

        await runner.run_transfer_sync(
            client=explorer, session_factory=session_factory, pacer=Pacer(0), state=state,
        )

        assert {address.lower() for address, _, _ in explorer.calls} == {WALLET.lower(), THIRD}
        assert state.counters["inserted"] == 1

    async def test_error_aborts_run_and_keeps_earlier_rows(self, session_factory, seeded, state):
        explorer = FakeExplorer(
            pages={WALLET.lower(): [[make_transfer(1), make_transfer(2)]]},
            fail_for=[THIRD],
            error=UpstreamHttpError(403),
        )

        await runner.run_transfer_sync(
            seeded["wallets"], seeded["whitelist"],
            client=explorer, session_factory=session_factory, pacer=Pacer(0), state=state,
        )

        assert state.running is False
        assert state.finished_at is not None
        assert state.error.startswith("UpstreamHttpError")
        assert state.processed == 1
        assert state.percent == 50.0
        assert state.logs[-1]["level"] == "error"
        async with session_factory() as session:
            stored = await session.scalar(select(func.count()).select_from(Erc20Transfer))
        assert stored == 2

    async def test_missing_api_key_is_recorded_as_config_error(
        self, session_factory, seeded, state, monkeypatch
    ):
        monkeypatch.setattr(settings, "upstream_api_key", "")

        await runner.run_transfer_sync(
            seeded["wallets"], seeded["whitelist"],
            session_factory=session_factory, state=state,
        )

        assert state.running is False
        assert state.error.startswith("ConfigError")
        assert state.processed == 0

    async def test_second_run_refused_while_first_is_active(self, session_factory, seeded, state):
        assert state.try_start() is True
        state.bump("inserted", 7)

        started = await runner.run_transfer_sync(
            seeded["wallets"], seeded["whitelist"],
            client=FakeExplorer(), session_factory=session_factory, state=state,
        )

        assert started is False
        assert state.running is True
        assert state.counters == {"inserted": 7}


class TestTriggers:

    async def test_trigger_refused_while_running(self, global_transfer_state):
        global_transfer_state.running = True
        global_transfer_state.counters = {"inserted": 3}

        assert runner.trigger_transfer_sync() is False
        assert runner.get_transfer_sync_status()["inserted"] == 3

    async def test_trigger_runs_in_background(self, session_factory, seeded, global_transfer_state):
        explorer = FakeExplorer(pages={WALLET.lower(): [[make_transfer(1)]]})

        assert runner.trigger_transfer_sync(
            wallets=seeded["wallets"], whitelist=seeded["whitelist"],
            client=explorer, session_factory=session_factory, pacer=Pacer(0),
        ) is True
        assert runner.get_transfer_sync_status()["running"] is True
        # a second trigger while the first is still in flight is refused
        assert runner.trigger_transfer_sync() is False

        await asyncio.gather(*list(runner._background_tasks))

        status = runner.get_transfer_sync_status()
        assert status["running"] is False
        assert status["error"] is None
        assert status["inserted"] == 1


class TestBalanceRun:

    async def test_snapshot_for_tagged_wallets(self, session_factory, seeded):
        state = SyncRunState("balances")
        explorer = FakeExplorer(balances={
            (WALLET.lower(), USDT.lower()): "2500000",
            (WALLET.lower(), USDC.lower()): "42",
        })

        await runner.run_balance_sync(
            wallet_tag="ops",
            client=explorer, session_factory=session_factory, pacer=Pacer(0), state=state,
        )

        assert state.error is None
        assert state.total == 2
        assert state.processed == 2
        assert state.counters["fetched"] == 2
        assert {address for address, _ in explorer.balance_calls} == {WALLET}

        async with session_factory() as session:
            rows = {
                r.token_contract: r.balance
                for r in (await session.execute(select(WalletTokenBalance))).scalars().all()
            }
        assert rows[USDT] == pytest.approx(2.5)
        # no decimals on the whitelist and none seen on transfers: stored unscaled
        assert rows[USDC] == 42.0

    async def test_token_filter(self, session_factory, seeded):
        state = SyncRunState("balances")
        explorer = FakeExplorer()

        await runner.run_balance_sync(
            token_contract=USDT.lower(),
            client=explorer, session_factory=session_factory, pacer=Pacer(0), state=state,
        )

        assert state.total == 2
        assert {contract for _, contract in explorer.balance_calls} == {USDT}

    async def test_failure_is_recorded(self, session_factory, seeded):
        state = SyncRunState("balances")
        explorer = FakeExplorer(fail_for=[WALLET], error=UpstreamHttpError(500, "boom"))

        await runner.run_balance_sync(
            seeded["wallets"], seeded["whitelist"],
            client=explorer, session_factory=session_factory, pacer=Pacer(0), state=state,
        )

        assert state.running is False
        assert state.error == "UpstreamHttpError: boom"
