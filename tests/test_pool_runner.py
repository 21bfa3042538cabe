"""
Tests for the cycle orchestrator.
"""

import asyncio
import random

import pytest
from solders.keypair import Keypair

from burner_wallet import BurnerWalletManager
from circuit_breaker import CircuitBreaker
from pool_runner import PoolRunner, TradeOutcome
from rebalancer import WalletRebalancer
from roster_store import WalletRosterStore
from utils import CircuitBreakerTripped
from wallet_pool import WalletPoolManager


class Harness:
    """Pool, breaker and (optionally) burners wired to one fake ledger."""

    def __init__(self, config, ledger, clock, no_sleep, burner_mode="disabled"):
        config.burner_mode = burner_mode
        self.config = config
        self.ledger = ledger
        self.sink = str(Keypair().pubkey())
        relayers = [Keypair()]
        ledger.balances[str(relayers[0].pubkey())] = 10_000_000_000

        self.pool = WalletPoolManager(
            config, ledger, WalletRosterStore(config.wallet_file),
            relayers=relayers, rng=random.Random(1), clock=clock, sleep=no_sleep
        )
        self.pool.load_or_bootstrap()
        self.breaker = CircuitBreaker(config)
        self.burners = None
        if burner_mode != "disabled":
            self.burners = BurnerWalletManager(
                config, ledger, relayers=relayers, sink_pubkey=self.sink,
                rng=random.Random(2), clock=clock, sleep=no_sleep
            )
        self.sleep = no_sleep

    def runner(self, strategy, rebalancer=None):
        return PoolRunner(
            self.config, self.pool, self.breaker, strategy,
            burners=self.burners, rebalancer=rebalancer,
            rng=random.Random(3), sleep=self.sleep
        )


def always(result):
    async def _strategy(wallet):
        return result
    return _strategy


class TestRun:

    def test_runs_requested_cycles(self, config, ledger, clock, no_sleep):
        harness = Harness(config, ledger, clock, no_sleep)
        runner = harness.runner(always(True))

        stats = asyncio.run(runner.run(max_cycles=2))

        assert stats.cycles == 2
        # Every wallet cooled down after the first cycle
        assert stats.total_trades == 5
        assert stats.success_rate == 100.0
        assert len(no_sleep.calls) == 1
        assert 5.0 <= no_sleep.calls[0] <= 15.0

    def test_strategy_exception_counts_as_failure(self, config, ledger, clock, no_sleep):
        harness = Harness(config, ledger, clock, no_sleep)

        async def _boom(wallet):
            raise RuntimeError("quote unavailable")

        runner = harness.runner(_boom)
        assert asyncio.run(runner.run_cycle()) == 5

        assert runner.stats.failed_trades == 5
        assert harness.breaker.consecutive_failures == 5
        # Failed wallets still cool down
        assert harness.pool.select_batch() == []

    def test_trade_outcome_feeds_breaker(self, config, ledger, clock, no_sleep):
        harness = Harness(config, ledger, clock, no_sleep)
        runner = harness.runner(always(TradeOutcome(success=True, tx_count=2)))

        asyncio.run(runner.run_cycle())

        assert runner.stats.successful_trades == 5
        assert harness.breaker.consecutive_failures == 0

    def test_periodic_rebalance(self, config, ledger, clock, no_sleep):
        config.rebalance_interval = 1
        harness = Harness(config, ledger, clock, no_sleep)
        rebalancer = WalletRebalancer(config, ledger, rng=random.Random(4), sleep=no_sleep)
        runner = harness.runner(always(True), rebalancer=rebalancer)

        asyncio.run(runner.run_cycle())

        assert runner.stats.rebalances == 1


class TestSafetyStop:

    def test_breaker_trip_stops_run_and_disposes_burners(self, config, ledger, clock, no_sleep):
        config.max_consecutive_failures = 3
        harness = Harness(config, ledger, clock, no_sleep, burner_mode="hybrid")
        runner = harness.runner(always(False))

        with pytest.raises(CircuitBreakerTripped) as exc_info:
            asyncio.run(runner.run(max_cycles=10))

        assert "consecutive failures" in exc_info.value.reason
        assert runner.stats.cycles == 1
        assert runner.stats.burner_trades == 2
        assert harness.burners.stats()['total_burners'] == 0
        assert ledger.balances[harness.sink] == 2 * (20_000_000 - 1_000_000)

    def test_tripped_breaker_blocks_next_cycle(self, config, ledger, clock, no_sleep):
        harness = Harness(config, ledger, clock, no_sleep)
        for _ in range(config.max_consecutive_failures):
            harness.breaker.record_outcome(False)
        runner = harness.runner(always(True))

        with pytest.raises(CircuitBreakerTripped):
            asyncio.run(runner.run_cycle())
        assert runner.stats.total_trades == 0


class TestBurnerModes:

    def test_burner_only_uses_no_pool_wallets(self, config, ledger, clock, no_sleep):
        harness = Harness(config, ledger, clock, no_sleep, burner_mode="burner_only")
        traded = []

        async def _record(wallet):
            traded.append(wallet)
            return True

        runner = harness.runner(_record)
        assert asyncio.run(runner.run_cycle()) == 2

        assert all(w.is_burner for w in traded)
        assert runner.stats.burner_trades == 2
        assert all(b.tx_count == 1 for b in harness.burners.active_burners())

    def test_runner_without_burners_is_disabled(self, config, ledger, clock, no_sleep):
        harness = Harness(config, ledger, clock, no_sleep)
        config.burner_mode = "hybrid"

        assert harness.runner(always(True)).mode == "disabled"
