"""
Pool Runner - Orchestrates trading cycles over the wallet pool
==============================================================

Each cycle asks the circuit breaker whether to continue, assembles a batch
from the durable pool and (depending on burner mode) the burner pool, hands
each wallet to the trading strategy with bounded concurrency, feeds the
outcomes back, and periodically rebalances.

The strategy is any async callable taking a TradingWallet and returning a
bool or a TradeOutcome. Deciding what to trade is entirely its business.
"""

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from rich.table import Table
from rich.console import Console
from rich import box
from solders.keypair import Keypair

from burner_wallet import BurnerWalletManager
from circuit_breaker import CircuitBreaker
from config import Config
from rebalancer import WalletRebalancer
from seasoning import WalletSeasoner
from utils import logger, CircuitBreakerTripped, jitter
from wallet_pool import WalletPoolManager, DEFAULT_PERSONALITY


console = Console()


@dataclass
class TradingWallet:
    """What the strategy gets to see of a wallet."""
    pubkey: str
    keypair: Keypair
    name: str
    personality: str = DEFAULT_PERSONALITY
    is_burner: bool = False


@dataclass
class TradeOutcome:
    success: bool
    tx_count: int = 1


Strategy = Callable[[TradingWallet], Awaitable[Union[bool, TradeOutcome]]]


@dataclass
class RunStats:
    """Aggregated statistics for the run."""
    cycles: int = 0
    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    burner_trades: int = 0
    rebalances: int = 0
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def success_rate(self) -> float:
        if self.total_trades == 0:
            return 0.0
        return (self.successful_trades / self.total_trades) * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cycles': self.cycles,
            'total_trades': self.total_trades,
            'successful_trades': self.successful_trades,
            'failed_trades': self.failed_trades,
            'burner_trades': self.burner_trades,
            'success_rate': self.success_rate,
            'rebalances': self.rebalances,
            'started_at': self.started_at,
        }


class PoolRunner:
    """
    Main loop over the wallet pool.

    Args:
        config: Run configuration (burner_mode, rebalance_interval, delays, ...)
        pool: Durable wallet pool
        breaker: Run-level circuit breaker
        strategy: Async trading callable
        burners: Burner manager, required unless burner_mode is "disabled"
        rebalancer: Optional rebalancer
        seasoner: Optional seasoner, used for burner seasoning
    """

    def __init__(
        self,
        config: Config,
        pool: WalletPoolManager,
        breaker: CircuitBreaker,
        strategy: Strategy,
        burners: Optional[BurnerWalletManager] = None,
        rebalancer: Optional[WalletRebalancer] = None,
        seasoner: Optional[WalletSeasoner] = None,
        rng: Optional[random.Random] = None,
        sleep=asyncio.sleep
    ):
        self.config = config
        self.pool = pool
        self.breaker = breaker
        self.strategy = strategy
        self.burners = burners
        self.rebalancer = rebalancer
        self.seasoner = seasoner
        self.rng = rng or random.Random()
        self._sleep = sleep

        self.mode = config.burner_mode if burners is not None else "disabled"
        self.stats = RunStats()
        self._running = False

    def _build_batch(self) -> List[TradingWallet]:
        batch: List[TradingWallet] = []

        if self.mode != "burner_only":
            for wallet in self.pool.select_batch():
                batch.append(TradingWallet(
                    pubkey=wallet.pubkey,
                    keypair=wallet.keypair,
                    name=wallet.name,
                    personality=wallet.personality
                ))

        if self.mode in ("hybrid", "burner_only"):
            wanted = self.pool.batch_size
            # With no pool wallets ready the burners are all there is
            emergency = self.mode == "burner_only" or not batch
            for burner in self.burners.available_burners(wanted, emergency=emergency):
                batch.append(TradingWallet(
                    pubkey=burner.pubkey,
                    keypair=burner.keypair,
                    name=burner.name,
                    is_burner=True
                ))

        return batch

    async def _trade(self, wallet: TradingWallet, semaphore: asyncio.Semaphore) -> bool:
        async with semaphore:
            try:
                outcome = await self.strategy(wallet)
            except Exception as e:
                logger.error(f"Strategy raised for {wallet.name}: {e}")
                outcome = TradeOutcome(success=False)

        if not isinstance(outcome, TradeOutcome):
            outcome = TradeOutcome(success=bool(outcome))

        self.breaker.record_outcome(outcome.success)
        if wallet.is_burner:
            self.burners.mark_used(wallet.pubkey, max(outcome.tx_count, 1))
            self.stats.burner_trades += 1
        else:
            pool_wallet = self.pool.get_wallet(wallet.pubkey)
            if pool_wallet is not None:
                self.pool.mark_used(pool_wallet)

        self.stats.total_trades += 1
        if outcome.success:
            self.stats.successful_trades += 1
        else:
            self.stats.failed_trades += 1
        return outcome.success

    async def run_cycle(self) -> int:
        """
        One pass: safety check, burner upkeep, batch trading, periodic rebalance.

        Returns:
            Number of wallets traded this cycle

        Raises:
            CircuitBreakerTripped: the breaker halted the run
        """
        decision = await self.breaker.evaluate()
        if decision.tripped:
            raise CircuitBreakerTripped(decision.reason)

        if self.burners is not None and self.mode != "disabled":
            await self.burners.process_disposals()
            await self.burners.ensure_minimum()
            if self.seasoner is not None:
                await self.seasoner.season_burners(self.burners)

        batch = self._build_batch()
        self.stats.cycles += 1
        if not batch:
            logger.info("No wallets available this cycle")
            return 0

        semaphore = asyncio.Semaphore(self.pool.concurrency)
        await asyncio.gather(*(self._trade(w, semaphore) for w in batch))

        if self.rebalancer is not None and self.stats.cycles % self.config.rebalance_interval == 0:
            await self.rebalancer.rebalance(self.pool.active_wallets)
            self.stats.rebalances += 1

        if self.stats.cycles % self.config.stats_interval == 0:
            self.print_summary()

        return len(batch)

    async def run(self, max_cycles: Optional[int] = None) -> RunStats:
        """
        Loop until stopped, ``max_cycles`` is reached or the breaker trips.

        Burners are always emergency-disposed on the way out. A trip is
        re-raised after cleanup.
        """
        self._running = True
        await self.breaker.capture_baseline()
        logger.info(f"Pool runner started (burner mode: {self.mode})")

        try:
            while self._running:
                await self.run_cycle()
                if max_cycles is not None and self.stats.cycles >= max_cycles:
                    break
                delay_ms = jitter(
                    self.rng,
                    self.config.min_inter_batch_delay_ms,
                    self.config.max_inter_batch_delay_ms
                )
                await self._sleep(delay_ms / 1000)
        except CircuitBreakerTripped as e:
            logger.critical(f"Run halted: {e.reason}")
            raise
        finally:
            self._running = False
            await self.shutdown()

        return self.stats

    def stop(self):
        self._running = False

    async def shutdown(self):
        if self.burners is not None:
            await self.burners.emergency_dispose_all()
        logger.info(f"Runner stopped after {self.stats.cycles} cycle(s), {self.stats.total_trades} trade(s)")

    def get_stats_table(self) -> Table:
        table = Table(title="Run Statistics", box=box.ROUNDED)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green", justify="right")

        table.add_row("Cycles", str(self.stats.cycles))
        table.add_row("Trades", str(self.stats.total_trades))
        table.add_row("Successful", str(self.stats.successful_trades))
        table.add_row("Failed", str(self.stats.failed_trades))
        table.add_row("Success Rate", f"{self.stats.success_rate:.1f}%")
        table.add_row("Burner Trades", str(self.stats.burner_trades))
        table.add_row("Rebalances", str(self.stats.rebalances))

        if self.burners is not None:
            burner_stats = self.burners.stats()
            table.add_row("Active Burners", str(burner_stats['active_burners']))
            table.add_row("Burners Disposed", str(burner_stats['disposed']))

        breaker = self.breaker.status()
        table.add_row("Consecutive Failures", str(breaker['consecutive_failures']))
        return table

    def print_summary(self):
        console.print(self.get_stats_table())
