"""
Burner Wallet Module - Ephemeral Wallet Lifecycle
=================================================

Keeps a small pool of short-lived wallets next to the durable roster. Each
burner is generated in memory, funded from a relayer, used a bounded number
of times, then swept to the sink and forgotten. Burners are never persisted.

Lifecycle: CREATED -> FUNDING -> ACTIVE -> PENDING_DISPOSAL -> DISPOSED

- A burner whose funding fails is dropped straight away
- Reaching the lifetime cap schedules disposal after a delay
- Disposal sweeps everything above a small floor to the sink and then
  removes the burner from every structure in one step
- Repeated funding failures pause creation for a while (local breaker,
  independent of the run-level circuit breaker)
"""

import asyncio
import math
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Optional, Set, Any

from solders.keypair import Keypair

from config import Config
from connection import LedgerConnection, PRIORITY_FEE_LAMPORTS
from transfers import TransferExecutor
from utils import (
    logger, sol_to_lamports, format_sol, format_pubkey, format_duration, jitter, shuffled
)


MAX_CREATIONS_PER_CHECK = 2
CREATION_GAP_S = 2.0
CREATION_BACKOFF_STEP_S = 5.0
CREATION_BACKOFF_MAX_S = 30.0
MIN_COOLDOWN_S = 30.0
MAX_COOLDOWN_S = 60.0
COOLDOWN_STEP = 0.1
MAX_BURNER_AGE_S = 24 * 60 * 60
MAX_DISPOSAL_ATTEMPTS = 3
RELAYER_FALLBACK_MIN_LAMPORTS = sol_to_lamports(0.01)


class BurnerState(Enum):
    CREATED = "created"
    FUNDING = "funding"
    ACTIVE = "active"
    PENDING_DISPOSAL = "pending_disposal"
    DISPOSED = "disposed"


@dataclass
class BurnerWallet:
    """In-memory burner record."""
    keypair: Keypair
    pubkey: str
    name: str
    created_at: float
    state: BurnerState = BurnerState.CREATED
    tx_count: int = 0
    seasoning_count: int = 0
    last_used: float = 0.0
    cooldown: float = 0.0
    disposal_due_at: Optional[float] = None
    disposal_attempts: int = 0

    @property
    def pending_disposal(self) -> bool:
        return self.state == BurnerState.PENDING_DISPOSAL


@dataclass
class BurnerStats:
    created: int = 0
    disposed: int = 0
    failed_creations: int = 0
    total_transactions: int = 0
    disposed_lifetime_txs: int = 0
    dropped_unswept: int = 0

    @property
    def average_lifetime(self) -> float:
        """Average transactions per disposed burner."""
        if self.disposed == 0:
            return 0.0
        return self.disposed_lifetime_txs / self.disposed


class CreationBreaker:
    """Pauses burner creation after too many consecutive funding failures."""

    def __init__(self, max_failures: int, pause_seconds: float):
        self.max_failures = max_failures
        self.pause_seconds = pause_seconds
        self.consecutive_failures = 0
        self.paused_until: Optional[float] = None

    def allow(self, now: float) -> bool:
        if self.paused_until is None:
            return True
        if now >= self.paused_until:
            logger.info("Burner creation pause over, resuming")
            self.paused_until = None
            self.consecutive_failures = 0
            return True
        return False

    def record_success(self):
        self.consecutive_failures = 0

    def record_failure(self, now: float) -> bool:
        """Count a failure. Returns True when this failure opened the breaker."""
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.max_failures and self.paused_until is None:
            self.paused_until = now + self.pause_seconds
            logger.error(
                f"Burner creation paused for {format_duration(int(self.pause_seconds))} after "
                f"{self.consecutive_failures} consecutive funding failures"
            )
            return True
        return False


class BurnerWalletManager:
    """
    Ephemeral burner sub-pool.

    Args:
        config: Burner settings (burner_mode, max_burner_wallets, burner_lifetime_txs, ...)
        connection: Ledger capability
        relayers: Funding-source keypairs
        sink_pubkey: Where disposal sweeps go; without one, balances stay put
        rng / clock / sleep: Injectable randomness and time
    """

    def __init__(
        self,
        config: Config,
        connection: LedgerConnection,
        relayers: Optional[List[Keypair]] = None,
        sink_pubkey: Optional[str] = None,
        rng: Optional[random.Random] = None,
        clock=time.time,
        sleep=asyncio.sleep,
        executor: Optional[TransferExecutor] = None
    ):
        self.config = config
        self.connection = connection
        self.relayers: List[Keypair] = list(relayers or [])
        self.sink_pubkey = sink_pubkey
        self.rng = rng or random.Random()
        self._clock = clock
        self._sleep = sleep
        self.executor = executor or TransferExecutor(
            connection,
            confirm_timeout=config.confirm_timeout_seconds,
            tolerance_bps=config.verify_tolerance_bps,
            sleep=sleep
        )

        self.enabled = config.burner_mode != "disabled"
        self.target_size = config.max_burner_wallets
        self.lifetime_cap = config.burner_lifetime_txs
        self.fund_amount = sol_to_lamports(config.burner_fund_amount)
        self.min_balance = sol_to_lamports(config.burner_min_balance)

        self._burners: Dict[str, BurnerWallet] = {}
        self._pending_disposal: Set[str] = set()
        self._last_creation_check: Optional[float] = None
        self._name_counter = 0

        self.breaker = CreationBreaker(config.burner_max_funding_failures, config.burner_failure_pause_s)
        self.stats_data = BurnerStats()

    # Lookup

    def get_burner(self, pubkey: str) -> Optional[BurnerWallet]:
        return self._burners.get(pubkey)

    def active_burners(self) -> List[BurnerWallet]:
        return [b for b in self._burners.values() if b.state == BurnerState.ACTIVE]

    def is_seasoned(self, burner: BurnerWallet) -> bool:
        return (not self.config.enable_burner_seasoning
                or burner.seasoning_count >= self.config.burner_seasoning_min_txs)

    # Creation

    async def ensure_minimum(self, force: bool = False) -> int:
        """
        Create burners toward the target pool size.

        Rate-limited by the creation interval and capped at a few
        creations per call. Returns the number created.
        """
        if not self.enabled:
            return 0

        now = self._clock()
        if not self.breaker.allow(now):
            logger.debug("Burner creation paused by local breaker")
            return 0
        if (not force and self._last_creation_check is not None
                and now - self._last_creation_check < self.config.burner_creation_interval_s):
            return 0
        self._last_creation_check = now

        deficit = self.target_size - len(self.active_burners())
        if deficit <= 0:
            return 0
        if not self.relayers:
            logger.warning("Cannot create burners: no relayer wallets")
            return 0

        to_create = min(deficit, MAX_CREATIONS_PER_CHECK)
        created = 0
        failures = 0

        for index in range(to_create):
            if failures:
                await self._sleep(min(failures * CREATION_BACKOFF_STEP_S, CREATION_BACKOFF_MAX_S))

            if await self.create_burner():
                created += 1
                failures = 0
            else:
                failures += 1
                if not self.breaker.allow(self._clock()):
                    break

            if index < to_create - 1:
                await self._sleep(CREATION_GAP_S)

        if created:
            logger.info(f"Created {created} burner(s), {len(self.active_burners())}/{self.target_size} active")
        return created

    async def create_burner(self) -> bool:
        """Generate and fund one burner. A burner that fails funding is discarded."""
        keypair = Keypair()
        pubkey = str(keypair.pubkey())
        self._name_counter += 1
        burner = BurnerWallet(
            keypair=keypair,
            pubkey=pubkey,
            name=f"Burner{self._name_counter}",
            created_at=self._clock()
        )
        self._burners[pubkey] = burner

        burner.state = BurnerState.FUNDING
        try:
            funded = await self._fund_burner(burner)
        except Exception as e:
            logger.error(f"Funding {burner.name} raised: {e}")
            funded = False

        if not funded:
            self._forget(pubkey)
            self.stats_data.failed_creations += 1
            self.breaker.record_failure(self._clock())
            return False

        burner.state = BurnerState.ACTIVE
        self.stats_data.created += 1
        self.breaker.record_success()
        logger.info(f"{burner.name} ({format_pubkey(pubkey)}) active")
        return True

    async def _fund_burner(self, burner: BurnerWallet) -> bool:
        required = self.fund_amount + PRIORITY_FEE_LAMPORTS
        source: Optional[Keypair] = None
        amount = self.fund_amount
        richest: Optional[Keypair] = None
        richest_balance = -1

        for relayer in shuffled(self.relayers, self.rng):
            try:
                balance = await self.connection.get_balance(str(relayer.pubkey()))
            except Exception as e:
                logger.warning(f"Relayer {format_pubkey(str(relayer.pubkey()))} balance check failed: {e}")
                continue

            if balance >= required:
                source = relayer
                break
            if balance > richest_balance:
                richest, richest_balance = relayer, balance
        else:
            if richest is None or richest_balance < RELAYER_FALLBACK_MIN_LAMPORTS:
                logger.warning("No relayer can fund a burner")
                return False
            source = richest
            amount = richest_balance - PRIORITY_FEE_LAMPORTS
            logger.warning(f"Relayers low, funding {burner.name} with {format_sol(amount)}")

        result = await self.executor.send(
            source, burner.pubkey, amount,
            max_attempts=self.config.funding_max_attempts,
            label="burner_fund"
        )
        return result.success

    # Selection and usage

    def available_burners(self, count: int, emergency: bool = False) -> List[BurnerWallet]:
        """
        Burners ready for use, at most ``ceil(count * ratio)`` of them.

        The ratio is ``burner_emergency_ratio`` when ``emergency`` is set,
        ``burner_ratio`` otherwise.
        """
        if not self.enabled or count <= 0:
            return []

        now = self._clock()
        self.cleanup_expired(now)

        ready = [
            b for b in self._burners.values()
            if b.state == BurnerState.ACTIVE
            and now - b.last_used >= b.cooldown
            and b.tx_count < self.lifetime_cap
            and self.is_seasoned(b)
        ]
        ready = shuffled(ready, self.rng)

        ratio = self.config.burner_emergency_ratio if emergency else self.config.burner_ratio
        limit = min(math.ceil(count * ratio), count)
        return ready[:limit]

    def mark_used(self, pubkey: str, tx_count: int = 1):
        """Record transactions made by a burner; schedules disposal at the lifetime cap."""
        burner = self._burners.get(pubkey)
        if burner is None or burner.state != BurnerState.ACTIVE:
            return

        now = self._clock()
        burner.tx_count += tx_count
        burner.last_used = now
        burner.cooldown = jitter(self.rng, MIN_COOLDOWN_S, MAX_COOLDOWN_S) * (1 + COOLDOWN_STEP * burner.tx_count)
        self.stats_data.total_transactions += tx_count
        if self.config.enable_burner_seasoning:
            burner.seasoning_count += tx_count

        if burner.tx_count >= self.lifetime_cap:
            self.schedule_disposal(pubkey)

    def record_seasoning(self, pubkey: str, tx_count: int = 1):
        """Credit seasoning activity that does not count toward the lifetime cap."""
        burner = self._burners.get(pubkey)
        if burner is not None and burner.state == BurnerState.ACTIVE:
            burner.seasoning_count += tx_count

    def unseasoned_burners(self) -> List[BurnerWallet]:
        return [b for b in self.active_burners() if not self.is_seasoned(b)]

    # Disposal

    def schedule_disposal(self, pubkey: str, delay: Optional[float] = None):
        burner = self._burners.get(pubkey)
        if burner is None or burner.state == BurnerState.PENDING_DISPOSAL:
            return

        delay = self.config.burner_disposal_delay_s if delay is None else delay
        burner.state = BurnerState.PENDING_DISPOSAL
        burner.disposal_due_at = self._clock() + delay
        self._pending_disposal.add(pubkey)
        logger.debug(f"{burner.name} scheduled for disposal in {delay:.0f}s")

    async def process_disposals(self) -> int:
        """Dispose every burner whose disposal delay has passed."""
        now = self._clock()
        due = [
            pk for pk in list(self._pending_disposal)
            if self._burners[pk].disposal_due_at is not None and self._burners[pk].disposal_due_at <= now
        ]
        disposed = 0
        for pubkey in due:
            if await self.dispose_burner(pubkey):
                disposed += 1
        return disposed

    async def _sweep(self, burner: BurnerWallet) -> bool:
        if not self.sink_pubkey:
            return True

        balance = await self.connection.get_balance(burner.pubkey)
        amount = balance - self.min_balance
        if amount <= 0:
            return True

        result = await self.executor.send(
            burner.keypair, self.sink_pubkey, amount,
            max_attempts=1,
            label="burner_sweep"
        )
        if result.success:
            logger.info(f"Swept {format_sol(amount)} from {burner.name} to sink")
            return True

        # Concurrent sweeps share the sink, so its balance delta can mislead
        # verification; the burner's own balance cannot.
        remaining = await self.connection.get_balance(burner.pubkey)
        if remaining <= self.min_balance:
            logger.info(f"Sweep of {burner.name} landed despite an unverified result")
            return True
        return False

    async def dispose_burner(self, pubkey: str, final: bool = False) -> bool:
        """
        Sweep a burner to the sink and forget it.

        A failed sweep leaves the burner pending for another pass, up to
        MAX_DISPOSAL_ATTEMPTS (or immediately when ``final``), after which
        it is dropped anyway.
        """
        burner = self._burners.get(pubkey)
        if burner is None:
            return False

        burner.disposal_attempts += 1
        try:
            swept = await self._sweep(burner)
        except Exception as e:
            logger.error(f"Sweep of {burner.name} raised: {e}")
            swept = False

        if not swept and not final and burner.disposal_attempts < MAX_DISPOSAL_ATTEMPTS:
            burner.disposal_due_at = self._clock() + self.config.burner_disposal_delay_s
            logger.warning(f"Disposal of {burner.name} deferred (attempt {burner.disposal_attempts})")
            return False
        if not swept:
            logger.error(f"Dropping {burner.name} ({format_pubkey(pubkey)}) with unswept balance")
            self.stats_data.dropped_unswept += 1

        burner.state = BurnerState.DISPOSED
        self.stats_data.disposed += 1
        self.stats_data.disposed_lifetime_txs += burner.tx_count
        self._forget(pubkey)
        return True

    def _forget(self, pubkey: str):
        self._burners.pop(pubkey, None)
        self._pending_disposal.discard(pubkey)

    def cleanup_expired(self, now: Optional[float] = None) -> int:
        """Move burners older than the maximum age into pending disposal."""
        now = self._clock() if now is None else now
        expired = [
            b.pubkey for b in self._burners.values()
            if b.state == BurnerState.ACTIVE and now - b.created_at > MAX_BURNER_AGE_S
        ]
        for pubkey in expired:
            self.schedule_disposal(pubkey, delay=0)
        return len(expired)

    async def emergency_dispose_all(self) -> int:
        """Dispose of every tracked burner concurrently and clear all state."""
        pubkeys = list(self._burners)
        if not pubkeys:
            return 0

        logger.warning(f"Emergency disposal of {len(pubkeys)} burner(s)")
        results = await asyncio.gather(
            *(self.dispose_burner(pk, final=True) for pk in pubkeys),
            return_exceptions=True
        )
        for pubkey, outcome in zip(pubkeys, results):
            if isinstance(outcome, Exception):
                logger.error(f"Emergency disposal of {format_pubkey(pubkey)} failed: {outcome}")

        self._burners.clear()
        self._pending_disposal.clear()
        return sum(1 for r in results if r is True)

    def stats(self) -> Dict[str, Any]:
        active = self.active_burners()
        return {
            'created': self.stats_data.created,
            'disposed': self.stats_data.disposed,
            'failed_creations': self.stats_data.failed_creations,
            'total_transactions': self.stats_data.total_transactions,
            'average_lifetime': round(self.stats_data.average_lifetime, 2),
            'dropped_unswept': self.stats_data.dropped_unswept,
            'active_burners': len(active),
            'seasoned_burners': sum(1 for b in active if self.is_seasoned(b)),
            'pending_disposal': len(self._pending_disposal),
            'total_burners': len(self._burners),
            'creation_paused': self.breaker.paused_until is not None,
        }
