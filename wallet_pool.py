"""
Wallet Pool Module - Durable Multi-Wallet Management
====================================================

Owns the persistent wallet roster: bootstrapping it to the configured size,
funding every wallet from the relayer accounts, and handing out batches of
wallets whose cooldown has elapsed.

SAFETY:
- Funding for a wallet is exclusive: a scoped lock keyed by pubkey is held
  for the whole attempt and released on every exit path
- Top-ups are split into 1-4 randomized tranches sized against the
  remaining deficit, so tranches for one wallet are strictly sequential
- A tranche only counts as delivered when confirmed or verified by
  balance delta
- A roster that fails to load aborts startup
- Withdrawal sweeps every wallet to the sink, keeping a small buffer
"""

import asyncio
import random
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import List, Dict, Optional, Set, Tuple, Any

from solders.keypair import Keypair

from config import Config
from connection import LedgerConnection, PRIORITY_FEE_LAMPORTS
from logging_utils import new_trace_id
from roster_store import WalletRecord, WalletRosterStore
from transfers import TransferExecutor
from utils import (
    logger, sol_to_lamports, format_sol, format_pubkey, jitter, shuffled,
    BPS_DENOMINATOR
)


PERSONALITIES = ("flipper", "hodler", "momentum")
DEFAULT_PERSONALITY = "flipper"

MIN_TRANCHE_LAMPORTS = 5_000
MAX_TRANCHES = 4
FUNDED_THRESHOLD_BPS = 8_000               # 80% of fund amount counts as funded
MAX_COOLDOWN_AGE_S = 24 * 60 * 60
COOLDOWN_TRADE_CAP = 5
COOLDOWN_STEP = 0.2

RELAYER_MIN_LAMPORTS = sol_to_lamports(0.025)
RELAYER_TARGET_LAMPORTS = sol_to_lamports(0.05)
MASTER_MIN_LAMPORTS = sol_to_lamports(0.05)
MASTER_RESERVE_LAMPORTS = sol_to_lamports(0.01)

BASE_TX_FEE_LAMPORTS = 5_000
WITHDRAW_FEE_RESERVE = BASE_TX_FEE_LAMPORTS + PRIORITY_FEE_LAMPORTS
MIN_WITHDRAW_LAMPORTS = sol_to_lamports(0.0001)


def plan_tranche_count(rng: random.Random) -> int:
    """Number of tranches for one wallet's top-up."""
    return rng.randint(1, MAX_TRANCHES)


def funding_part(
    remaining: int,
    remaining_parts: int,
    rng: random.Random,
    min_part: int = MIN_TRANCHE_LAMPORTS
) -> int:
    """
    Size of the next tranche.

    An even share of what is left, scaled by a random factor in [0.6, 1.4),
    clamped to [min_part, remaining]. The last tranche takes everything left.
    """
    if remaining <= 0:
        return 0
    if remaining_parts <= 1:
        return remaining

    factor_milli = 600 + int(rng.random() * 800)
    part = remaining * factor_milli // 1000 // remaining_parts
    return min(max(part, min_part), remaining)


def wallet_cooldown_seconds(
    trade_count: int,
    rng: random.Random,
    min_cooldown_ms: int,
    max_cooldown_ms: int
) -> float:
    """Randomized cooldown that grows with a wallet's trade count."""
    base_ms = jitter(rng, min_cooldown_ms, max_cooldown_ms)
    multiplier = 1 + min(trade_count, COOLDOWN_TRADE_CAP) * COOLDOWN_STEP
    return base_ms * multiplier / 1000


@dataclass
class PoolWallet:
    """A roster wallet plus its runtime bookkeeping."""
    record: WalletRecord
    personality: str = DEFAULT_PERSONALITY
    trade_count: int = 0
    last_used: float = 0.0

    @property
    def pubkey(self) -> str:
        return self.record.pubkey

    @property
    def keypair(self) -> Keypair:
        return self.record.keypair

    @property
    def name(self) -> str:
        return self.record.name

    @property
    def is_seasoned(self) -> bool:
        return self.record.is_seasoned


@dataclass
class FundingReport:
    """Summary of one fund_all() pass."""
    attempted: int = 0
    funded: int = 0
    incomplete: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'attempted': self.attempted,
            'funded': self.funded,
            'incomplete': self.incomplete,
            'skipped': self.skipped,
        }


@dataclass
class WithdrawalReport:
    """Summary of one withdraw_all() pass."""
    attempted: int = 0
    withdrawn: int = 0
    failed: int = 0
    skipped: int = 0
    lamports: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'attempted': self.attempted,
            'withdrawn': self.withdrawn,
            'failed': self.failed,
            'skipped': self.skipped,
            'lamports': self.lamports,
        }


class WalletPoolManager:
    """
    Durable wallet roster manager.

    Args:
        config: Pool configuration
        connection: Ledger capability for balances and transfers
        store: Roster persistence
        relayers: Funding-source keypairs
        rng: Random source for tranche sizing, relayer choice, shuffling
        clock: Returns the current time in seconds
        sleep: Awaitable sleep used for inter-tranche pauses
    """

    def __init__(
        self,
        config: Config,
        connection: LedgerConnection,
        store: WalletRosterStore,
        relayers: Optional[List[Keypair]] = None,
        rng: Optional[random.Random] = None,
        clock=time.time,
        sleep=asyncio.sleep,
        executor: Optional[TransferExecutor] = None
    ):
        self.config = config
        self.connection = connection
        self.store = store
        self.relayers: List[Keypair] = list(relayers or [])
        self.rng = rng or random.Random()
        self._clock = clock
        self._sleep = sleep
        self.executor = executor or TransferExecutor(
            connection,
            confirm_timeout=config.confirm_timeout_seconds,
            tolerance_bps=config.verify_tolerance_bps,
            sleep=sleep
        )

        self.fund_amount = sol_to_lamports(config.fund_amount)
        self.concurrency = config.concurrency
        self.batch_size = config.batch_size

        self.wallets: List[PoolWallet] = []
        self.active_wallets: List[PoolWallet] = []
        self._by_pubkey: Dict[str, PoolWallet] = {}
        self._funded: Set[str] = set()
        self._funding_locks: Set[str] = set()
        self._cooldowns: Dict[str, Tuple[float, float]] = {}   # pubkey -> (last_used, cooldown_s)
        self._trade_counts: Dict[str, int] = {}

    # Roster

    def load_or_bootstrap(self) -> List[PoolWallet]:
        """
        Load the persisted roster and top it up to ``num_wallets_to_generate``.

        Raises:
            RosterLoadError: the persisted roster is unreadable or corrupt
        """
        records = self.store.load_roster()

        self.wallets = []
        self._by_pubkey = {}
        for record in records:
            if record.pubkey in self._by_pubkey:
                logger.warning(f"Duplicate wallet {format_pubkey(record.pubkey)} in roster, skipping")
                continue
            self._add(PoolWallet(record=record))

        shortfall = self.config.num_wallets_to_generate - len(self.wallets)
        if shortfall > 0:
            self.generate_wallets(shortfall)
            self.store.save_roster([w.record for w in self.wallets])

        self.assign_personalities()
        if self.config.auto_scale:
            self.adjust_concurrency()

        logger.info(f"Wallet pool ready with {len(self.wallets)} wallets")
        return self.wallets

    def generate_wallets(self, count: int) -> List[PoolWallet]:
        """Create ``count`` fresh wallets and append them to the roster (not saved)."""
        created = []
        next_index = len(self.wallets) + 1
        while len(created) < count:
            record = WalletRecord.generate(f"Wallet{next_index}")
            next_index += 1
            if record.pubkey in self._by_pubkey:
                continue
            wallet = PoolWallet(record=record)
            self._add(wallet)
            created.append(wallet)

        logger.info(f"Generated {len(created)} new wallets")
        return created

    def _add(self, wallet: PoolWallet):
        self.wallets.append(wallet)
        self._by_pubkey[wallet.pubkey] = wallet

    def get_wallet(self, pubkey: str) -> Optional[PoolWallet]:
        return self._by_pubkey.get(pubkey)

    def contains(self, pubkey: str) -> bool:
        return pubkey in self._by_pubkey

    def save(self) -> bool:
        """Incremental roster save. Failures are logged, not raised."""
        try:
            self.store.save_roster([w.record for w in self.wallets])
            return True
        except Exception as e:
            logger.error(f"Incremental roster save failed: {e}")
            return False

    def mark_seasoned(self, pubkey: str):
        wallet = self._by_pubkey.get(pubkey)
        if wallet:
            wallet.record.is_seasoned = True

    # Personalities

    def assign_personalities(self):
        for wallet in self.wallets:
            wallet.personality = self.rng.choice(PERSONALITIES)

    def get_personality(self, pubkey: str) -> str:
        wallet = self._by_pubkey.get(pubkey)
        return wallet.personality if wallet else DEFAULT_PERSONALITY

    def adjust_concurrency(self) -> Tuple[int, int]:
        """Scale concurrency and batch size with the roster size."""
        n = len(self.wallets)
        self.concurrency = min(50, max(3, n // 200 + 3))
        self.batch_size = min(20, max(2, n // 300 + 2))
        logger.info(f"Auto-scaled for {n} wallets: concurrency={self.concurrency}, batch_size={self.batch_size}")
        return self.concurrency, self.batch_size

    # Funding

    def is_funded(self, pubkey: str) -> bool:
        return pubkey in self._funded

    def is_funding(self, pubkey: str) -> bool:
        return pubkey in self._funding_locks

    @contextmanager
    def _funding_lock(self, pubkey: str):
        self._funding_locks.add(pubkey)
        try:
            yield
        finally:
            self._funding_locks.discard(pubkey)

    async def fund_wallet(self, wallet: PoolWallet) -> bool:
        """
        Top a single wallet up to the fund amount.

        Returns:
            True when the wallet ends fully funded. False when it was
            skipped (already funded or being funded elsewhere), when a
            tranche could not be delivered, or when the attempt raised.
        """
        pubkey = wallet.pubkey
        # Check-and-acquire has no await in between, so it is atomic on the loop
        if pubkey in self._funded or pubkey in self._funding_locks:
            return False
        if not self.relayers:
            logger.warning("No relayer wallets configured, cannot fund")
            return False

        with self._funding_lock(pubkey):
            new_trace_id(wallet.name)
            try:
                return await self._fund_locked(wallet)
            except Exception as e:
                logger.error(f"Funding {wallet.name} ({format_pubkey(pubkey)}) aborted: {e}")
                return False

    async def _fund_locked(self, wallet: PoolWallet) -> bool:
        pubkey = wallet.pubkey
        balance = await self.connection.get_balance(pubkey)

        if balance * BPS_DENOMINATOR >= self.fund_amount * FUNDED_THRESHOLD_BPS:
            logger.debug(f"{wallet.name} already funded ({format_sol(balance)})")
            self._funded.add(pubkey)
            return True

        remaining = self.fund_amount - balance
        parts = plan_tranche_count(self.rng)
        logger.info(f"Funding {wallet.name} with {format_sol(remaining)} in {parts} tranche(s)")

        for index in range(parts):
            if remaining <= 0:
                break

            amount = funding_part(remaining, parts - index, self.rng)
            relayer = self.rng.choice(self.relayers)
            result = await self.executor.send(
                relayer, pubkey, amount,
                max_attempts=self.config.funding_max_attempts,
                label="fund"
            )

            if result.success:
                remaining -= amount
                logger.info(
                    f"{wallet.name} tranche {index + 1}/{parts}: {format_sol(amount)} "
                    f"from {format_pubkey(str(relayer.pubkey()))}"
                )
                await self._sleep(jitter(self.rng, 1.0, 3.0))
            else:
                logger.warning(f"{wallet.name} tranche {index + 1}/{parts} not delivered")

        # Marked even when tranches failed so one bad wallet cannot block every pass
        self._funded.add(pubkey)
        if remaining > 0:
            logger.warning(f"{wallet.name} left short by {format_sol(remaining)}")
        return remaining <= 0

    async def fund_all(self) -> FundingReport:
        """Fund every wallet not yet marked funded, in concurrent chunks."""
        report = FundingReport()
        if not self.relayers:
            logger.warning("Funding skipped: no relayer wallets")
            return report

        pending = [w for w in self.wallets if w.pubkey not in self._funded]
        report.skipped = len(self.wallets) - len(pending)
        report.attempted = len(pending)
        chunk_size = self.config.funding_chunk_size

        for start in range(0, len(pending), chunk_size):
            chunk = pending[start:start + chunk_size]
            results = await asyncio.gather(*(self.fund_wallet(w) for w in chunk), return_exceptions=True)
            for wallet, outcome in zip(chunk, results):
                if isinstance(outcome, Exception):
                    logger.error(f"Funding task for {wallet.name} raised: {outcome}")
                    report.incomplete += 1
                elif outcome:
                    report.funded += 1
                else:
                    report.incomplete += 1

        logger.info(
            f"Funding pass complete: {report.funded}/{report.attempted} funded, "
            f"{report.incomplete} incomplete, {report.skipped} already funded"
        )
        return report

    async def fund_relayers(self, master: Keypair) -> int:
        """Top relayers below the minimum back up toward target from the master wallet."""
        master_pubkey = str(master.pubkey())
        master_balance = await self.connection.get_balance(master_pubkey)
        if master_balance < MASTER_MIN_LAMPORTS:
            logger.warning(f"Master wallet balance {format_sol(master_balance)} too low to fund relayers")
            return 0

        budget = master_balance - MASTER_RESERVE_LAMPORTS
        topped_up = 0
        for relayer in self.relayers:
            relayer_pubkey = str(relayer.pubkey())
            balance = await self.connection.get_balance(relayer_pubkey)
            if balance >= RELAYER_MIN_LAMPORTS:
                continue

            amount = min(RELAYER_TARGET_LAMPORTS - balance, budget)
            if amount <= 0:
                logger.warning("Master wallet budget exhausted while funding relayers")
                break

            result = await self.executor.send(
                master, relayer_pubkey, amount,
                max_attempts=self.config.funding_max_attempts,
                label="relayer_topup"
            )
            if result.success:
                budget -= amount
                topped_up += 1

        logger.info(f"Topped up {topped_up} relayer(s)")
        return topped_up

    # Withdrawal

    def withdrawable(self, balance: int) -> int:
        """Lamports a wallet can send to the sink, or 0 when below the minimum."""
        amount = balance - sol_to_lamports(self.config.min_sol_buffer) - WITHDRAW_FEE_RESERVE
        return amount if amount >= MIN_WITHDRAW_LAMPORTS else 0

    async def withdraw_wallet(self, wallet: PoolWallet, sink_pubkey: str, balance: Optional[int] = None) -> int:
        """
        Sweep one wallet to the sink, keeping ``min_sol_buffer`` and the fee reserve.

        Returns:
            Lamports delivered; 0 when the balance is too small or the sweep failed
        """
        if balance is None:
            balance = await self.connection.get_balance(wallet.pubkey)

        amount = self.withdrawable(balance)
        if not amount:
            logger.debug(f"{wallet.name} holds {format_sol(balance)}, nothing to withdraw")
            return 0

        result = await self.executor.send(
            wallet.keypair, sink_pubkey, amount,
            max_attempts=self.config.funding_max_attempts,
            label="withdraw"
        )
        if not result.success:
            # The sink is shared by concurrent withdrawals, so its balance delta
            # can mislead verification; the wallet's own balance cannot.
            remaining = await self.connection.get_balance(wallet.pubkey)
            if self.withdrawable(remaining):
                return 0
            logger.info(f"Withdrawal from {wallet.name} landed despite an unverified result")

        self._funded.discard(wallet.pubkey)
        logger.info(f"Withdrew {format_sol(amount)} from {wallet.name}")
        return amount

    async def withdraw_all(self, sink_pubkey: str) -> WithdrawalReport:
        """
        Sweep every roster wallet to the sink in concurrent chunks.

        Each wallet keeps ``min_sol_buffer`` plus the fee reserve. Wallets
        with funding in progress are skipped.
        """
        report = WithdrawalReport()
        chunk_size = self.config.funding_chunk_size
        wallets = [w for w in self.wallets if w.pubkey not in self._funding_locks]
        report.skipped = len(self.wallets) - len(wallets)

        for start in range(0, len(wallets), chunk_size):
            chunk = wallets[start:start + chunk_size]
            balances = await asyncio.gather(
                *(self.connection.get_balance(w.pubkey) for w in chunk),
                return_exceptions=True
            )

            pending = []
            for wallet, balance in zip(chunk, balances):
                if isinstance(balance, Exception):
                    logger.error(f"Balance read for {wallet.name} failed: {balance}")
                    report.attempted += 1
                    report.failed += 1
                elif not self.withdrawable(balance):
                    report.skipped += 1
                else:
                    pending.append((wallet, balance))

            report.attempted += len(pending)
            results = await asyncio.gather(
                *(self.withdraw_wallet(w, sink_pubkey, b) for w, b in pending),
                return_exceptions=True
            )
            for (wallet, _), outcome in zip(pending, results):
                if isinstance(outcome, Exception):
                    logger.error(f"Withdrawal task for {wallet.name} raised: {outcome}")
                    report.failed += 1
                elif outcome:
                    report.withdrawn += 1
                    report.lamports += outcome
                else:
                    report.failed += 1

            logger.info(
                f"Withdrawal progress: {min(start + chunk_size, len(wallets))}/{len(wallets)} wallets"
            )

        logger.info(
            f"Withdrawal complete: {report.withdrawn}/{report.attempted} wallets, "
            f"{format_sol(report.lamports)} to {format_pubkey(sink_pubkey)}"
        )
        return report

    # Selection

    def is_ready(self, pubkey: str, now: Optional[float] = None) -> bool:
        """True when the wallet's cooldown has elapsed."""
        entry = self._cooldowns.get(pubkey)
        if entry is None:
            return True
        now = self._clock() if now is None else now
        last_used, cooldown = entry
        return now - last_used >= cooldown

    def select_batch(self, batch_size: Optional[int] = None) -> List[PoolWallet]:
        """Pick up to ``batch_size`` wallets that are off cooldown (and seasoned, if required)."""
        now = self._clock()
        self.prune(now)
        size = self.batch_size if batch_size is None else batch_size

        eligible = [
            w for w in self.wallets
            if self.is_ready(w.pubkey, now)
            and (not self.config.enable_seasoning or w.is_seasoned)
        ]
        if self.config.shuffle_wallets:
            eligible = shuffled(eligible, self.rng)

        self.active_wallets = eligible[:size]
        logger.debug(f"Selected {len(self.active_wallets)} of {len(eligible)} eligible wallets")
        return self.active_wallets

    def mark_used(self, wallet: PoolWallet):
        """Start the wallet's cooldown after a completed cycle."""
        now = self._clock()
        count = self._trade_counts.get(wallet.pubkey, 0) + 1
        cooldown = wallet_cooldown_seconds(
            count, self.rng,
            self.config.min_wallet_cooldown_ms,
            self.config.max_wallet_cooldown_ms
        )

        self._trade_counts[wallet.pubkey] = count
        self._cooldowns[wallet.pubkey] = (now, cooldown)
        wallet.trade_count = count
        wallet.last_used = now

    def prune(self, now: Optional[float] = None) -> int:
        """Drop cooldown and trade-count entries older than the maximum age."""
        now = self._clock() if now is None else now
        stale = [pk for pk, (last_used, _) in self._cooldowns.items() if now - last_used > MAX_COOLDOWN_AGE_S]
        for pubkey in stale:
            del self._cooldowns[pubkey]
            self._trade_counts.pop(pubkey, None)
        if stale:
            logger.debug(f"Pruned {len(stale)} stale cooldown entries")
        return len(stale)

    def status(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            'total_wallets': len(self.wallets),
            'funded': len(self._funded),
            'funding_in_progress': len(self._funding_locks),
            'cooling_down': sum(1 for pk in self._cooldowns if not self.is_ready(pk, now)),
            'seasoned': sum(1 for w in self.wallets if w.is_seasoned),
            'tracked_cooldowns': len(self._cooldowns),
            'relayers': len(self.relayers),
            'concurrency': self.concurrency,
            'batch_size': self.batch_size,
        }
