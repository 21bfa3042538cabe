"""
Wallet rebalancing.

Works on a snapshot of the active batch. Wallets below the minimum floor are
topped up peer-to-peer from wallets holding more than 1.5x target, then
anything still above 1.1x target is consolidated to the sink. Best effort:
a failed transfer is logged and skipped, never raised.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any

from config import Config
from connection import LedgerConnection
from transfers import TransferExecutor
from utils import logger, sol_to_lamports, format_sol, jitter, percent_to_bps, BPS_DENOMINATOR


SURPLUS_FACTOR_BPS = 15_000        # donors hold more than 1.5x target
CONSOLIDATE_FACTOR_BPS = 11_000    # sweep wallets holding more than 1.1x target


@dataclass
class BalanceEntry:
    """One row of the rebalance snapshot."""
    wallet: Any
    balance: int

    @property
    def pubkey(self) -> str:
        return self.wallet.pubkey


@dataclass
class RebalanceReport:
    p2p_transfers: int = 0
    p2p_lamports: int = 0
    consolidations: int = 0
    consolidated_lamports: int = 0
    failures: int = 0
    skipped: bool = False
    snapshot: List[BalanceEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'p2p_transfers': self.p2p_transfers,
            'p2p_lamports': self.p2p_lamports,
            'consolidations': self.consolidations,
            'consolidated_lamports': self.consolidated_lamports,
            'failures': self.failures,
            'skipped': self.skipped,
        }


class WalletRebalancer:
    """
    Keeps batch balances inside the operating band.

    Args:
        config: enable_rebalancing, min_wallet_balance, target_wallet_balance,
            dust_threshold, max_retention_percent
        connection: Ledger capability
        sink_pubkey: Consolidation destination; consolidation is skipped without one
    """

    def __init__(
        self,
        config: Config,
        connection: LedgerConnection,
        sink_pubkey: Optional[str] = None,
        rng: Optional[random.Random] = None,
        sleep=asyncio.sleep,
        executor: Optional[TransferExecutor] = None
    ):
        self.enabled = config.enable_rebalancing
        self.connection = connection
        self.sink_pubkey = sink_pubkey
        self.rng = rng or random.Random()
        self._sleep = sleep
        self.executor = executor or TransferExecutor(
            connection,
            confirm_timeout=config.confirm_timeout_seconds,
            tolerance_bps=config.verify_tolerance_bps,
            sleep=sleep
        )

        self.min_balance = sol_to_lamports(config.min_wallet_balance)
        self.target_balance = sol_to_lamports(config.target_wallet_balance)
        self.dust_threshold = sol_to_lamports(config.dust_threshold)
        self.max_retention_bps = percent_to_bps(config.max_retention_percent)

    async def snapshot(self, batch: List[Any]) -> List[BalanceEntry]:
        entries = []
        for wallet in batch:
            try:
                entries.append(BalanceEntry(wallet, await self.connection.get_balance(wallet.pubkey)))
            except Exception as e:
                logger.warning(f"Skipping {wallet.name} in rebalance, balance query failed: {e}")
        return entries

    async def rebalance(self, batch: List[Any]) -> RebalanceReport:
        """Rebalance a batch of wallets (anything with pubkey, keypair and name)."""
        report = RebalanceReport()
        if not self.enabled:
            logger.info("Rebalancing skipped: disabled")
            report.skipped = True
            return report
        if len(batch) < 2:
            logger.info("Not enough active wallets for rebalancing")
            report.skipped = True
            return report

        entries = await self.snapshot(batch)
        report.snapshot = entries

        surplus_floor = self.target_balance * SURPLUS_FACTOR_BPS // BPS_DENOMINATOR
        needy = sorted((e for e in entries if e.balance < self.min_balance), key=lambda e: e.balance)
        donors = sorted((e for e in entries if e.balance > surplus_floor), key=lambda e: e.balance, reverse=True)

        logger.info(f"Rebalancing {len(entries)} wallets: {len(needy)} needy, {len(donors)} with surplus")

        if needy and donors:
            await self._pair(needy, donors, report)

        if self.sink_pubkey:
            await self._consolidate(entries, report)

        logger.info(
            f"Rebalancing complete: {report.p2p_transfers} P2P ({format_sol(report.p2p_lamports)}), "
            f"{report.consolidations} to sink ({format_sol(report.consolidated_lamports)}), "
            f"{report.failures} failed"
        )
        return report

    async def _pair(self, needy: List[BalanceEntry], donors: List[BalanceEntry], report: RebalanceReport):
        donor_index = 0

        for recipient in needy:
            while donor_index < len(donors) and recipient.balance < self.target_balance:
                donor = donors[donor_index]
                surplus = donor.balance - self.target_balance
                if donor.pubkey == recipient.pubkey or surplus < self.dust_threshold:
                    donor_index += 1
                    continue

                amount = min(self.target_balance - recipient.balance, surplus)
                result = await self.executor.send(
                    donor.wallet.keypair, recipient.pubkey, amount,
                    max_attempts=1,
                    label="p2p_rebalance"
                )

                if not result.success:
                    logger.error(f"P2P transfer {donor.wallet.name} -> {recipient.wallet.name} failed")
                    report.failures += 1
                    donor_index += 1
                    continue

                donor.balance -= amount
                recipient.balance += amount
                report.p2p_transfers += 1
                report.p2p_lamports += amount
                logger.info(f"P2P transfer {donor.wallet.name} -> {recipient.wallet.name}: {format_sol(amount)}")

                if donor.balance - self.target_balance < self.dust_threshold:
                    donor_index += 1
                await self._sleep(jitter(self.rng, 1.0, 3.0))

            if donor_index >= len(donors):
                break

    async def _consolidate(self, entries: List[BalanceEntry], report: RebalanceReport):
        threshold = self.target_balance * CONSOLIDATE_FACTOR_BPS // BPS_DENOMINATOR

        for entry in entries:
            if entry.balance <= threshold or entry.pubkey == self.sink_pubkey:
                continue

            excess = entry.balance - self.target_balance
            retention_bps = self.rng.randint(0, self.max_retention_bps)
            amount = excess * (BPS_DENOMINATOR - retention_bps) // BPS_DENOMINATOR
            if amount < self.dust_threshold:
                continue

            result = await self.executor.send(
                entry.wallet.keypair, self.sink_pubkey, amount,
                max_attempts=1,
                label="consolidate"
            )
            if not result.success:
                logger.error(f"Consolidation from {entry.wallet.name} failed")
                report.failures += 1
                continue

            entry.balance -= amount
            report.consolidations += 1
            report.consolidated_lamports += amount
            logger.info(f"Consolidated {format_sol(amount)} from {entry.wallet.name} to sink")
            await self._sleep(jitter(self.rng, 0.5, 2.0))
