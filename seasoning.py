"""
Wallet seasoning.

A fresh wallet gets a little on-chain history before it is used for real
work: a handful of tiny transfers to the incinerator, or calls to an
optional activity hook supplied by the caller.
"""

import asyncio
import random
from typing import Optional, Callable, Awaitable, Any

from config import Config
from connection import LedgerConnection
from transfers import TransferExecutor
from utils import logger, sol_to_lamports, jitter


INCINERATOR_ADDRESS = "1nc1nerator11111111111111111111111111111111"
MIN_SEASONING_BALANCE = sol_to_lamports(0.002)
BURN_MIN_LAMPORTS = 100
BURN_MAX_LAMPORTS = 1_000
BURN_SHARE = 0.3

ActivityHook = Callable[[Any], Awaitable[bool]]


class WalletSeasoner:
    """
    Builds transaction history on unseasoned wallets.

    Args:
        config: seasoning_min_txs / seasoning_max_txs / seasoning_delay_ms and
            the burner seasoning range
        connection: Ledger capability
        activity: Optional async hook ``activity(wallet) -> bool`` used for
            most steps when present (e.g. a tiny swap)
    """

    def __init__(
        self,
        config: Config,
        connection: LedgerConnection,
        activity: Optional[ActivityHook] = None,
        rng: Optional[random.Random] = None,
        sleep=asyncio.sleep,
        executor: Optional[TransferExecutor] = None
    ):
        self.config = config
        self.connection = connection
        self.activity = activity
        self.rng = rng or random.Random()
        self._sleep = sleep
        self.executor = executor or TransferExecutor(
            connection,
            confirm_timeout=config.confirm_timeout_seconds,
            tolerance_bps=config.verify_tolerance_bps,
            sleep=sleep
        )

    async def _step(self, wallet) -> bool:
        if self.activity is not None and self.rng.random() >= BURN_SHARE:
            try:
                return bool(await self.activity(wallet))
            except Exception as e:
                logger.warning(f"Seasoning activity for {wallet.name} raised: {e}")
                return False

        amount = self.rng.randint(BURN_MIN_LAMPORTS, BURN_MAX_LAMPORTS)
        result = await self.executor.send(
            wallet.keypair, INCINERATOR_ADDRESS, amount,
            max_attempts=1,
            label="seasoning_burn"
        )
        return result.success

    async def season_wallet(self, wallet, min_txs: int, max_txs: int) -> int:
        """Run between min_txs and max_txs seasoning steps. Returns the successful count."""
        steps = self.rng.randint(min_txs, max_txs)
        low_ms, high_ms = self.config.seasoning_delay_ms
        succeeded = 0

        for index in range(steps):
            if await self._step(wallet):
                succeeded += 1
            if index < steps - 1:
                await self._sleep(jitter(self.rng, low_ms, high_ms) / 1000)

        logger.info(f"Seasoned {wallet.name}: {succeeded}/{steps} steps succeeded")
        return succeeded

    async def season_pool(self, pool) -> int:
        """Season every unseasoned pool wallet with enough balance; saves the roster after."""
        seasoned = 0
        for wallet in [w for w in pool.wallets if not w.is_seasoned]:
            try:
                balance = await self.connection.get_balance(wallet.pubkey)
            except Exception as e:
                logger.warning(f"Skipping seasoning of {wallet.name}: {e}")
                continue

            if balance < MIN_SEASONING_BALANCE:
                logger.debug(f"{wallet.name} balance too low for seasoning")
                continue

            if await self.season_wallet(wallet, self.config.seasoning_min_txs, self.config.seasoning_max_txs):
                pool.mark_seasoned(wallet.pubkey)
                seasoned += 1

        if seasoned:
            pool.save()
        logger.info(f"Seasoning pass complete: {seasoned} wallet(s) seasoned")
        return seasoned

    async def season_burners(self, burners) -> int:
        """Season burners until they meet burner_seasoning_min_txs."""
        if not self.config.enable_burner_seasoning:
            return 0

        completed = 0
        for burner in burners.unseasoned_burners():
            done = await self.season_wallet(
                burner,
                self.config.burner_seasoning_min_txs,
                self.config.burner_seasoning_max_txs
            )
            if done:
                burners.record_seasoning(burner.pubkey, done)
            if burners.is_seasoned(burner):
                completed += 1
        return completed
