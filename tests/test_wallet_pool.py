"""
Tests for the durable wallet pool: bootstrap, funding and batch selection.
"""

import asyncio
import json
import random

import pytest
from solders.keypair import Keypair

from connection import ConfirmationStatus
from roster_store import WalletRosterStore, WalletRecord
from utils import RosterLoadError
from wallet_pool import (
    WalletPoolManager, funding_part, plan_tranche_count,
    wallet_cooldown_seconds, MIN_TRANCHE_LAMPORTS, PERSONALITIES,
    RELAYER_TARGET_LAMPORTS, WITHDRAW_FEE_RESERVE
)


def make_pool(config, ledger, clock, no_sleep, relayers=None, seed=7):
    store = WalletRosterStore(config.wallet_file)
    return WalletPoolManager(
        config, ledger, store,
        relayers=relayers,
        rng=random.Random(seed),
        clock=clock,
        sleep=no_sleep
    )


def funded_relayers(ledger, count=2, lamports=10_000_000_000):
    relayers = [Keypair() for _ in range(count)]
    for relayer in relayers:
        ledger.balances[str(relayer.pubkey())] = lamports
    return relayers


class TestTrancheSplitting:

    def test_same_seed_same_split(self):
        first = funding_part(50_000_000, 3, random.Random(42))
        second = funding_part(50_000_000, 3, random.Random(42))
        assert first == second

    def test_tranches_cover_remaining_exactly(self):
        rng = random.Random(99)
        remaining = 50_000_000
        parts = 4
        sent = []
        for index in range(parts):
            amount = funding_part(remaining, parts - index, rng)
            sent.append(amount)
            remaining -= amount

        assert remaining == 0
        assert sum(sent) == 50_000_000
        assert all(a > 0 for a in sent)

    def test_part_is_clamped(self):
        rng = random.Random(1)
        assert funding_part(6_000, 4, rng) == MIN_TRANCHE_LAMPORTS
        assert funding_part(3_000, 4, rng) == 3_000
        assert funding_part(0, 2, rng) == 0

    def test_share_stays_within_factor_band(self):
        for seed in range(50):
            part = funding_part(40_000_000, 2, random.Random(seed))
            assert 12_000_000 <= part < 28_000_000

    def test_tranche_count_range(self):
        counts = {plan_tranche_count(random.Random(seed)) for seed in range(200)}
        assert counts == {1, 2, 3, 4}


class TestCooldown:

    def test_deterministic_for_seed(self):
        a = wallet_cooldown_seconds(2, random.Random(5), 300_000, 1_800_000)
        b = wallet_cooldown_seconds(2, random.Random(5), 300_000, 1_800_000)
        assert a == b

    def test_grows_with_trade_count_and_caps(self):
        base = wallet_cooldown_seconds(0, random.Random(5), 300_000, 300_000)
        assert base == 300
        assert wallet_cooldown_seconds(5, random.Random(5), 300_000, 300_000) == pytest.approx(600)
        assert wallet_cooldown_seconds(50, random.Random(5), 300_000, 300_000) == pytest.approx(600)


class TestBootstrap:

    def test_generates_missing_wallets(self, config, ledger, clock, no_sleep):
        pool = make_pool(config, ledger, clock, no_sleep)
        wallets = pool.load_or_bootstrap()

        assert len(wallets) == 5
        assert len({w.pubkey for w in wallets}) == 5
        assert [w.name for w in wallets] == [f"Wallet{i}" for i in range(1, 6)]
        assert all(w.personality in PERSONALITIES for w in wallets)

    def test_reload_keeps_identities(self, config, ledger, clock, no_sleep):
        first = make_pool(config, ledger, clock, no_sleep)
        first.load_or_bootstrap()

        second = make_pool(config, ledger, clock, no_sleep)
        second.load_or_bootstrap()

        assert [w.pubkey for w in first.wallets] == [w.pubkey for w in second.wallets]

    def test_duplicates_are_dropped(self, config, ledger, clock, no_sleep):
        record = WalletRecord.generate("Dup")
        with open(config.wallet_file, 'w') as f:
            json.dump([record.to_dict(), record.to_dict()], f)

        config.num_wallets_to_generate = 1
        pool = make_pool(config, ledger, clock, no_sleep)
        pool.load_or_bootstrap()

        assert [w.pubkey for w in pool.wallets] == [record.pubkey]

    def test_corrupt_roster_is_fatal(self, config, ledger, clock, no_sleep):
        with open(config.wallet_file, 'w') as f:
            f.write("{not json")

        pool = make_pool(config, ledger, clock, no_sleep)
        with pytest.raises(RosterLoadError):
            pool.load_or_bootstrap()
        assert pool.wallets == []

    def test_auto_scale(self, config, ledger, clock, no_sleep):
        config.auto_scale = True
        pool = make_pool(config, ledger, clock, no_sleep)
        pool.load_or_bootstrap()

        assert (pool.concurrency, pool.batch_size) == (3, 2)


class TestFunding:

    def test_concurrent_funding_of_one_wallet_is_exclusive(self, config, ledger, clock, no_sleep):
        pool = make_pool(config, ledger, clock, no_sleep, relayers=funded_relayers(ledger))
        pool.load_or_bootstrap()
        wallet = pool.wallets[0]

        async def _race():
            return await asyncio.gather(*(pool.fund_wallet(wallet) for _ in range(5)))

        results = asyncio.run(_race())

        assert results.count(True) == 1
        assert ledger.balances[wallet.pubkey] == pool.fund_amount
        delivered = sum(l for _, dest, l in ledger.transfers if dest == wallet.pubkey)
        assert delivered == pool.fund_amount
        assert not pool.is_funding(wallet.pubkey)

    def test_lock_is_released_when_funding_raises(self, config, ledger, clock, no_sleep):
        pool = make_pool(config, ledger, clock, no_sleep, relayers=funded_relayers(ledger))
        pool.load_or_bootstrap()
        wallet = pool.wallets[0]
        ledger.balance_errors.add(wallet.pubkey)

        assert asyncio.run(pool.fund_wallet(wallet)) is False
        assert not pool.is_funding(wallet.pubkey)
        assert not pool.is_funded(wallet.pubkey)

        ledger.balance_errors.clear()
        assert asyncio.run(pool.fund_wallet(wallet)) is True

    def test_already_funded_wallet_is_not_topped_up(self, config, ledger, clock, no_sleep):
        pool = make_pool(config, ledger, clock, no_sleep, relayers=funded_relayers(ledger))
        pool.load_or_bootstrap()
        wallet = pool.wallets[0]
        ledger.balances[wallet.pubkey] = pool.fund_amount * 8 // 10

        assert asyncio.run(pool.fund_wallet(wallet)) is True
        assert ledger.transfers == []
        assert pool.is_funded(wallet.pubkey)

    def test_undeliverable_tranches_still_mark_funded(self, config, ledger, clock, no_sleep):
        pool = make_pool(config, ledger, clock, no_sleep, relayers=funded_relayers(ledger))
        pool.load_or_bootstrap()
        wallet = pool.wallets[0]
        ledger.fail_destinations.add(wallet.pubkey)

        assert asyncio.run(pool.fund_wallet(wallet)) is False
        assert pool.is_funded(wallet.pubkey)
        assert ledger.balances[wallet.pubkey] == 0
        # A second pass skips it
        assert asyncio.run(pool.fund_wallet(wallet)) is False

    def test_fund_all_without_relayers(self, config, ledger, clock, no_sleep):
        pool = make_pool(config, ledger, clock, no_sleep)
        pool.load_or_bootstrap()

        report = asyncio.run(pool.fund_all())
        assert report.attempted == 0
        assert ledger.transfers == []

    def test_fund_all(self, config, ledger, clock, no_sleep):
        pool = make_pool(config, ledger, clock, no_sleep, relayers=funded_relayers(ledger))
        pool.load_or_bootstrap()

        report = asyncio.run(pool.fund_all())

        assert report.attempted == 5
        assert report.funded == 5
        assert all(ledger.balances[w.pubkey] == pool.fund_amount for w in pool.wallets)

        again = asyncio.run(pool.fund_all())
        assert again.attempted == 0
        assert again.skipped == 5

    def test_fund_relayers_from_master(self, config, ledger, clock, no_sleep):
        relayers = [Keypair(), Keypair()]
        rich = str(relayers[1].pubkey())
        ledger.balances[rich] = RELAYER_TARGET_LAMPORTS
        master = Keypair()
        ledger.balances[str(master.pubkey())] = 1_000_000_000

        pool = make_pool(config, ledger, clock, no_sleep, relayers=relayers)
        topped = asyncio.run(pool.fund_relayers(master))

        assert topped == 1
        assert ledger.balances[str(relayers[0].pubkey())] == RELAYER_TARGET_LAMPORTS
        assert ledger.balances[rich] == RELAYER_TARGET_LAMPORTS


class TestSelection:

    def test_select_batch_is_idempotent_without_usage(self, config, ledger, clock, no_sleep):
        pool = make_pool(config, ledger, clock, no_sleep)
        pool.load_or_bootstrap()

        first = pool.select_batch(10)
        second = pool.select_batch(10)

        assert {w.pubkey for w in first} == {w.pubkey for w in second}
        assert len(first) == 5

    def test_used_wallets_cool_down(self, config, ledger, clock, no_sleep):
        pool = make_pool(config, ledger, clock, no_sleep)
        pool.load_or_bootstrap()
        used = pool.wallets[0]

        pool.mark_used(used)
        assert used.trade_count == 1
        assert used.pubkey not in {w.pubkey for w in pool.select_batch(10)}

        clock.advance(config.max_wallet_cooldown_ms / 1000 * 1.2 + 1)
        assert used.pubkey in {w.pubkey for w in pool.select_batch(10)}

    def test_seasoning_requirement(self, config, ledger, clock, no_sleep):
        config.enable_seasoning = True
        pool = make_pool(config, ledger, clock, no_sleep)
        pool.load_or_bootstrap()
        assert pool.select_batch(10) == []

        pool.mark_seasoned(pool.wallets[2].pubkey)
        assert [w.pubkey for w in pool.select_batch(10)] == [pool.wallets[2].pubkey]

    def test_batch_size_limits_selection(self, config, ledger, clock, no_sleep):
        pool = make_pool(config, ledger, clock, no_sleep)
        pool.load_or_bootstrap()

        assert len(pool.select_batch(2)) == 2
        assert len(pool.active_wallets) == 2

    def test_zero_batch_size_selects_nothing(self, config, ledger, clock, no_sleep):
        pool = make_pool(config, ledger, clock, no_sleep)
        pool.load_or_bootstrap()

        assert pool.select_batch(0) == []
        assert pool.active_wallets == []
        assert len(pool.select_batch()) == config.batch_size

    def test_prune_drops_old_entries(self, config, ledger, clock, no_sleep):
        pool = make_pool(config, ledger, clock, no_sleep)
        pool.load_or_bootstrap()
        pool.mark_used(pool.wallets[0])
        pool.mark_used(pool.wallets[1])
        assert pool.status()['tracked_cooldowns'] == 2

        clock.advance(25 * 60 * 60)
        assert pool.prune() == 2
        assert pool.status()['tracked_cooldowns'] == 0

    def test_personality_lookup_defaults(self, config, ledger, clock, no_sleep):
        pool = make_pool(config, ledger, clock, no_sleep)
        pool.load_or_bootstrap()

        assert pool.get_personality(pool.wallets[0].pubkey) == pool.wallets[0].personality
        assert pool.get_personality("unknown") == "flipper"


class TestWithdrawal:

    BUFFER = 500_000                  # min_sol_buffer default, 0.0005 SOL

    def setup_pool(self, config, ledger, clock, no_sleep, balance=50_000_000):
        config.funding_chunk_size = 2
        pool = make_pool(config, ledger, clock, no_sleep)
        pool.load_or_bootstrap()
        for wallet in pool.wallets:
            ledger.balances[wallet.pubkey] = balance
        return pool

    def test_sweeps_every_wallet_keeping_buffer(self, config, ledger, clock, no_sleep):
        pool = self.setup_pool(config, ledger, clock, no_sleep)
        sink = str(Keypair().pubkey())
        expected = 50_000_000 - self.BUFFER - WITHDRAW_FEE_RESERVE

        report = asyncio.run(pool.withdraw_all(sink))

        assert report.to_dict() == {
            'attempted': 5, 'withdrawn': 5, 'failed': 0, 'skipped': 0, 'lamports': 5 * expected,
        }
        assert ledger.balances[sink] == 5 * expected
        for wallet in pool.wallets:
            assert ledger.balances[wallet.pubkey] == self.BUFFER + WITHDRAW_FEE_RESERVE

    def test_dust_and_locked_wallets_are_skipped(self, config, ledger, clock, no_sleep):
        pool = self.setup_pool(config, ledger, clock, no_sleep)
        sink = str(Keypair().pubkey())
        dusty, locked = pool.wallets[0], pool.wallets[1]
        ledger.balances[dusty.pubkey] = self.BUFFER
        pool._funding_locks.add(locked.pubkey)

        report = asyncio.run(pool.withdraw_all(sink))

        assert report.skipped == 2
        assert report.withdrawn == 3
        assert ledger.balances[dusty.pubkey] == self.BUFFER
        assert ledger.balances[locked.pubkey] == 50_000_000

    def test_failed_sweeps_are_reported(self, config, ledger, clock, no_sleep):
        pool = self.setup_pool(config, ledger, clock, no_sleep)
        sink = str(Keypair().pubkey())
        ledger.fail_destinations.add(sink)

        report = asyncio.run(pool.withdraw_all(sink))

        assert report.attempted == 5
        assert report.failed == 5
        assert report.lamports == 0
        assert all(ledger.balances[w.pubkey] == 50_000_000 for w in pool.wallets)

    def test_sweeps_landing_after_timeout_count_as_withdrawn(self, config, ledger, clock, no_sleep):
        pool = self.setup_pool(config, ledger, clock, no_sleep)
        sink = str(Keypair().pubkey())
        ledger.confirm_outcomes.extend([ConfirmationStatus.TIMEOUT] * 5)

        report = asyncio.run(pool.withdraw_all(sink))

        assert report.withdrawn == 5
        assert ledger.balances[sink] == report.lamports

    def test_withdrawn_wallet_is_funded_again(self, config, ledger, clock, no_sleep):
        relayers = funded_relayers(ledger)
        pool = make_pool(config, ledger, clock, no_sleep, relayers=relayers)
        pool.load_or_bootstrap()
        asyncio.run(pool.fund_all())
        wallet = pool.wallets[0]
        assert pool.is_funded(wallet.pubkey)

        assert asyncio.run(pool.withdraw_wallet(wallet, str(Keypair().pubkey()))) > 0
        assert not pool.is_funded(wallet.pubkey)
