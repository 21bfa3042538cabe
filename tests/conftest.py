"""
Shared fixtures: an in-memory ledger with zero fees, a controllable clock
and a sleep that returns immediately.
"""

import sys
import asyncio
import random
from collections import defaultdict, deque
from pathlib import Path

import pytest

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import Config
from connection import LedgerConnection, ConfirmationStatus


class FakeLedger(LedgerConnection):
    """
    Zero-fee ledger kept in a dict.

    - ``confirm_outcomes``: queue of ConfirmationStatus returned by confirm()
      (CONFIRMED once empty)
    - ``deliver_on_timeout``: whether a TIMEOUT transfer still lands
    - ``fail_destinations`` / ``balance_errors``: pubkeys whose submits or
      balance reads raise
    """

    def __init__(self, balances=None):
        self.balances = defaultdict(int, balances or {})
        self.transfers = []
        self.confirm_outcomes = deque()
        self.status_outcomes = {}
        self.deliver_on_timeout = True
        self.fail_destinations = set()
        self.balance_errors = set()
        self.submit_count = 0
        self._pending = {}

    def total(self, pubkeys):
        return sum(self.balances[pk] for pk in pubkeys)

    async def get_balance(self, pubkey):
        await asyncio.sleep(0)
        if pubkey in self.balance_errors:
            raise ConnectionError(f"balance unavailable for {pubkey}")
        return self.balances[pubkey]

    async def submit_transfer(self, source, destination, lamports):
        await asyncio.sleep(0)
        if destination in self.fail_destinations:
            raise ConnectionError("rpc unavailable")
        self.submit_count += 1
        signature = f"sig{self.submit_count}"
        self._pending[signature] = (str(source.pubkey()), destination, lamports)
        return signature

    def _apply(self, signature):
        source, destination, lamports = self._pending.pop(signature)
        if self.balances[source] < lamports:
            return False
        self.balances[source] -= lamports
        self.balances[destination] += lamports
        self.transfers.append((source, destination, lamports))
        return True

    async def confirm(self, signature, timeout):
        await asyncio.sleep(0)
        outcome = self.confirm_outcomes.popleft() if self.confirm_outcomes else ConfirmationStatus.CONFIRMED

        if outcome == ConfirmationStatus.CONFIRMED:
            return ConfirmationStatus.CONFIRMED if self._apply(signature) else ConfirmationStatus.FAILED
        if outcome == ConfirmationStatus.TIMEOUT:
            if self.deliver_on_timeout:
                self._apply(signature)
            else:
                self._pending.pop(signature)
            return ConfirmationStatus.TIMEOUT

        self._pending.pop(signature)
        return ConfirmationStatus.FAILED

    async def signature_status(self, signature):
        await asyncio.sleep(0)
        return self.status_outcomes.get(signature)


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_sleep():
    return RecordingSleep()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def config(tmp_path):
    return Config(
        wallet_file=str(tmp_path / "wallets.json"),
        num_wallets_to_generate=5,
        fund_amount=0.05,
        batch_size=5,
        concurrency=3,
        confirm_timeout_seconds=1.0,
        log_file=None,
    )
