"""
Ledger connection layer.

The pool never speaks RPC directly. Everything it needs from the chain goes
through a LedgerConnection: balance reads, submitting a signed transfer,
waiting for confirmation and a single status lookup. SolanaConnection is the
production implementation on top of solana-py / solders.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from utils import logger, async_retry_with_backoff, format_signature


PRIORITY_FEE_MICRO_LAMPORTS = 10_000
COMPUTE_UNIT_LIMIT = 25_000
# Priority fee a single transfer pays on top of the base signature fee
PRIORITY_FEE_LAMPORTS = PRIORITY_FEE_MICRO_LAMPORTS * COMPUTE_UNIT_LIMIT // 1_000_000


class ConfirmationStatus(Enum):
    """Result of waiting on a submitted transaction."""
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class LedgerConnection(ABC):
    """Account-balance / transfer capability consumed by the pool."""

    @abstractmethod
    async def get_balance(self, pubkey: str) -> int:
        """Balance of an account in lamports."""

    @abstractmethod
    async def submit_transfer(self, source: Keypair, destination: str, lamports: int) -> str:
        """Sign and submit a system transfer. Returns the transaction signature."""

    @abstractmethod
    async def confirm(self, signature: str, timeout: float) -> ConfirmationStatus:
        """Wait up to ``timeout`` seconds for the transaction to resolve."""

    @abstractmethod
    async def signature_status(self, signature: str) -> Optional[ConfirmationStatus]:
        """One status lookup. None when the cluster has no record of it."""

    async def close(self):
        pass


class SolanaConnection(LedgerConnection):
    """
    LedgerConnection over a Solana JSON-RPC endpoint.

    Transfers carry a compute-budget priority fee and are sent with
    skip_preflight; confirmation polls getSignatureStatuses.
    """

    def __init__(
        self,
        rpc_url: str,
        poll_interval: float = 2.0,
        balance_retries: int = 3
    ):
        self.rpc_url = rpc_url
        self.client = AsyncClient(rpc_url, commitment=Confirmed)
        self.poll_interval = poll_interval
        self.balance_retries = balance_retries

    async def get_balance(self, pubkey: str) -> int:
        async def _query():
            resp = await self.client.get_balance(Pubkey.from_string(pubkey), commitment=Confirmed)
            return resp.value

        return await async_retry_with_backoff(_query, max_retries=self.balance_retries, base_delay=0.5)

    async def submit_transfer(self, source: Keypair, destination: str, lamports: int) -> str:
        if lamports <= 0:
            raise ValueError(f"Transfer amount must be positive, got {lamports}")

        instructions = [
            set_compute_unit_limit(COMPUTE_UNIT_LIMIT),
            set_compute_unit_price(PRIORITY_FEE_MICRO_LAMPORTS),
            transfer(TransferParams(
                from_pubkey=source.pubkey(),
                to_pubkey=Pubkey.from_string(destination),
                lamports=lamports
            )),
        ]

        blockhash_resp = await self.client.get_latest_blockhash(commitment=Confirmed)
        blockhash = blockhash_resp.value.blockhash
        message = Message.new_with_blockhash(instructions, source.pubkey(), blockhash)
        tx = Transaction([source], message, blockhash)

        resp = await self.client.send_raw_transaction(
            bytes(tx),
            opts=TxOpts(skip_preflight=True, max_retries=2)
        )
        signature = str(resp.value)
        logger.debug(f"Submitted transfer {format_signature(signature)} ({lamports} lamports)")
        return signature

    async def signature_status(self, signature: str) -> Optional[ConfirmationStatus]:
        resp = await self.client.get_signature_statuses(
            [Signature.from_string(signature)],
            search_transaction_history=True
        )
        status = resp.value[0]
        if status is None:
            return None
        if status.err is not None:
            return ConfirmationStatus.FAILED
        if status.confirmation_status in (
            TransactionConfirmationStatus.Confirmed,
            TransactionConfirmationStatus.Finalized,
        ):
            return ConfirmationStatus.CONFIRMED
        return None

    async def confirm(self, signature: str, timeout: float) -> ConfirmationStatus:
        deadline = time.monotonic() + timeout

        while time.monotonic() < deadline:
            try:
                status = await self.signature_status(signature)
            except Exception as e:
                logger.debug(f"Status poll for {format_signature(signature)} failed: {e}")
                status = None

            if status is not None:
                return status

            await asyncio.sleep(self.poll_interval)

        return ConfirmationStatus.TIMEOUT

    async def close(self):
        await self.client.close()
