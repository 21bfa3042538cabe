"""
Transfer execution with confirmation fallback.

Every lamport the pool moves goes through TransferExecutor.send(). A
confirmation timeout is never treated as failure on its own: the signature
status is queried and, failing that, the recipient's balance delta is
compared against the expected amount. Only a contradicted or indeterminate
outcome is retried, so a transfer that actually landed is not sent twice
by the retry loop itself.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from solders.keypair import Keypair

from connection import LedgerConnection, ConfirmationStatus
from utils import (
    logger, get_structured_logger, backoff_delay, format_pubkey,
    format_signature, format_sol, sanitize_error_message, BPS_DENOMINATOR
)


class Verification(Enum):
    """Outcome of resolving an ambiguous (timed-out) transfer."""
    CONFIRMED = "confirmed"
    CONTRADICTED = "contradicted"
    INDETERMINATE = "indeterminate"


@dataclass
class TransferResult:
    """Result of a (possibly retried) transfer."""
    success: bool
    destination: str
    lamports: int
    attempts: int
    signature: Optional[str] = None
    verification: Optional[Verification] = None
    error: Optional[str] = None


def within_tolerance(delta: int, expected: int, tolerance_bps: int) -> bool:
    """True when delta lies in expected ± tolerance_bps (integer arithmetic)."""
    if expected <= 0:
        return False
    lower = expected * (BPS_DENOMINATOR - tolerance_bps)
    upper = expected * (BPS_DENOMINATOR + tolerance_bps)
    return lower <= delta * BPS_DENOMINATOR <= upper


class TransferExecutor:
    """
    Submits transfers through a LedgerConnection with bounded retries.

    Args:
        connection: Ledger capability
        confirm_timeout: Seconds to wait for confirmation per attempt
        tolerance_bps: Accepted balance-delta band when verifying a timeout
        base_delay / max_delay: Exponential backoff between attempts
        sleep: Awaitable sleep, injectable for tests
    """

    def __init__(
        self,
        connection: LedgerConnection,
        confirm_timeout: float = 60.0,
        tolerance_bps: int = 100,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep=asyncio.sleep
    ):
        self.connection = connection
        self.confirm_timeout = confirm_timeout
        self.tolerance_bps = tolerance_bps
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._structured_logger = get_structured_logger()

    async def verify(
        self,
        signature: str,
        destination: str,
        expected: int,
        prior_balance: int
    ) -> Verification:
        """Resolve a timed-out transfer from its status, then from the balance delta."""
        try:
            status = await self.connection.signature_status(signature)
        except Exception as e:
            logger.debug(f"Status lookup failed for {format_signature(signature)}: {e}")
            status = None

        if status == ConfirmationStatus.CONFIRMED:
            return Verification.CONFIRMED
        if status == ConfirmationStatus.FAILED:
            return Verification.CONTRADICTED

        try:
            current = await self.connection.get_balance(destination)
        except Exception as e:
            logger.warning(f"Balance check for {format_pubkey(destination)} failed during verification: {e}")
            return Verification.INDETERMINATE

        delta = current - prior_balance
        if within_tolerance(delta, expected, self.tolerance_bps):
            logger.info(
                f"Transfer {format_signature(signature)} verified by balance delta "
                f"({format_sol(delta)} of expected {format_sol(expected)})"
            )
            return Verification.CONFIRMED

        logger.warning(
            f"Balance delta for {format_pubkey(destination)} is {format_sol(delta)}, "
            f"expected {format_sol(expected)}"
        )
        return Verification.CONTRADICTED

    async def send(
        self,
        source: Keypair,
        destination: str,
        lamports: int,
        max_attempts: int = 3,
        label: str = "transfer"
    ) -> TransferResult:
        """
        Transfer ``lamports`` from ``source`` to ``destination``.

        Never raises for network or chain failures; the result says whether
        delivery was confirmed or verified.
        """
        result = TransferResult(success=False, destination=destination, lamports=lamports, attempts=0)

        with self._structured_logger.timed_operation(label, extra={
            'source': str(source.pubkey()), 'destination': destination
        }) as metric:
            metric.lamports = lamports

            for attempt in range(max_attempts):
                result.attempts = attempt + 1

                try:
                    prior_balance = await self.connection.get_balance(destination)
                    signature = await self.connection.submit_transfer(source, destination, lamports)
                    result.signature = signature
                    status = await self.connection.confirm(signature, self.confirm_timeout)

                    if status == ConfirmationStatus.CONFIRMED:
                        result.success = True
                        result.verification = Verification.CONFIRMED
                    elif status == ConfirmationStatus.TIMEOUT:
                        logger.warning(f"Confirmation timeout for {format_signature(signature)}, verifying...")
                        result.verification = await self.verify(signature, destination, lamports, prior_balance)
                        result.success = result.verification == Verification.CONFIRMED
                    else:
                        result.error = "transaction failed on chain"

                except Exception as e:
                    result.error = sanitize_error_message(e)
                    logger.warning(
                        f"{label} to {format_pubkey(destination)} attempt {attempt + 1}/{max_attempts} "
                        f"raised: {result.error}"
                    )

                if result.success:
                    result.error = None
                    break

                if attempt < max_attempts - 1:
                    delay = backoff_delay(attempt, self.base_delay, self.max_delay)
                    logger.debug(f"Retrying {label} to {format_pubkey(destination)} in {delay:.1f}s")
                    await self._sleep(delay)

            metric.signature = result.signature
            metric.attempts = result.attempts
            if not result.success:
                metric.error = result.error or (result.verification.value if result.verification else "failed")

        if not result.success:
            logger.error(
                f"{label} of {format_sol(lamports)} to {format_pubkey(destination)} "
                f"failed after {result.attempts} attempt(s)"
            )
        return result
