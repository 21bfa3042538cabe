"""
Circuit breaker for the trading run.

Three independent conditions, checked in this order, each of which halts
the run for good:

1. consecutive failures reaching the configured maximum
2. failure rate over a full sliding window exceeding the threshold
3. drawdown of a watched account (normally the sink) against the balance
   captured once at startup, sampled every ``balance_check_interval``
   evaluations

Loss and failure-rate arithmetic is done in integer basis points.
"""

from collections import deque
from dataclasses import dataclass
from typing import Optional, Dict, Any

from config import Config
from connection import LedgerConnection
from utils import logger, CircuitBreakerTripped, bps_of, percent_to_bps, format_sol, BPS_DENOMINATOR


@dataclass(frozen=True)
class BreakerDecision:
    tripped: bool
    reason: str = ""


NOT_TRIPPED = BreakerDecision(tripped=False)


class CircuitBreaker:
    """
    Safety evaluator fed with trade outcomes.

    Args:
        config: Thresholds (enable_circuit_breaker, max_consecutive_failures,
            max_failure_rate_percent, failure_rate_window,
            emergency_stop_loss_percent, balance_check_interval)
        connection: Ledger used for the drawdown check
        watched_pubkey: Account whose balance is tracked, usually the sink
    """

    def __init__(
        self,
        config: Config,
        connection: Optional[LedgerConnection] = None,
        watched_pubkey: Optional[str] = None
    ):
        self.enabled = config.enable_circuit_breaker
        self.max_consecutive_failures = config.max_consecutive_failures
        self.max_failure_rate_bps = percent_to_bps(config.max_failure_rate_percent)
        self.stop_loss_bps = percent_to_bps(config.emergency_stop_loss_percent)
        self.check_interval = config.balance_check_interval

        self.connection = connection
        self.watched_pubkey = watched_pubkey

        self.consecutive_failures = 0
        self.recent_outcomes: deque = deque(maxlen=config.failure_rate_window)
        self.check_counter = 0
        self._baseline_balance: Optional[int] = None
        self._decision: Optional[BreakerDecision] = None

    @property
    def baseline_balance(self) -> Optional[int]:
        return self._baseline_balance

    @property
    def tripped(self) -> bool:
        return self._decision is not None

    async def capture_baseline(self) -> Optional[int]:
        """Record the watched account's starting balance. Only the first call has effect."""
        if self._baseline_balance is not None:
            return self._baseline_balance
        if not self.connection or not self.watched_pubkey:
            logger.info("Circuit breaker: no watched account, drawdown check disabled")
            return None

        self._baseline_balance = await self.connection.get_balance(self.watched_pubkey)
        logger.info(f"Circuit breaker baseline locked at {format_sol(self._baseline_balance)}")
        return self._baseline_balance

    def record_outcome(self, success: bool):
        """Feed one trade outcome into the breaker."""
        if not self.enabled:
            return

        self.recent_outcomes.append(success)
        if success:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1

    def _check_consecutive_failures(self) -> BreakerDecision:
        if self.consecutive_failures >= self.max_consecutive_failures:
            return BreakerDecision(True, f"{self.consecutive_failures} consecutive failures")
        return NOT_TRIPPED

    def _check_failure_rate(self) -> BreakerDecision:
        window = self.recent_outcomes.maxlen
        if len(self.recent_outcomes) < window:
            return NOT_TRIPPED

        failures = sum(1 for ok in self.recent_outcomes if not ok)
        if failures * BPS_DENOMINATOR > self.max_failure_rate_bps * window:
            rate_bps = bps_of(failures, window)
            return BreakerDecision(
                True, f"{rate_bps / 100:.1f}% failure rate over the last {window} trades"
            )
        return NOT_TRIPPED

    async def _check_drawdown(self) -> BreakerDecision:
        self.check_counter += 1
        if not self._baseline_balance or self.check_counter % self.check_interval != 0:
            return NOT_TRIPPED

        current = await self.connection.get_balance(self.watched_pubkey)
        loss_bps = bps_of(self._baseline_balance - current, self._baseline_balance)
        if loss_bps > self.stop_loss_bps:
            return BreakerDecision(
                True, f"{loss_bps / 100:.2f}% loss from initial balance "
                      f"({format_sol(self._baseline_balance)} -> {format_sol(current)})"
            )
        return NOT_TRIPPED

    async def evaluate(self) -> BreakerDecision:
        """Run the checks in precedence order. A trip is latched for the rest of the run."""
        if self._decision is not None:
            return self._decision
        if not self.enabled:
            return NOT_TRIPPED

        decision = self._check_consecutive_failures()
        if not decision.tripped:
            decision = self._check_failure_rate()
        if not decision.tripped:
            try:
                decision = await self._check_drawdown()
            except Exception as e:
                logger.warning(f"Drawdown check skipped, balance query failed: {e}")
                decision = NOT_TRIPPED

        if decision.tripped:
            self._decision = BreakerDecision(True, f"Circuit Breaker: {decision.reason}")
            logger.critical(self._decision.reason)
            return self._decision
        return decision

    async def ensure_not_tripped(self):
        """Raise CircuitBreakerTripped when evaluation says stop."""
        decision = await self.evaluate()
        if decision.tripped:
            raise CircuitBreakerTripped(decision.reason)

    def status(self) -> Dict[str, Any]:
        window = self.recent_outcomes.maxlen
        failures = sum(1 for ok in self.recent_outcomes if not ok)
        return {
            'enabled': self.enabled,
            'tripped': self.tripped,
            'reason': self._decision.reason if self._decision else "",
            'consecutive_failures': self.consecutive_failures,
            'window_failures': failures,
            'window_size': len(self.recent_outcomes),
            'window_capacity': window,
            'baseline_balance': self._baseline_balance,
            'checks': self.check_counter,
        }
