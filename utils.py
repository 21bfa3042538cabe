"""
Utility Module

Logging, formatting, exceptions and the small pure helpers shared by the
wallet pool, burner manager, circuit breaker and rebalancer.

SECURITY:
- Secure logging that redacts keypair material (base58 secrets, byte arrays)
- Error message sanitization before display
- Randomness is always taken from an injected random.Random so runs can be
  reproduced from a seed
"""

import os
import re
import asyncio
import logging
import random
from typing import Optional, Dict, Any, List, Sequence, TypeVar

from rich.logging import RichHandler
from rich.console import Console

from logging_utils import StructuredLogger


# Global console for Rich output
console = Console()

LAMPORTS_PER_SOL = 1_000_000_000
BPS_DENOMINATOR = 10_000

T = TypeVar("T")


class RosterLoadError(Exception):
    """Raised when the persisted wallet roster cannot be read. Always fatal."""
    pass


class CircuitBreakerTripped(Exception):
    """Raised when the circuit breaker halts the run."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SecurityError(Exception):
    """Raised when stored secrets cannot be decrypted with the given password."""
    pass


class SecureLogger:
    """
    Logger that sanitizes sensitive data from log messages.

    Keypairs must never reach a log file, so anything shaped like a base58
    secret key or a 64-byte secret array is redacted before emission.
    """

    # Patterns to redact from logs
    SENSITIVE_PATTERNS = [
        (r'\b[1-9A-HJ-NP-Za-km-z]{86,88}\b', '[SECRET_KEY_REDACTED]'),  # base58 64-byte keypair
        (r'\[\s*(?:\d{1,3}\s*,\s*){31,}\d{1,3}\s*\]', '[KEY_BYTES_REDACTED]'),  # JSON byte arrays
        (r'password["\']?\s*[:=]\s*["\'][^"\']+["\']', 'password=[REDACTED]'),
        (r'key["\']?\s*[:=]\s*["\'][^"\']{32,}["\']', 'key=[REDACTED]'),
    ]

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _sanitize(self, msg: str) -> str:
        """Remove sensitive data from log message."""
        if not isinstance(msg, str):
            msg = str(msg)

        sanitized = msg
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)
        return sanitized

    @property
    def name(self) -> str:
        return self._logger.name

    def debug(self, msg: str, *args, **kwargs):
        self._logger.debug(self._sanitize(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._logger.info(self._sanitize(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._logger.warning(self._sanitize(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._logger.error(self._sanitize(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        self._logger.exception(self._sanitize(msg), *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._logger.critical(self._sanitize(msg), *args, **kwargs)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> SecureLogger:
    """
    Setup logging with rich console output and an optional log file.

    Returns a SecureLogger that sanitizes sensitive data.
    """
    logger = logging.getLogger("wallet_pool")
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers
    logger.handlers = []

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        rich_tracebacks=True
    )
    rich_handler.setLevel(getattr(logging, log_level.upper()))
    rich_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(rich_handler)

    if log_file:
        log_path = os.path.abspath(log_file)
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    return SecureLogger(logger)


# Initialize global secure logger (console only until the CLI configures a file)
logger = setup_logging()

_structured_logger: Optional[StructuredLogger] = None


def get_structured_logger(name: str = 'wallet_pool.metrics', log_file: Optional[str] = None) -> StructuredLogger:
    """Get or initialize the structured logger used for transfer metrics."""
    global _structured_logger
    if _structured_logger is None:
        _structured_logger = StructuredLogger(
            name=name,
            log_file=log_file,
            log_level='INFO',
            max_bytes=10*1024*1024,  # 10MB
            backup_count=5,
            use_rich_console=False,
            json_format_file=True
        )
    return _structured_logger


# Amount helpers

def sol_to_lamports(sol: float) -> int:
    """Convert a SOL amount from config into integer lamports."""
    return int(round(sol * LAMPORTS_PER_SOL))


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def bps_of(part: int, whole: int) -> int:
    """Integer basis points of part relative to whole (floor division)."""
    if whole <= 0:
        raise ValueError(f"whole must be positive, got {whole}")
    return part * BPS_DENOMINATOR // whole


def percent_to_bps(percent: float) -> int:
    return int(round(percent * 100))


# Formatting utilities

def format_sol(lamports: int) -> str:
    """Format a lamport amount as SOL with appropriate precision."""
    sol = lamports_to_sol(lamports)
    if sol == 0:
        return "0 SOL"
    elif abs(sol) < 0.001:
        return f"{sol:.9f} SOL"
    elif abs(sol) < 1:
        return f"{sol:.6f} SOL"
    else:
        return f"{sol:.4f} SOL"


def format_duration(seconds: int) -> str:
    """Format duration in seconds to human-readable string."""
    if seconds < 60:
        return f"{seconds}s"
    elif seconds < 3600:
        minutes = seconds // 60
        secs = seconds % 60
        return f"{minutes}m {secs}s" if secs > 0 else f"{minutes}m"
    else:
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"


def format_pubkey(pubkey: str, length: int = 4) -> str:
    """Format a base58 public key with ellipsis."""
    if len(pubkey) <= length * 2 + 3:
        return pubkey
    return f"{pubkey[:length]}...{pubkey[-length:]}"


def format_signature(signature: str, length: int = 8) -> str:
    """Format transaction signature with ellipsis."""
    if len(signature) <= length * 2:
        return signature
    return f"{signature[:length]}...{signature[-length:]}"


# Retry and randomness utilities

def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff delay for a zero-based attempt number."""
    return min(base_delay * (2 ** attempt), max_delay)


def jitter(rng: random.Random, low: float, high: float) -> float:
    """Uniform delay in [low, high) drawn from the supplied generator."""
    return low + rng.random() * (high - low)


def shuffled(items: Sequence[T], rng: random.Random) -> List[T]:
    """Return a shuffled copy; the input sequence is left untouched."""
    result = list(items)
    rng.shuffle(result)
    return result


async def async_retry_with_backoff(
    func,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exceptions: tuple = (Exception,),
    sleep=asyncio.sleep
):
    """Async retry with exponential backoff."""
    for attempt in range(max_retries):
        try:
            return await func()
        except exceptions as e:
            if attempt == max_retries - 1:
                raise

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(f"Attempt {attempt + 1} failed: {e}. Retrying in {delay:.1f}s...")
            await sleep(delay)

    return None


def sanitize_error_message(error: Any) -> str:
    """
    Sanitize error messages to remove sensitive data.

    Args:
        error: Original error or message

    Returns:
        Sanitized error message safe for display
    """
    if not isinstance(error, str):
        error = str(error)

    patterns = [
        (r'[1-9A-HJ-NP-Za-km-z]{86,88}', '[SECRET_KEY]'),
        (r'https?://[^\s]+', '[URL]'),
        (r'password["\']?\s*[:=]\s*\S+', 'password=[REDACTED]'),
    ]

    sanitized = error
    for pattern, replacement in patterns:
        sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)

    return sanitized

