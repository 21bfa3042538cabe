#!/usr/bin/env python3
"""
Structured Transfer Logging
===========================
Machine-readable records of every fund movement the pool makes:
- One JSON line per transfer outcome (fund, burner_fund, burner_sweep,
  p2p_rebalance, consolidate, seasoning_burn, relayer_topup)
- Size-based log rotation
- Per-operation totals: count, failures, lamports moved, attempts, latency
- A trace id carried through async tasks, so every tranche of one wallet's
  funding shares an id
"""

import json
import logging
import logging.handlers
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional, List

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.panel import Panel
from rich import box


_trace_id: ContextVar[Optional[str]] = ContextVar("wallet_pool_trace_id", default=None)


def new_trace_id(label: Optional[str] = None) -> str:
    """Start a trace for the current task. Child tasks inherit it."""
    trace = f"{label}-{uuid.uuid4().hex[:6]}" if label else uuid.uuid4().hex[:8]
    _trace_id.set(trace)
    return trace


def current_trace_id() -> Optional[str]:
    return _trace_id.get()


@dataclass
class PerformanceMetrics:
    """Outcome of one timed fund movement."""
    operation: str
    start_time: float
    end_time: Optional[float] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    lamports: Optional[int] = None
    signature: Optional[str] = None
    attempts: Optional[int] = None
    trace_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def finalize(self, success: bool, error: Optional[str] = None):
        self.end_time = time.time()
        self.duration_ms = (self.end_time - self.start_time) * 1000
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'trace_id': self.trace_id,
            'started': datetime.fromtimestamp(self.start_time).isoformat(),
            'duration_ms': round(self.duration_ms, 2) if self.duration_ms is not None else None,
            'success': self.success,
            'error': self.error,
            'lamports': self.lamports,
            'signature': self.signature,
            'attempts': self.attempts,
            **self.extra,
        }


@dataclass
class OperationTotals:
    count: int = 0
    failures: int = 0
    lamports_moved: int = 0
    attempts: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.count == 0:
            return 0.0
        return (self.count - self.failures) / self.count * 100

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0


class MetricsCollector:
    """Keeps the most recent metrics and running totals per operation."""

    def __init__(self, max_metrics: int = 10_000):
        self.max_metrics = max_metrics
        self.recent: List[PerformanceMetrics] = []
        self.totals: Dict[str, OperationTotals] = {}

    def add_metric(self, metric: PerformanceMetrics):
        self.recent.append(metric)
        if len(self.recent) > self.max_metrics:
            del self.recent[:len(self.recent) - self.max_metrics]

        totals = self.totals.setdefault(metric.operation, OperationTotals())
        totals.count += 1
        totals.attempts += metric.attempts or 0
        if metric.success:
            totals.lamports_moved += metric.lamports or 0
        else:
            totals.failures += 1
        if metric.duration_ms is not None:
            totals.total_ms += metric.duration_ms
            totals.max_ms = max(totals.max_ms, metric.duration_ms)

    def lamports_moved(self, operation: Optional[str] = None) -> int:
        if operation is not None:
            totals = self.totals.get(operation)
            return totals.lamports_moved if totals else 0
        return sum(t.lamports_moved for t in self.totals.values())

    def get_summary(self) -> Dict[str, Any]:
        count = sum(t.count for t in self.totals.values())
        failures = sum(t.failures for t in self.totals.values())
        return {
            'total_operations': count,
            'failures': failures,
            'lamports_moved': self.lamports_moved(),
            'operations': {
                op: {
                    'total': t.count,
                    'failures': t.failures,
                    'success_rate': round(t.success_rate, 2),
                    'lamports_moved': t.lamports_moved,
                    'attempts': t.attempts,
                    'avg_ms': round(t.avg_ms, 2),
                    'max_ms': round(t.max_ms, 2),
                }
                for op, t in self.totals.items()
            },
        }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, tagged with the active trace id."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'ts': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
            'trace_id': current_trace_id(),
        }

        payload = getattr(record, 'payload', None)
        if payload:
            entry['data'] = payload

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class StructuredLogger:
    """
    Structured logger for fund movements.

    Usage:
        slog = StructuredLogger('wallet_pool.metrics', 'logs/transfers.log')
        with slog.timed_operation('fund', extra={'destination': pubkey}) as metric:
            metric.lamports = 5_000_000
            ...
            if not delivered:
                metric.error = "not delivered"
    """

    def __init__(
        self,
        name: str,
        log_file: Optional[str] = None,
        log_level: str = 'INFO',
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
        use_rich_console: bool = True,
        json_format_file: bool = True
    ):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, log_level.upper()))
        self.logger.handlers = []
        self.logger.propagate = False
        self.metrics = MetricsCollector()

        if use_rich_console:
            console_handler = RichHandler(show_time=True, show_path=False)
            console_handler.setLevel(logging.INFO)
            self.logger.addHandler(console_handler)

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                JSONFormatter() if json_format_file
                else logging.Formatter('%(asctime)s | %(levelname)-8s | %(name)s | %(message)s')
            )
            self.logger.addHandler(file_handler)

        if not self.logger.handlers:
            self.logger.addHandler(logging.NullHandler())

    def _log(self, level: int, message: str, payload: Optional[Dict[str, Any]] = None):
        self.logger.log(level, message, extra={'payload': payload} if payload else None)

    def debug(self, message: str, payload: Optional[Dict[str, Any]] = None):
        self._log(logging.DEBUG, message, payload)

    def info(self, message: str, payload: Optional[Dict[str, Any]] = None):
        self._log(logging.INFO, message, payload)

    def warning(self, message: str, payload: Optional[Dict[str, Any]] = None):
        self._log(logging.WARNING, message, payload)

    class TimedOperation:
        """Times the block and records a PerformanceMetrics for it."""

        def __init__(self, owner: 'StructuredLogger', operation: str, extra: Optional[Dict[str, Any]] = None):
            self.owner = owner
            self.metric = PerformanceMetrics(
                operation=operation,
                start_time=0.0,
                extra=dict(extra or {})
            )

        def __enter__(self) -> PerformanceMetrics:
            self.metric.start_time = time.time()
            self.metric.trace_id = current_trace_id()
            return self.metric

        def __exit__(self, exc_type, exc_val, exc_tb):
            metric = self.metric
            if exc_type:
                metric.finalize(success=False, error=str(exc_val))
            else:
                # Soft failures are flagged on the metric by the block
                metric.finalize(success=metric.error is None, error=metric.error)

            self.owner._log(
                logging.INFO if metric.success else logging.WARNING,
                f"{metric.operation} {'ok' if metric.success else 'failed'} after {metric.duration_ms:.0f}ms",
                metric.to_dict()
            )
            self.owner.metrics.add_metric(metric)
            return False

    def timed_operation(self, operation: str, extra: Optional[Dict[str, Any]] = None):
        return self.TimedOperation(self, operation, extra)

    def print_metrics_summary(self, console: Optional[Console] = None):
        """Render per-operation transfer totals."""
        summary = self.metrics.get_summary()
        console = console or Console()

        table = Table(title="Transfer Metrics", box=box.ROUNDED)
        table.add_column("Operation", style="cyan")
        table.add_column("Total", justify="right")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Success %", justify="right", style="green")
        table.add_column("SOL Moved", justify="right")
        table.add_column("Attempts", justify="right")
        table.add_column("Avg ms", justify="right")

        for op, stats in summary['operations'].items():
            table.add_row(
                op,
                str(stats['total']),
                str(stats['failures']),
                f"{stats['success_rate']:.1f}%",
                f"{stats['lamports_moved'] / 1_000_000_000:.6f}",
                str(stats['attempts']),
                f"{stats['avg_ms']:.0f}",
            )

        console.print(Panel(
            f"Transfers: {summary['total_operations']} ({summary['failures']} failed)\n"
            f"Moved: {summary['lamports_moved'] / 1_000_000_000:.6f} SOL",
            title="Fund Movements",
            border_style="blue"
        ))
        console.print(table)
