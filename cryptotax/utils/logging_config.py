"""
Logging Configuration

Structured logging for the tax engine:
- One line per record, parseable location prefix
- Environment-based levels (LOG_LEVEL)
- Optional file output for audit runs
- Report context (jurisdiction, tax year) appended to every line of a run
- Timing helper for batch operations
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


class StructuredFormatter(logging.Formatter):
    """
    Format: [TIMESTAMP] [LEVEL] [MODULE:FUNCTION:LINE] MESSAGE {tax_context}
    """

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
        line = (
            f"[{stamp}] [{record.levelname:8s}] "
            f"[{record.module}:{record.funcName}:{record.lineno}] {record.getMessage()}"
        )

        tax_context = getattr(record, 'tax_context', None)
        if tax_context:
            line += f" {{{tax_context}}}"
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


class TaxContextAdapter(logging.LoggerAdapter):
    """Attaches a jurisdiction / tax year tag to records of one report run."""

    def process(self, msg, kwargs):
        extra = kwargs.setdefault('extra', {})
        extra.setdefault('tax_context', self.extra['tax_context'])
        return msg, kwargs


def with_tax_context(logger: logging.Logger, jurisdiction: str, tax_year: str) -> TaxContextAdapter:
    return TaxContextAdapter(logger, {'tax_context': f"{jurisdiction} {tax_year}"})


def _handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter())
    return handler


def setup_logger(
    name: str,
    level: Optional[str] = None,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Set up a module logger.

    Args:
        name: Logger name (usually __name__)
        level: DEBUG, INFO, WARNING or ERROR. Defaults to the LOG_LEVEL env var, then INFO
        log_file: Also write to this file (parent directories are created)

    Returns:
        Configured logger. Calling again for the same name returns it unchanged.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    log_level = getattr(logging, (level or os.getenv('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    logger.setLevel(log_level)
    logger.addHandler(_handler(logging.StreamHandler(sys.stdout), log_level))

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.addHandler(_handler(logging.FileHandler(log_file, encoding='utf-8'), log_level))

    logger.propagate = False
    return logger


class PerformanceLogger:
    """Logs how long a batch took, and its throughput when the item count is known."""

    def __init__(
        self,
        logger: logging.Logger,
        operation: str,
        threshold_ms: float = 1000,
        items: Optional[int] = None
    ):
        self.logger = logger
        self.operation = operation
        self.threshold_ms = threshold_ms
        self.items = items
        self.start_time = None
        self.duration_ms = None

    def __enter__(self):
        self.start_time = datetime.now()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is None:
            return
        self.duration_ms = (datetime.now() - self.start_time).total_seconds() * 1000

        summary = f"{self.operation} took {self.duration_ms:.1f}ms"
        if self.items:
            summary += f" ({self.items} items, {self.duration_ms / self.items:.2f}ms/item)"
        if exc_type is not None:
            self.logger.debug(f"{summary}, aborted by {exc_type.__name__}")
        elif self.duration_ms > self.threshold_ms:
            self.logger.warning(f"SLOW: {summary}")
        else:
            self.logger.debug(summary)


def get_perf_logger(
    logger: logging.Logger,
    operation: str,
    threshold_ms: float = 1000,
    items: Optional[int] = None
) -> PerformanceLogger:
    """
    Usage:
        with get_perf_logger(logger, "classify_batch", items=len(transactions)):
            treatments = classify_batch(transactions)
    """
    return PerformanceLogger(logger, operation, threshold_ms, items)


def log_dataframe_info(logger: logging.Logger, df, name: str = "DataFrame"):
    """Log the shape of a report DataFrame."""
    if df is None:
        logger.warning(f"{name} is None")
    elif df.empty:
        logger.debug(f"{name} is empty")
    else:
        logger.debug(f"{name}: {len(df)} rows x {len(df.columns)} columns")
