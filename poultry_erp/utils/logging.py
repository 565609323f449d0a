"""
Structured logging for the ERP core.
"""

import logging
import json
from datetime import datetime
from typing import Any, List, Optional
from poultry_erp.config import get_config


config = get_config()


class StructuredFormatter(logging.Formatter):
    """Formats log records as structured JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.now().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "extra"):
            log_obj.update(record.extra)

        return json.dumps(log_obj, default=str)


def setup_logging(name: str = __name__) -> logging.Logger:
    """Setup and return a configured logger."""
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config.LOG_LEVEL.upper()))

    # Modules are imported once but tests reload sessions often
    if logger.handlers:
        return logger

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, config.LOG_LEVEL.upper()))
    console_handler.setFormatter(logging.Formatter(config.LOG_FORMAT))
    logger.addHandler(console_handler)

    # File handler with structured JSON
    if config.LOG_FILE:
        file_handler = logging.FileHandler(config.LOG_FILE)
        file_handler.setLevel(getattr(logging, config.LOG_LEVEL.upper()))
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    return logger


def log_ledger_entry(
    logger: logging.Logger,
    party_name: str,
    kind: str,
    amount: float,
    balance: float,
    reference_id: Optional[str] = None,
) -> None:
    """Log an appended ledger entry with context."""
    extra = {
        "type": "ledger_entry",
        "party": party_name,
        "kind": kind,
        "amount": amount,
        "balance": balance,
    }
    if reference_id:
        extra["reference_id"] = reference_id

    logger.info(
        f"[ledger] {kind} {amount:.2f} for {party_name}, balance now {balance:.2f}",
        extra={"extra": extra}
    )


def log_skipped_lines(
    logger: logging.Logger,
    source: str,
    line_numbers: List[int],
    details: Optional[Any] = None,
) -> None:
    """Log lines a parser could not use."""
    if not line_numbers:
        return

    extra = {
        "type": "skipped_lines",
        "source": source,
        "count": len(line_numbers),
        "line_numbers": line_numbers,
    }
    if details:
        extra["details"] = details

    logger.warning(
        f"[{source}] skipped {len(line_numbers)} unrecognized line(s)",
        extra={"extra": extra}
    )
