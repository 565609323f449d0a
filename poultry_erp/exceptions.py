"""
Exceptions raised by the ERP core.
"""


class DocumentValidationError(ValueError):
    """A draft document failed validation and must not be persisted."""


class LedgerError(ValueError):
    """A ledger operation was requested with invalid arguments."""


class UnknownRecordError(LedgerError):
    """A referenced party, document or ledger entry does not exist."""
