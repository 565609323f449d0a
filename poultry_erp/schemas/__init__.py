"""
Data models for the ERP core.
"""

from poultry_erp.schemas.delivery import DeliveryDocument, LineUnit
from poultry_erp.schemas.invoice import Invoice, InvoiceLine, InvoiceStatus
from poultry_erp.schemas.ledger import LedgerEntry, LedgerKind, CashFlowEntry, ProfitLossEntry
from poultry_erp.schemas.party import Party
from poultry_erp.schemas.dataset import Dataset, Settings, VendorRate

__all__ = [
    "DeliveryDocument",
    "LineUnit",
    "Invoice",
    "InvoiceLine",
    "InvoiceStatus",
    "LedgerEntry",
    "LedgerKind",
    "CashFlowEntry",
    "ProfitLossEntry",
    "Party",
    "Dataset",
    "Settings",
    "VendorRate",
]
