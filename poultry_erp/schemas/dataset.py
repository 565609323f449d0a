"""
The whole persisted dataset: every collection plus the settings record.
"""

from typing import Optional, List
from datetime import date, datetime
from pydantic import Field

from poultry_erp.schemas.base import ErpModel, Text
from poultry_erp.schemas.delivery import DeliveryDocument
from poultry_erp.schemas.invoice import Invoice
from poultry_erp.schemas.ledger import LedgerEntry, CashFlowEntry, ProfitLossEntry
from poultry_erp.schemas.party import Party
from poultry_erp.utils import now


class VendorRate(ErpModel):
    """Purchase rate quoted by a vendor on a given day."""
    vendor_name: Text
    rate: float = Field(ge=0.0)
    date: date


class Settings(ErpModel):
    """Company details and application preferences."""
    company_name: Text = "Your Company"
    address: Text = ""
    phone: Text = ""
    email: Text = ""
    tax_id: Text = ""
    auto_save_interval_minutes: float = Field(default=5, gt=0)
    default_tax_rate_percent: float = Field(default=18.0, ge=0.0, le=100.0)
    off_days: List[Text] = Field(default_factory=lambda: ["sunday"])
    vendor_rates: List[VendorRate] = Field(default_factory=list)
    last_backup_at: datetime = Field(default_factory=now)

    def latest_vendor_rate(self, vendor_name: str) -> Optional[float]:
        """Most recent quoted rate for a vendor, if any."""
        rates = [r for r in self.vendor_rates if r.vendor_name.lower() == vendor_name.lower()]
        if not rates:
            return None
        return max(rates, key=lambda r: r.date).rate


class Dataset(ErpModel):
    """Everything the ERP stores, as one snapshot."""
    delivery_documents: List[DeliveryDocument] = Field(default_factory=list)
    customers: List[Party] = Field(default_factory=list)
    vendors: List[Party] = Field(default_factory=list)
    invoices: List[Invoice] = Field(default_factory=list)
    ledger_entries: List[LedgerEntry] = Field(default_factory=list)
    cash_flow: List[CashFlowEntry] = Field(default_factory=list)
    profit_loss: List[ProfitLossEntry] = Field(default_factory=list)
    settings: Settings = Field(default_factory=Settings)

    def find_party(self, party_id: str) -> Optional[Party]:
        for party in self.customers + self.vendors:
            if party.id == party_id:
                return party
        return None

    def find_delivery(self, delivery_id: str) -> Optional[DeliveryDocument]:
        for dc in self.delivery_documents:
            if dc.id == delivery_id:
                return dc
        return None

    def find_invoice(self, invoice_id: str) -> Optional[Invoice]:
        for invoice in self.invoices:
            if invoice.id == invoice_id:
                return invoice
        return None

    def find_ledger_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        for entry in self.ledger_entries:
            if entry.id == entry_id:
                return entry
        return None
