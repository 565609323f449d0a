"""
Invoice schema and data models.
Represents outgoing sales documents billed to customers.
"""

from enum import Enum
from typing import Optional, List
from datetime import date, datetime
from pydantic import Field, computed_field

from poultry_erp.schemas.base import ErpModel, Text
from poultry_erp.utils import generate_id, now


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    PAID = "paid"
    PARTIAL = "partial"
    OVERDUE = "overdue"


class InvoiceLine(ErpModel):
    """A single billed cage."""
    sequence_no: int = Field(ge=0)
    count: int = Field(ge=0)
    weight: float = Field(ge=0.0)
    rate: float = Field(ge=0.0)

    @computed_field
    @property
    def amount(self) -> float:
        return self.weight * self.rate


class Invoice(ErpModel):
    """An invoice for one customer, optionally billed out of a delivery."""
    id: Text = Field(default_factory=generate_id)
    number: Text = ""
    date: date
    customer_id: Text
    customer_name: Text
    delivery_id: Optional[Text] = None
    lines: List[InvoiceLine] = Field(default_factory=list)
    tax_rate_percent: float = Field(default=18.0, ge=0.0)
    additional_charges: float = Field(default=0.0, ge=0.0)
    paid_amount: float = Field(default=0.0, ge=0.0)
    status: InvoiceStatus = InvoiceStatus.DRAFT
    version: Text = "1.0"
    weight_loss: float = Field(default=0.0, ge=0.0)
    due_date: Optional[date] = None
    created_at: datetime = Field(default_factory=now)
    updated_at: datetime = Field(default_factory=now)

    @computed_field
    @property
    def subtotal(self) -> float:
        return sum(line.amount for line in self.lines)

    @computed_field
    @property
    def tax(self) -> float:
        return self.subtotal * self.tax_rate_percent / 100

    @computed_field
    @property
    def total(self) -> float:
        return self.subtotal + self.tax + self.additional_charges

    @computed_field
    @property
    def due_amount(self) -> float:
        return self.total - self.paid_amount

    @property
    def total_weight(self) -> float:
        return sum(line.weight for line in self.lines)

    def is_posted(self) -> bool:
        """Whether the sale has been written to the ledger."""
        return self.status != InvoiceStatus.DRAFT

    def settle_status(self, today: Optional[date] = None) -> InvoiceStatus:
        """
        Derive the status of a posted invoice from what has been paid.

        Drafts stay drafts; nothing is posted until confirmation.
        """
        if not self.is_posted():
            return self.status

        if self.due_amount <= 0:
            self.status = InvoiceStatus.PAID
        elif today and self.due_date and self.due_date < today:
            self.status = InvoiceStatus.OVERDUE
        elif self.paid_amount > 0:
            self.status = InvoiceStatus.PARTIAL
        else:
            self.status = InvoiceStatus.CONFIRMED
        return self.status


def next_version(version: str) -> str:
    """Bump a revision tag by one tenth: 1.0 -> 1.1, 1.9 -> 2.0."""
    try:
        major, minor = (int(part) for part in version.split(".", 1))
    except ValueError:
        raise ValueError(f"Invalid version tag: {version!r}") from None

    minor += 1
    if minor >= 10:
        major, minor = major + 1, 0
    return f"{major}.{minor}"
