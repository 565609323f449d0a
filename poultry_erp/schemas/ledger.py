"""
Ledger and cash book schemas.
Entries are append-only; corrections are new entries.
"""

from enum import Enum
from typing import Optional, List, Literal
from datetime import date, datetime
from pydantic import Field

from poultry_erp.schemas.base import ErpModel, Text
from poultry_erp.utils import generate_id, now


class LedgerKind(str, Enum):
    PURCHASE = "purchase"
    SALE = "sale"
    PAYMENT = "payment"
    ADVANCE = "advance"
    ADJUSTMENT = "adjustment"


class LedgerEntry(ErpModel):
    """A financial event for one party, with the balance it left behind."""
    id: Text = Field(default_factory=generate_id)
    party_id: Text
    party_name: Text
    kind: LedgerKind
    amount: float
    paid: float = 0.0
    balance: float
    description: Text = ""
    reference_id: Optional[Text] = None
    amends_entry_id: Optional[Text] = None
    date: date
    created_at: datetime = Field(default_factory=now)


class CashFlowEntry(ErpModel):
    """Money that actually moved, with the running cash book balances."""
    id: Text = Field(default_factory=generate_id)
    date: date
    direction: Literal["income", "expense"]
    category: Text
    amount: float = Field(ge=0.0)
    method: Literal["cash", "online"] = "cash"
    description: Text = ""
    cash_balance: float = 0.0
    online_balance: float = 0.0
    created_at: datetime = Field(default_factory=now)


class Expense(ErpModel):
    id: Text = Field(default_factory=generate_id)
    category: Literal["salary", "labour", "food", "diesel", "other"] = "other"
    amount: float = Field(ge=0.0)
    description: Text = ""
    date: date


class ProfitLossEntry(ErpModel):
    """Daily or monthly profit summary kept for reporting screens."""
    id: Text = Field(default_factory=generate_id)
    date: date
    period: Literal["daily", "monthly"] = "daily"
    revenue: float = 0.0
    vendor_cost: float = 0.0
    expenses: List[Expense] = Field(default_factory=list)
    gross_profit: float = 0.0
    net_profit: float = 0.0
    withdrawn: float = 0.0
