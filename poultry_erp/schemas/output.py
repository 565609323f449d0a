"""
Output schemas returned to callers of the ERP core.
"""

from typing import Optional, List, Union
from pydantic import BaseModel, Field

from poultry_erp.schemas.delivery import DeliveryDocument, LineUnit
from poultry_erp.schemas.invoice import Invoice
from poultry_erp.schemas.ledger import LedgerEntry


class CommitResult(BaseModel):
    """Outcome of a document commit and its ledger posting."""
    success: bool
    document: Optional[Union[DeliveryDocument, Invoice]] = None
    ledger_entry: Optional[LedgerEntry] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> "CommitResult":
        return cls(success=False, error=error)


class ParsedRecord(BaseModel):
    """One cage line recovered from pasted text."""
    sequence_no: int
    count: int
    weight: float
    rate: Optional[float] = None

    def to_line_unit(self) -> LineUnit:
        return LineUnit(sequence_no=self.sequence_no, count=self.count, weight=self.weight, rate=self.rate)


class ParsedGroup(BaseModel):
    """Cage lines collected under one party header."""
    party_name: str
    records: List[ParsedRecord] = Field(default_factory=list)

    @property
    def total_count(self) -> int:
        return sum(r.count for r in self.records)

    @property
    def total_weight(self) -> float:
        return sum(r.weight for r in self.records)


class SkippedLine(BaseModel):
    """A non-blank line the parser could not use."""
    line_number: int
    text: str
    reason: str  # no_active_header, malformed_record, negative_value, unrecognized


class BulkParseResult(BaseModel):
    """Groups parsed from pasted text plus what was skipped."""
    groups: List[ParsedGroup] = Field(default_factory=list)
    skipped: List[SkippedLine] = Field(default_factory=list)

    @property
    def records(self) -> List[ParsedRecord]:
        return [record for group in self.groups for record in group.records]


class PartyStatement(BaseModel):
    """Account statement for one party."""
    party_id: str
    party_name: str
    opening_balance: float = 0.0
    entries: List[LedgerEntry] = Field(default_factory=list)
    closing_balance: float = 0.0


class FastInvoiceReport(BaseModel):
    """What a fast-invoice run created and skipped."""
    invoices: List[Invoice] = Field(default_factory=list)
    created_customers: List[str] = Field(default_factory=list)
    messages: List[str] = Field(default_factory=list)
    skipped_lines: List[SkippedLine] = Field(default_factory=list)
