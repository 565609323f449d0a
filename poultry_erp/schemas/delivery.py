"""
Delivery document schema.
Represents incoming stock received from a vendor, cage by cage.
"""

from typing import Optional, List
from datetime import date, datetime
from pydantic import Field, computed_field

from poultry_erp.schemas.base import ErpModel, Text
from poultry_erp.utils import generate_id, now


class LineUnit(ErpModel):
    """A single cage: bird count and weight."""
    sequence_no: int = Field(ge=0)
    count: int = Field(ge=0)
    weight: float = Field(ge=0.0)
    rate: Optional[float] = Field(default=None, ge=0.0)  # resale rate per kg
    billed: bool = False
    invoice_id: Optional[Text] = None


class DeliveryDocument(ErpModel):
    """
    A delivery challan (DC) from one vendor.

    The document owns its cages; totals are always derived from them.
    """
    id: Text = Field(default_factory=generate_id)
    number: Text = ""
    date: date
    vendor_id: Text
    vendor_name: Text
    purchase_rate: float = Field(ge=0.0)
    units: List[LineUnit] = Field(default_factory=list)
    manual_weighing: bool = False
    confirmed: bool = False
    created_at: datetime = Field(default_factory=now)
    updated_at: datetime = Field(default_factory=now)

    @computed_field
    @property
    def total_count(self) -> int:
        return sum(unit.count for unit in self.units)

    @computed_field
    @property
    def total_weight(self) -> float:
        return sum(unit.weight for unit in self.units)

    @computed_field
    @property
    def amount(self) -> float:
        """Amount owed to the vendor for this delivery."""
        return self.total_weight * self.purchase_rate

    def unbilled_units(self) -> List[LineUnit]:
        return [unit for unit in self.units if not unit.billed]

    def find_unit(self, sequence_no: int) -> Optional[LineUnit]:
        for unit in self.units:
            if unit.sequence_no == sequence_no:
                return unit
        return None

    def confirm(self) -> bool:
        """Mark confirmed. Returns False when it already was."""
        if self.confirmed:
            return False
        self.confirmed = True
        self.updated_at = now()
        return True
