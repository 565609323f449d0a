"""
Party schema: customers and vendors.
"""

from typing import Literal, Optional
from datetime import datetime
from pydantic import Field

from poultry_erp.schemas.base import ErpModel, Text
from poultry_erp.utils import generate_id, now


class Party(ErpModel):
    """A customer or vendor with a cached running balance."""
    id: Text = Field(default_factory=generate_id)
    name: Text
    role: Literal["customer", "vendor"]
    code: Text = ""  # short alphabetic code used in document numbers
    balance: float = 0.0  # outstanding amount, positive = owed
    advance: float = 0.0
    phone: Text = ""
    email: Text = ""
    address: Text = ""
    default_rate: Optional[float] = Field(default=None, ge=0.0)
    created_at: datetime = Field(default_factory=now)
