"""
Billing values: cost updates during accrual and the one-time final cost.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class CostUpdate(BaseModel):
    accrued_seconds: int
    cost: Decimal


class FinalCost(BaseModel):
    session_id: str
    billed_seconds: int
    rate: Decimal
    amount: Decimal

    model_config = {"frozen": True}


class SettlementReceipt(BaseModel):
    session_id: str
    amount: Decimal
    new_balance: Decimal
    settled_at: datetime

    model_config = {"frozen": True}
