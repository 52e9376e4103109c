from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, condecimal


QuantityValue = condecimal(max_digits=18, decimal_places=6)
PerUnitValue = condecimal(max_digits=36, decimal_places=18)
MoneyValue = condecimal(max_digits=14, decimal_places=2)

Tier = Literal["raw", "semi", "finished"]


class ItemCreate(BaseModel):
    tier: Tier
    code: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    unit: str = "pcs"
    critical_level: Optional[QuantityValue] = Field(default=None, ge=0)
    unit_cost: MoneyValue = Field(default=Decimal("0"), ge=0)
    opening_quantity: QuantityValue = Field(default=Decimal("0"), ge=0)
    barcode: Optional[str] = None


class ItemResponse(BaseModel):
    id: int
    tier: Tier
    code: str
    name: str
    unit: str
    quantity: QuantityValue
    reserved_quantity: QuantityValue
    available_quantity: QuantityValue
    critical_level: Optional[QuantityValue] = None
    is_critical: bool
    unit_cost: MoneyValue
    barcode: Optional[str] = None
    version: int

    model_config = ConfigDict(from_attributes=True)


class MovementCreate(BaseModel):
    item_id: int
    tier: Tier
    movement_type: Literal["inflow", "outflow", "transfer"]
    quantity: QuantityValue = Field(..., description="Positive for inflow/outflow; signed for transfers.")
    source: Literal["manual", "purchase", "transfer", "system"] = "manual"
    description: Optional[str] = None


class MovementResponse(BaseModel):
    id: int
    item_id: int
    item_tier: Tier
    movement_type: str
    quantity: QuantityValue
    quantity_delta: QuantityValue
    before_quantity: QuantityValue
    after_quantity: QuantityValue
    source: str
    actor_id: Optional[int] = None
    correlation_id: str
    production_log_id: Optional[int] = None
    reversal_of_id: Optional[int] = None
    reverses_correlation_id: Optional[str] = None
    is_reconciliation: bool
    description: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReservationResponse(BaseModel):
    id: int
    item_id: int
    owner_type: str
    owner_id: int
    quantity_reserved: QuantityValue
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CriticalStockNotificationResponse(BaseModel):
    id: int
    item_id: int
    item_code: str
    item_tier: Tier
    quantity_at_open: QuantityValue
    critical_level: QuantityValue
    opened_at: datetime


class StockCountCreate(BaseModel):
    item_id: int
    tier: Tier
    physical_quantity: QuantityValue = Field(..., ge=0)
    notes: Optional[str] = None


class StockCountApprove(BaseModel):
    auto_adjust: bool = True


class StockCountReject(BaseModel):
    reason: str = Field(..., min_length=1)


class StockCountResponse(BaseModel):
    id: int
    item_id: int
    item_tier: Tier
    system_quantity: QuantityValue
    physical_quantity: QuantityValue
    variance: QuantityValue
    variance_percent: Decimal
    severity: Literal["low", "medium", "high"]
    status: str
    counted_by: int
    counted_at: datetime
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    review_reason: Optional[str] = None
    adjustment_movement_id: Optional[int] = None
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
