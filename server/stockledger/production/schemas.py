from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from stockledger.bom.schemas import BomSnapshotLineResponse
from stockledger.inventory.schemas import MovementResponse, QuantityValue


class OrderLineCreate(BaseModel):
    product_id: int
    quantity: QuantityValue = Field(..., gt=0)


class OrderCreate(BaseModel):
    customer_name: Optional[str] = None
    notes: Optional[str] = None
    lines: List[OrderLineCreate] = Field(..., min_length=1)


class OrderLineResponse(BaseModel):
    id: int
    product_id: int
    quantity: QuantityValue

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    id: int
    order_number: str
    customer_name: Optional[str] = None
    status: str
    created_by: Optional[int] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    cancel_reason: Optional[str] = None
    lines: List[OrderLineResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class PlanCreate(BaseModel):
    product_id: int
    tier: Literal["semi", "finished"]
    planned_quantity: QuantityValue = Field(..., gt=0)
    assigned_operator_id: Optional[int] = None
    explode_semi: bool = True


class PlanResponse(BaseModel):
    id: int
    order_id: Optional[int] = None
    product_id: int
    product_tier: str
    planned_quantity: QuantityValue
    produced_quantity: QuantityValue
    status: str
    assigned_operator_id: Optional[int] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    snapshot_lines: List[BomSnapshotLineResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class OutputCreate(BaseModel):
    quantity: QuantityValue = Field(..., gt=0)


class ProductionLogResponse(BaseModel):
    id: int
    plan_id: int
    quantity_produced: QuantityValue
    operator_id: int
    correlation_id: str
    status: str
    created_at: datetime
    voided_at: Optional[datetime] = None
    voided_by: Optional[int] = None
    void_reason: Optional[str] = None
    void_correlation_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ProductionPostingResponse(BaseModel):
    production_log: ProductionLogResponse
    movements: List[MovementResponse]


class ReasonPayload(BaseModel):
    reason: str = Field(..., min_length=1)


class RollbackResponse(BaseModel):
    production_log: ProductionLogResponse
    reversals: List[MovementResponse]


class CancelPermissionResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
