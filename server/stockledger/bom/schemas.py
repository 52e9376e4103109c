from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from stockledger.inventory.schemas import PerUnitValue, QuantityValue


class BomEdgeCreate(BaseModel):
    parent_item_id: int
    child_item_id: int
    quantity_per_unit: QuantityValue = Field(..., gt=0)


class BomEdgeUpdate(BaseModel):
    quantity_per_unit: QuantityValue = Field(..., gt=0)


class BomEdgeResponse(BaseModel):
    id: int
    parent_item_id: int
    parent_tier: str
    child_item_id: int
    child_tier: str
    quantity_per_unit: QuantityValue
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BomResolveRequest(BaseModel):
    product_id: int
    tier: Literal["semi", "finished"]
    target_quantity: QuantityValue = Field(..., gt=0)
    explode_semi: bool = True


class BomSnapshotLineResponse(BaseModel):
    material_id: int
    material_tier: str
    material_code: str
    material_name: str
    quantity_per_unit: PerUnitValue
    quantity_needed_total: QuantityValue

    model_config = ConfigDict(from_attributes=True)
