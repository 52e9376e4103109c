from typing import List, Optional

from pydantic import BaseModel, Field

from stockledger.inventory.schemas import QuantityValue


class ItemAuditResponse(BaseModel):
    item_id: int
    tier: str
    code: str
    stored_quantity: QuantityValue
    replayed_quantity: QuantityValue
    drift: QuantityValue
    entry_count: int
    chain_gaps: List[dict] = Field(default_factory=list)
    arithmetic_violations: List[dict] = Field(default_factory=list)
    is_consistent: bool


class ReservationAuditResponse(BaseModel):
    item_id: int
    stored_reserved: QuantityValue
    active_reserved: QuantityValue
    drift: QuantityValue
    is_consistent: bool


class AuditRunRequest(BaseModel):
    repair: bool = False
    tiers: Optional[List[str]] = None
    item_ids: Optional[List[int]] = None


class AuditRunResponse(BaseModel):
    items_checked: int
    drifted: List[ItemAuditResponse]
    reservation_drifts: List[ReservationAuditResponse]
    repaired_item_ids: List[int]
    stopped: bool
