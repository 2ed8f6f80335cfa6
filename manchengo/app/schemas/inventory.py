from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel

from manchengo.app.db.models.core_types import LotStatus, MovementOrigin, MovementType, ProductType


class StockMovementRead(BaseModel):
    id: int
    movement_type: MovementType
    product_type: ProductType
    origin: MovementOrigin
    product_mp_id: int | None
    product_pf_id: int | None
    lot_mp_id: int | None
    lot_pf_id: int | None
    quantity: int
    unit_cost: Decimal | None
    reference: str | None
    created_by: int | None
    created_at: datetime

    class Config:
        from_attributes = True


class LotMpRead(BaseModel):
    id: int
    product_mp_id: int
    lot_number: str
    quantity_initial: int
    quantity_remaining: int
    unit_cost: Decimal | None
    expiry_date: date | None
    status: LotStatus
    supplier_id: int | None
    created_at: datetime

    class Config:
        from_attributes = True
