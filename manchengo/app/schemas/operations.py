from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from manchengo.app.db.models.core_types import (
    AlertHistoryAction,
    AlertSeverity,
    AlertStatus,
    AlertType,
    ProductionStatus,
)


class AlertHistoryRead(BaseModel):
    action: AlertHistoryAction
    user_id: int | None
    note: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class AlertRead(BaseModel):
    id: int
    type: AlertType
    severity: AlertSeverity
    status: AlertStatus
    entity_type: str
    entity_id: str
    title: str
    message: str
    value: Decimal | None
    threshold: Decimal | None
    meta: dict | None
    expires_at: datetime | None
    acknowledged_at: datetime | None
    closed_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True


class AlertDetail(AlertRead):
    history: list[AlertHistoryRead]


class ProductionConsumptionRead(BaseModel):
    product_mp_id: int
    lot_mp_id: int
    quantity: int
    unit_cost: Decimal | None
    is_reversed: bool

    class Config:
        from_attributes = True


class ProductionOrderRead(BaseModel):
    id: int
    reference: str
    recipe_id: int
    product_pf_id: int
    batch_count: int
    target_quantity: int
    quantity_produced: int | None
    yield_percentage: Decimal | None
    status: ProductionStatus
    unit_cost: Decimal | None
    lot_pf_id: int | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None

    class Config:
        from_attributes = True


class ProductionOrderDetail(ProductionOrderRead):
    consumptions: list[ProductionConsumptionRead]


class AuditLogRead(BaseModel):
    id: int
    actor_id: int | None
    actor_role: str | None
    action: str
    entity_type: str
    entity_id: str
    meta: dict | None
    created_at: datetime

    class Config:
        from_attributes = True
