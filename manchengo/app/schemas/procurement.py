from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel

from manchengo.app.db.models.core_types import (
    DemandePriority,
    DemandeStatus,
    POStatus,
    ReceptionSource,
    ReceptionStatus,
    SendVia,
)


class PurchaseOrderItemRead(BaseModel):
    id: int
    product_mp_id: int
    quantity: int
    quantity_received: int
    unit_price: Decimal
    total_ht: Decimal

    class Config:
        from_attributes = True


class PurchaseOrderSummary(BaseModel):
    id: int
    reference: str
    supplier_id: int
    demande_id: int | None
    status: POStatus
    expected_delivery: date | None
    total_ht: Decimal
    version: int
    created_at: datetime

    class Config:
        from_attributes = True


class PurchaseOrderRead(PurchaseOrderSummary):
    notes: str | None
    sent_at: datetime | None
    sent_via: SendVia | None
    message_id: str | None
    confirmed_at: datetime | None
    received_at: datetime | None
    cancelled_at: datetime | None
    cancel_reason: str | None
    locked_by: int | None
    lock_expires_at: datetime | None
    items: list[PurchaseOrderItemRead]


class DemandeLineRead(BaseModel):
    id: int
    product_mp_id: int
    quantite_demandee: int
    quantite_validee: int | None
    commentaire: str | None

    class Config:
        from_attributes = True


class DemandeRead(BaseModel):
    id: int
    reference: str
    status: DemandeStatus
    priority: DemandePriority
    commentaire: str | None
    created_by: int
    created_at: datetime
    submitted_at: datetime | None
    validated_by: int | None
    validated_at: datetime | None
    rejected_at: datetime | None
    motif_rejet: str | None
    reception_id: int | None
    lines: list[DemandeLineRead]

    class Config:
        from_attributes = True


# Champs de validation masqués pour le rôle PRODUCTION
DEMANDE_VALIDATION_FIELDS = {"validated_by", "validated_at"}


class ReceptionLineRead(BaseModel):
    id: int
    product_mp_id: int
    quantity: int
    unit_cost: Decimal | None
    lot_number: str | None
    expiry_date: date | None
    lot_mp_id: int | None

    class Config:
        from_attributes = True


class ReceptionRead(BaseModel):
    id: int
    reference: str
    supplier_id: int | None
    status: ReceptionStatus
    source: ReceptionSource
    purchase_order_id: int | None
    demande_id: int | None
    bl_number: str | None
    date_reception: date
    validated_at: datetime | None
    lines: list[ReceptionLineRead]

    class Config:
        from_attributes = True
