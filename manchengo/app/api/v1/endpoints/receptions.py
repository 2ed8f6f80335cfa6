from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from manchengo.app.api.deps import get_current_user, get_db, require_roles
from manchengo.app.db.models.models_v1 import ReceptionMp, User
from manchengo.app.db.models.core_types import Role
from manchengo.app.schemas.procurement import ReceptionRead
from manchengo.services import audit, inventory

router = APIRouter(prefix="/receptions")


class ReceptionLineIn(BaseModel):
    product_mp_id: int
    quantity: int = Field(gt=0)
    unit_cost: Decimal | None = Field(default=None, ge=0)
    lot_number: str | None = Field(default=None, max_length=64)
    expiry_date: date | None = None


class ReceptionCreate(BaseModel):
    supplier_id: int | None = None
    bl_number: str | None = Field(default=None, max_length=64)
    notes: str | None = None
    lines: list[ReceptionLineIn] = Field(min_length=1)


@router.post("", response_model=ReceptionRead, status_code=201)
def create_reception(
    payload: ReceptionCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    reception = inventory.create_reception(
        db,
        actor=user,
        supplier_id=payload.supplier_id,
        lines=[ln.model_dump() for ln in payload.lines],
        bl_number=payload.bl_number,
        notes=payload.notes,
    )
    audit.record(db, actor=user, action="RECEPTION_CREATED", entity_type="ReceptionMp",
                 entity_id=reception.id, meta={"reference": reception.reference})
    db.commit()
    db.refresh(reception)
    return reception


@router.get("/{reception_id}", response_model=ReceptionRead)
def get_reception(reception_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    reception = db.get(ReceptionMp, reception_id)
    if not reception:
        raise HTTPException(status_code=404, detail="Reception not found")
    return reception


@router.post("/{reception_id}/validate", response_model=ReceptionRead)
def validate_reception(
    reception_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    reception = inventory.validate_reception(db, reception_id=reception_id, actor=user)
    db.commit()
    db.refresh(reception)
    return reception
