from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from manchengo.app.api.deps import cursor_params, get_current_user, get_db, require_roles
from manchengo.app.db.models.models_v1 import Supplier, User
from manchengo.app.db.models.core_types import Role, SupplierGrade
from manchengo.app.schemas.common import serializer
from manchengo.app.schemas.master_data import SupplierRead
from manchengo.services import audit
from manchengo.services.pagination import CursorPageRequest, paginate_suppliers

router = APIRouter(prefix="/suppliers")


class SupplierCreate(BaseModel):
    code: str = Field(min_length=1, max_length=32)
    name: str = Field(min_length=1, max_length=255)
    contact_name: str | None = Field(default=None, max_length=200)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    address: str | None = None
    nif: str | None = Field(default=None, max_length=32)
    lead_time_days: int = Field(default=7, ge=0)
    grade: SupplierGrade = SupplierGrade.b


class SupplierUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    contact_name: str | None = Field(default=None, max_length=200)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    address: str | None = None
    nif: str | None = Field(default=None, max_length=32)
    lead_time_days: int | None = Field(default=None, ge=0)
    grade: SupplierGrade | None = None


def _get_supplier(db: Session, supplier_id: int) -> Supplier:
    s = db.get(Supplier, supplier_id)
    if not s:
        raise HTTPException(status_code=404, detail="Supplier not found")
    return s


@router.get("")
def list_suppliers(
    params: CursorPageRequest = Depends(cursor_params),
    search: str | None = None,
    grade: SupplierGrade | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    page = paginate_suppliers(db, params, search=search, grade=grade)
    return page.to_dict(serializer(SupplierRead))


@router.get("/{supplier_id}", response_model=SupplierRead)
def get_supplier(supplier_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _get_supplier(db, supplier_id)


@router.post("", response_model=SupplierRead, status_code=201)
def create_supplier(
    payload: SupplierCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    exists = db.execute(select(Supplier).where(Supplier.code == payload.code)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Supplier code already exists")

    s = Supplier(**payload.model_dump())
    db.add(s)
    db.flush()
    audit.record(db, actor=user, action="SUPPLIER_CREATED", entity_type="Supplier", entity_id=s.id,
                 meta={"code": s.code})
    db.commit()
    db.refresh(s)
    return s


@router.patch("/{supplier_id}", response_model=SupplierRead)
def update_supplier(
    supplier_id: int,
    payload: SupplierUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    s = _get_supplier(db, supplier_id)
    changes = payload.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(s, field, value)
    audit.record(db, actor=user, action="SUPPLIER_UPDATED", entity_type="Supplier", entity_id=s.id,
                 meta={"fields": sorted(changes)})
    db.commit()
    db.refresh(s)
    return s


@router.delete("/{supplier_id}", response_model=SupplierRead)
def deactivate_supplier(
    supplier_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    # Désactivation logique : les BC historiques gardent leur fournisseur
    s = _get_supplier(db, supplier_id)
    s.active = False
    audit.record(db, actor=user, action="SUPPLIER_DEACTIVATED", entity_type="Supplier", entity_id=s.id)
    db.commit()
    db.refresh(s)
    return s
