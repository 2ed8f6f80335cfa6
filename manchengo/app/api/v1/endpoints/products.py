from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from manchengo.app.api.deps import cursor_params, get_current_user, get_db, require_roles
from manchengo.app.db.models.models_v1 import ProductMp, ProductPf, Supplier, User
from manchengo.app.db.models.core_types import Criticality, Role
from manchengo.app.schemas.common import serializer
from manchengo.app.schemas.master_data import ProductMpRead, ProductPfRead
from manchengo.services import appro, audit
from manchengo.services.pagination import CursorPageRequest, paginate_products_mp, paginate_products_pf

router = APIRouter(prefix="/products")


class ProductMpCreate(BaseModel):
    code: str = Field(min_length=1, max_length=32)
    name: str = Field(min_length=1, max_length=255)
    unit: str = Field(default="kg", max_length=16)
    category: str | None = Field(default=None, max_length=64)
    min_stock: int = Field(default=0, ge=0)
    safety_threshold: int | None = Field(default=None, ge=0)
    reorder_threshold: int | None = Field(default=None, ge=0)
    reorder_quantity: int | None = Field(default=None, gt=0)
    lead_time_days: int = Field(default=7, ge=0)
    criticality: Criticality = Criticality.moyenne
    main_supplier_id: int | None = None
    is_stock_tracked: bool = True


class ProductMpApproUpdate(BaseModel):
    safety_threshold: int | None = Field(default=None, ge=0)
    reorder_threshold: int | None = Field(default=None, ge=0)
    reorder_quantity: int | None = Field(default=None, gt=0)
    lead_time_days: int | None = Field(default=None, ge=0)
    criticality: Criticality | None = None
    main_supplier_id: int | None = None


class ProductPfCreate(BaseModel):
    code: str = Field(min_length=1, max_length=32)
    name: str = Field(min_length=1, max_length=255)
    unit: str = Field(default="unit", max_length=16)
    min_stock: int = Field(default=0, ge=0)
    price_ht: Decimal | None = Field(default=None, ge=0)


# ---------- MP ----------
@router.get("/mp")
def list_products_mp(
    params: CursorPageRequest = Depends(cursor_params),
    search: str | None = None,
    category: str | None = None,
    criticality: Criticality | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    page = paginate_products_mp(db, params, search=search, category=category, criticality=criticality)
    return page.to_dict(serializer(ProductMpRead))


@router.get("/mp/{mp_id}", response_model=ProductMpRead)
def get_product_mp(mp_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    mp = db.get(ProductMp, mp_id)
    if not mp:
        raise HTTPException(status_code=404, detail="Raw material not found")
    return mp


@router.post("/mp", response_model=ProductMpRead, status_code=201)
def create_product_mp(
    payload: ProductMpCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    exists = db.execute(select(ProductMp).where(ProductMp.code == payload.code)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Raw material code already exists")
    if payload.main_supplier_id is not None and not db.get(Supplier, payload.main_supplier_id):
        raise HTTPException(status_code=400, detail="Invalid main_supplier_id")

    safety = appro.effective_safety_threshold(payload.min_stock, payload.safety_threshold)
    if payload.reorder_threshold is not None and payload.reorder_threshold <= safety:
        raise HTTPException(status_code=400, detail="reorder_threshold must be greater than safety_threshold")

    mp = ProductMp(**payload.model_dump())
    db.add(mp)
    db.flush()
    audit.record(db, actor=user, action="MP_CREATED", entity_type="ProductMp", entity_id=mp.id,
                 meta={"code": mp.code})
    db.commit()
    db.refresh(mp)
    return mp


@router.patch("/mp/{mp_id}/appro", response_model=ProductMpRead)
def update_product_mp_appro(
    mp_id: int,
    payload: ProductMpApproUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("main_supplier_id") is not None and not db.get(Supplier, changes["main_supplier_id"]):
        raise HTTPException(status_code=400, detail="Invalid main_supplier_id")

    mp = appro.update_mp_appro_params(db, actor=user, mp_id=mp_id, changes=changes)
    db.commit()
    db.refresh(mp)
    return mp


# ---------- PF ----------
@router.get("/pf")
def list_products_pf(
    params: CursorPageRequest = Depends(cursor_params),
    search: str | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    page = paginate_products_pf(db, params, search=search)
    return page.to_dict(serializer(ProductPfRead))


@router.post("/pf", response_model=ProductPfRead, status_code=201)
def create_product_pf(
    payload: ProductPfCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.production)),
):
    exists = db.execute(select(ProductPf).where(ProductPf.code == payload.code)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Finished product code already exists")

    pf = ProductPf(**payload.model_dump())
    db.add(pf)
    db.flush()
    audit.record(db, actor=user, action="PF_CREATED", entity_type="ProductPf", entity_id=pf.id,
                 meta={"code": pf.code})
    db.commit()
    db.refresh(pf)
    return pf
