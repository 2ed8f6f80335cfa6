from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from manchengo.app.api.deps import cursor_params, get_current_user, get_db, require_roles
from manchengo.app.db.models.models_v1 import User
from manchengo.app.db.models.core_types import ProductionStatus, Role
from manchengo.app.schemas.common import serializer
from manchengo.app.schemas.operations import ProductionOrderDetail, ProductionOrderRead
from manchengo.services import production
from manchengo.services.pagination import CursorPageRequest, paginate_production_orders

router = APIRouter(prefix="/production/orders")


class ProductionOrderCreate(BaseModel):
    product_pf_id: int
    batch_count: int = Field(gt=0)
    notes: str | None = None


class CompleteIn(BaseModel):
    quantity_produced: int = Field(gt=0)
    notes: str | None = None


class CancelIn(BaseModel):
    reason: str | None = None


@router.get("")
def list_production_orders(
    params: CursorPageRequest = Depends(cursor_params),
    status: ProductionStatus | None = None,
    product_pf_id: int | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    page = paginate_production_orders(db, params, status=status, product_pf_id=product_pf_id)
    return page.to_dict(serializer(ProductionOrderRead))


@router.get("/{order_id}", response_model=ProductionOrderDetail)
def get_production_order(order_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return production.get(db, order_id)


@router.post("", response_model=ProductionOrderDetail, status_code=201)
def create_production_order(
    payload: ProductionOrderCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.production)),
):
    order = production.create(
        db, actor=user, product_pf_id=payload.product_pf_id, batch_count=payload.batch_count, notes=payload.notes
    )
    db.commit()
    db.refresh(order)
    return order


@router.post("/{order_id}/start", response_model=ProductionOrderDetail)
def start_production_order(
    order_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.production)),
):
    order = production.start(db, actor=user, order_id=order_id)
    db.commit()
    db.refresh(order)
    return order


@router.post("/{order_id}/complete", response_model=ProductionOrderDetail)
def complete_production_order(
    order_id: int,
    payload: CompleteIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.production)),
):
    order = production.complete(
        db, actor=user, order_id=order_id, quantity_produced=payload.quantity_produced, notes=payload.notes
    )
    db.commit()
    db.refresh(order)
    return order


@router.post("/{order_id}/cancel", response_model=ProductionOrderDetail)
def cancel_production_order(
    order_id: int,
    payload: CancelIn | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.production)),
):
    order = production.cancel(db, actor=user, order_id=order_id, reason=payload.reason if payload else None)
    db.commit()
    db.refresh(order)
    return order
