from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from manchengo.app.api.deps import cursor_params, get_current_user, get_db
from manchengo.app.db.models.models_v1 import ProductMp, ProductPf, User
from manchengo.app.db.models.core_types import LotStatus, MovementOrigin, MovementType, ProductType
from manchengo.app.schemas.common import serializer
from manchengo.app.schemas.inventory import LotMpRead, StockMovementRead
from manchengo.services import inventory
from manchengo.services.pagination import CursorPageRequest, paginate_lots_mp, paginate_stock_movements

router = APIRouter(prefix="/stock")


@router.get("/mp")
def list_stock_mp(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    products = db.execute(
        select(ProductMp).where(ProductMp.is_active.is_(True)).order_by(ProductMp.code)
    ).scalars().all()
    stocks = inventory.current_stocks_mp(db, [p.id for p in products])
    lots = inventory.available_lot_stock_mp(db)
    return [
        {
            "product_mp_id": p.id,
            "code": p.code,
            "name": p.name,
            "unit": p.unit,
            "min_stock": p.min_stock,
            "stock": stocks.get(p.id, 0),
            "lot_stock": lots.get(p.id, 0),
        }
        for p in products
    ]


@router.get("/pf")
def list_stock_pf(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    products = db.execute(
        select(ProductPf).where(ProductPf.is_active.is_(True)).order_by(ProductPf.code)
    ).scalars().all()
    stocks = inventory.current_stocks_pf(db, [p.id for p in products])
    lots = inventory.available_lot_stock_pf(db)
    return [
        {
            "product_pf_id": p.id,
            "code": p.code,
            "name": p.name,
            "unit": p.unit,
            "min_stock": p.min_stock,
            "stock": stocks.get(p.id, 0),
            "lot_stock": lots.get(p.id, 0),
        }
        for p in products
    ]


@router.get("/movements")
def list_movements(
    params: CursorPageRequest = Depends(cursor_params),
    product_type: ProductType | None = None,
    product_mp_id: int | None = None,
    product_pf_id: int | None = None,
    movement_type: MovementType | None = None,
    origin: MovementOrigin | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    page = paginate_stock_movements(
        db,
        params,
        product_type=product_type,
        product_mp_id=product_mp_id,
        product_pf_id=product_pf_id,
        movement_type=movement_type,
        origin=origin,
    )
    return page.to_dict(serializer(StockMovementRead))


@router.get("/lots")
def list_lots(
    params: CursorPageRequest = Depends(cursor_params),
    product_mp_id: int | None = None,
    status: LotStatus | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    page = paginate_lots_mp(db, params, product_mp_id=product_mp_id, status=status)
    return page.to_dict(serializer(LotMpRead))


@router.get("/fifo-preview")
def fifo_preview(
    product_mp_id: int,
    quantity: int = Query(gt=0),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    plan = inventory.preview_fifo(db, product_mp_id=product_mp_id, quantity=quantity)
    return {
        "product_mp_id": product_mp_id,
        "quantity": quantity,
        "allocations": [
            {
                "lot_mp_id": a.lot.id,
                "lot_number": a.lot.lot_number,
                "expiry_date": a.lot.expiry_date,
                "quantity": a.quantity,
                "unit_cost": a.unit_cost,
            }
            for a in plan
        ],
    }
