from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from manchengo.app.api.deps import cursor_params, get_current_user, get_db, require_roles
from manchengo.app.db.models.models_v1 import PurchaseOrder, User
from manchengo.app.db.models.core_types import POStatus, Role, SendVia
from manchengo.app.schemas.common import serializer
from manchengo.app.schemas.procurement import PurchaseOrderRead, PurchaseOrderSummary, ReceptionRead
from manchengo.app.settings import PO_LATE_CRITICAL_DAYS
from manchengo.services import procurement
from manchengo.services.pagination import CursorPageRequest, paginate_purchase_orders
from manchengo.services.pdf import render_purchase_order_pdf

router = APIRouter(prefix="/purchase-orders")


class PurchaseOrderLineIn(BaseModel):
    product_mp_id: int
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)


class PurchaseOrderCreate(BaseModel):
    supplier_id: int
    expected_delivery: date | None = None
    notes: str | None = None
    lines: list[PurchaseOrderLineIn] = Field(min_length=1)


class FromDemandeIn(BaseModel):
    expected_delivery: date | None = None
    notes: str | None = None
    # product_mp_id -> prix unitaire imposé
    price_overrides: dict[int, Decimal] | None = None


class SendIn(BaseModel):
    send_via: SendVia
    supplier_email: str | None = None
    proof_note: str | None = None
    proof_url: str | None = None
    expected_version: int | None = None


class ConfirmIn(BaseModel):
    expected_version: int | None = None


class CancelIn(BaseModel):
    reason: str
    expected_version: int | None = None


class ReceiveLineIn(BaseModel):
    item_id: int
    quantity_received: int = Field(ge=0)
    lot_number: str | None = Field(default=None, max_length=64)
    expiry_date: date | None = None


class ReceiveIn(BaseModel):
    lines: list[ReceiveLineIn] = Field(min_length=1)
    bl_number: str | None = Field(default=None, max_length=64)
    notes: str | None = None
    expected_version: int | None = None


def _with_actions(po: PurchaseOrder, user: User) -> dict:
    data = PurchaseOrderRead.model_validate(po).model_dump()
    data["available_actions"] = procurement.available_actions(po, user.role)
    return data


@router.get("")
def list_purchase_orders(
    params: CursorPageRequest = Depends(cursor_params),
    status: POStatus | None = None,
    supplier_id: int | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    page = paginate_purchase_orders(db, params, status=status, supplier_id=supplier_id)
    return page.to_dict(serializer(PurchaseOrderSummary))


@router.get("/late")
def list_late_purchase_orders(
    critical_days: int = Query(default=PO_LATE_CRITICAL_DAYS, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    rows = procurement.late_purchase_orders(db, critical_days=critical_days)
    return [
        {
            "purchase_order": PurchaseOrderSummary.model_validate(r["purchase_order"]).model_dump(),
            "supplier": r["purchase_order"].supplier.name,
            "days_late": r["days_late"],
            "is_critical": r["is_critical"],
            "has_critical_mp": r["has_critical_mp"],
            "impact_level": r["impact_level"],
        }
        for r in rows
    ]


@router.get("/delay-stats")
def get_delay_stats(
    critical_days: int = Query(default=PO_LATE_CRITICAL_DAYS, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    return procurement.delay_stats(db, critical_days=critical_days)


@router.get("/{po_id}")
def get_purchase_order(po_id: int, db: Session = Depends(get_db), user: User = Depends(require_roles(Role.appro))):
    po = db.get(PurchaseOrder, po_id)
    if not po:
        raise HTTPException(status_code=404, detail="Purchase order not found")
    return _with_actions(po, user)


@router.get("/{po_id}/pdf")
def get_purchase_order_pdf(
    po_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    po = db.get(PurchaseOrder, po_id)
    if not po:
        raise HTTPException(status_code=404, detail="Purchase order not found")
    content = render_purchase_order_pdf(po)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{po.reference}.pdf"'},
    )


@router.post("", status_code=201)
def create_purchase_order(
    payload: PurchaseOrderCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    po = procurement.create_direct(
        db,
        actor=user,
        supplier_id=payload.supplier_id,
        lines=[ln.model_dump() for ln in payload.lines],
        expected_delivery=payload.expected_delivery,
        notes=payload.notes,
    )
    db.commit()
    db.refresh(po)
    return _with_actions(po, user)


@router.post("/from-demande/{demande_id}", status_code=201)
def generate_from_demande(
    demande_id: int,
    payload: FromDemandeIn | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    payload = payload or FromDemandeIn()
    orders = procurement.generate_from_demande(
        db,
        actor=user,
        demande_id=demande_id,
        expected_delivery=payload.expected_delivery,
        notes=payload.notes,
        price_overrides=payload.price_overrides,
    )
    db.commit()
    return [_with_actions(po, user) for po in orders]


@router.post("/{po_id}/send")
def send_purchase_order(
    po_id: int,
    payload: SendIn,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    po, message_id, replayed = procurement.send(
        db,
        actor=user,
        po_id=po_id,
        send_via=payload.send_via,
        supplier_email=payload.supplier_email,
        proof_note=payload.proof_note,
        proof_url=payload.proof_url,
        idempotency_key=idempotency_key,
        expected_version=payload.expected_version,
    )
    db.commit()
    db.refresh(po)
    return {"purchase_order": _with_actions(po, user), "message_id": message_id, "replayed": replayed}


@router.post("/{po_id}/confirm")
def confirm_purchase_order(
    po_id: int,
    payload: ConfirmIn | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    expected_version = payload.expected_version if payload else None
    po = procurement.confirm(db, actor=user, po_id=po_id, expected_version=expected_version)
    db.commit()
    db.refresh(po)
    return _with_actions(po, user)


@router.post("/{po_id}/cancel")
def cancel_purchase_order(
    po_id: int,
    payload: CancelIn,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    user: User = Depends(require_roles()),
):
    po, replayed = procurement.cancel(
        db,
        actor=user,
        po_id=po_id,
        reason=payload.reason,
        idempotency_key=idempotency_key,
        expected_version=payload.expected_version,
    )
    db.commit()
    db.refresh(po)
    return {"purchase_order": _with_actions(po, user), "replayed": replayed}


@router.post("/{po_id}/receive")
def receive_purchase_order(
    po_id: int,
    payload: ReceiveIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    po, reception = procurement.receive(
        db,
        actor=user,
        po_id=po_id,
        lines=[ln.model_dump() for ln in payload.lines],
        bl_number=payload.bl_number,
        notes=payload.notes,
        expected_version=payload.expected_version,
    )
    db.commit()
    db.refresh(po)
    db.refresh(reception)
    return {
        "purchase_order": _with_actions(po, user),
        "reception": ReceptionRead.model_validate(reception).model_dump(),
    }


@router.post("/{po_id}/lock")
def lock_purchase_order(po_id: int, db: Session = Depends(get_db), user: User = Depends(require_roles(Role.appro))):
    po = procurement.acquire_lock(db, actor=user, po_id=po_id)
    db.commit()
    db.refresh(po)
    return {"id": po.id, "locked_by": po.locked_by, "lock_expires_at": po.lock_expires_at}


@router.delete("/{po_id}/lock")
def unlock_purchase_order(po_id: int, db: Session = Depends(get_db), user: User = Depends(require_roles(Role.appro))):
    po = procurement.release_lock(db, actor=user, po_id=po_id)
    db.commit()
    db.refresh(po)
    return {"id": po.id, "locked_by": po.locked_by, "lock_expires_at": po.lock_expires_at}
