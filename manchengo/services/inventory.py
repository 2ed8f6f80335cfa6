"""
Inventory service.

Sources de vérité du stock :
- les mouvements (IN / OUT) : stock comptable = SUM(IN) - SUM(OUT), hors mouvements supprimés ;
- les lots : stock physique disponible = SUM(quantity_remaining) des lots AVAILABLE.

Les deux doivent converger ; toute entrée crée un lot ET un mouvement IN,
toute consommation décrémente un lot ET crée un mouvement OUT.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from manchengo.app.db.models.models_v1 import (
    DemandeAppro,
    LotMp,
    LotPf,
    ProductMp,
    ReceptionMp,
    ReceptionMpLine,
    StockMovement,
    Supplier,
    User,
)
from manchengo.app.db.models.core_types import (
    DemandeStatus,
    LotStatus,
    MovementOrigin,
    MovementType,
    ProductType,
    ReceptionSource,
    ReceptionStatus,
    Role,
)
from manchengo.services import audit
from manchengo.services.clock import today, utcnow
from manchengo.services.errors import BusinessRuleError, NotFoundError
from manchengo.services.references import next_reference, unique_code
from manchengo.services.workflows import DEMANDE_WORKFLOW

logger = logging.getLogger(__name__)


# ---------- Stock courant ----------
def _signed_quantity():
    return case(
        (StockMovement.movement_type == MovementType.in_, StockMovement.quantity),
        else_=-StockMovement.quantity,
    )


def current_stocks_mp(db: Session, product_ids: Iterable[int] | None = None) -> dict[int, int]:
    """Stock comptable par MP : SUM(IN) - SUM(OUT). Les MP sans mouvement valent 0."""
    stmt = (
        select(StockMovement.product_mp_id, func.coalesce(func.sum(_signed_quantity()), 0))
        .where(StockMovement.product_type == ProductType.mp)
        .where(StockMovement.is_deleted.is_(False))
        .group_by(StockMovement.product_mp_id)
    )
    ids = None
    if product_ids is not None:
        ids = sorted({int(pid) for pid in product_ids})
        stmt = stmt.where(StockMovement.product_mp_id.in_(ids))

    stocks = {int(pid): int(qty) for pid, qty in db.execute(stmt).all()}
    for pid in ids or []:
        stocks.setdefault(pid, 0)
    return stocks


def current_stocks_pf(db: Session, product_ids: Iterable[int] | None = None) -> dict[int, int]:
    stmt = (
        select(StockMovement.product_pf_id, func.coalesce(func.sum(_signed_quantity()), 0))
        .where(StockMovement.product_type == ProductType.pf)
        .where(StockMovement.is_deleted.is_(False))
        .group_by(StockMovement.product_pf_id)
    )
    ids = None
    if product_ids is not None:
        ids = sorted({int(pid) for pid in product_ids})
        stmt = stmt.where(StockMovement.product_pf_id.in_(ids))

    stocks = {int(pid): int(qty) for pid, qty in db.execute(stmt).all()}
    for pid in ids or []:
        stocks.setdefault(pid, 0)
    return stocks


def available_lot_stock(db: Session, lot_model, product_column) -> dict[int, int]:
    """Stock physique : somme des restes des lots AVAILABLE, par produit."""
    rows = db.execute(
        select(product_column, func.coalesce(func.sum(lot_model.quantity_remaining), 0))
        .where(lot_model.status == LotStatus.available)
        .group_by(product_column)
    ).all()
    return {int(pid): int(qty) for pid, qty in rows}


def available_lot_stock_mp(db: Session) -> dict[int, int]:
    return available_lot_stock(db, LotMp, LotMp.product_mp_id)


def available_lot_stock_pf(db: Session) -> dict[int, int]:
    return available_lot_stock(db, LotPf, LotPf.product_pf_id)


# ---------- Écritures ----------
def record_movement(
    db: Session,
    *,
    movement_type: MovementType,
    product_type: ProductType,
    origin: MovementOrigin,
    quantity: int,
    actor: User | None,
    product_mp_id: int | None = None,
    product_pf_id: int | None = None,
    lot_mp_id: int | None = None,
    lot_pf_id: int | None = None,
    unit_cost: Decimal | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    reference: str | None = None,
    note: str | None = None,
    idempotency_key: str | None = None,
) -> StockMovement:
    if quantity <= 0:
        raise BusinessRuleError("Movement quantity must be positive", code="INVALID_QUANTITY")

    mv = StockMovement(
        movement_type=movement_type,
        product_type=product_type,
        origin=origin,
        product_mp_id=product_mp_id,
        product_pf_id=product_pf_id,
        lot_mp_id=lot_mp_id,
        lot_pf_id=lot_pf_id,
        quantity=quantity,
        unit_cost=unit_cost,
        reference_type=reference_type,
        reference_id=reference_id,
        reference=reference,
        note=note,
        idempotency_key=idempotency_key,
        created_by=actor.id if actor else None,
    )
    db.add(mv)
    db.flush()
    return mv


def create_lot_mp(
    db: Session,
    *,
    product_mp_id: int,
    quantity: int,
    unit_cost: Decimal | None = None,
    lot_number: str | None = None,
    expiry_date: date | None = None,
    supplier_id: int | None = None,
    reception_id: int | None = None,
) -> LotMp:
    lot_number = (lot_number or "").strip()
    if lot_number:
        lot_number = unique_code(db, LotMp.lot_number, lot_number)
    else:
        lot_number = next_reference(
            db, LotMp, f"L{today():%Y%m%d}-{product_mp_id}-", 3, column=LotMp.lot_number
        )
    lot = LotMp(
        product_mp_id=product_mp_id,
        lot_number=lot_number,
        quantity_initial=quantity,
        quantity_remaining=quantity,
        unit_cost=unit_cost,
        expiry_date=expiry_date,
        status=LotStatus.available,
        supplier_id=supplier_id,
        reception_id=reception_id,
    )
    db.add(lot)
    db.flush()
    return lot


def receive_mp_into_lot(
    db: Session,
    *,
    product_mp_id: int,
    quantity: int,
    actor: User | None,
    reception: ReceptionMp,
    unit_cost: Decimal | None = None,
    lot_number: str | None = None,
    expiry_date: date | None = None,
) -> LotMp:
    """Entrée MP : un lot + un mouvement IN (origine RECEPTION)."""
    lot = create_lot_mp(
        db,
        product_mp_id=product_mp_id,
        quantity=quantity,
        unit_cost=unit_cost,
        lot_number=lot_number,
        expiry_date=expiry_date,
        supplier_id=reception.supplier_id,
        reception_id=reception.id,
    )
    record_movement(
        db,
        movement_type=MovementType.in_,
        product_type=ProductType.mp,
        origin=MovementOrigin.reception,
        quantity=quantity,
        actor=actor,
        product_mp_id=product_mp_id,
        lot_mp_id=lot.id,
        unit_cost=unit_cost,
        reference_type="RECEPTION",
        reference_id=reception.id,
        reference=reception.reference,
    )
    return lot


# ---------- FIFO ----------
@dataclass
class FifoAllocation:
    lot: LotMp
    quantity: int

    @property
    def unit_cost(self) -> Decimal | None:
        return self.lot.unit_cost


def _fifo_lots(db: Session, product_mp_id: int, *, lock: bool) -> list[LotMp]:
    stmt = (
        select(LotMp)
        .where(LotMp.product_mp_id == product_mp_id)
        .where(LotMp.status == LotStatus.available)
        .where(LotMp.quantity_remaining > 0)
        .order_by(LotMp.created_at.asc(), LotMp.expiry_date.asc().nulls_last(), LotMp.id.asc())
    )
    if lock:
        stmt = stmt.with_for_update()
    return list(db.execute(stmt).scalars().all())


def preview_fifo(db: Session, *, product_mp_id: int, quantity: int) -> list[FifoAllocation]:
    """
    Plan de consommation FIFO, sans écriture.

    Ordre : plus ancien lot d'abord (created_at), puis DLC la plus proche,
    puis id. Lève INSUFFICIENT_STOCK_FIFO si les lots ne suffisent pas.
    """
    if quantity <= 0:
        raise BusinessRuleError("Quantity must be positive", code="INVALID_QUANTITY")

    return _plan(_fifo_lots(db, product_mp_id, lock=False), product_mp_id, quantity)


def _plan(lots: list[LotMp], product_mp_id: int, quantity: int) -> list[FifoAllocation]:
    remaining = quantity
    plan: list[FifoAllocation] = []
    for lot in lots:
        if remaining <= 0:
            break
        take = min(lot.quantity_remaining, remaining)
        plan.append(FifoAllocation(lot=lot, quantity=take))
        remaining -= take

    if remaining > 0:
        available = quantity - remaining
        raise BusinessRuleError(
            f"Insufficient stock for MP {product_mp_id}: requested {quantity}, available {available}",
            code="INSUFFICIENT_STOCK_FIFO",
            details={"product_mp_id": product_mp_id, "requested": quantity, "available": available},
        )
    return plan


def consume_fifo(
    db: Session,
    *,
    product_mp_id: int,
    quantity: int,
    actor: User | None,
    origin: MovementOrigin = MovementOrigin.production_out,
    reference_type: str | None = None,
    reference_id: int | None = None,
    reference: str | None = None,
    idempotency_key: str | None = None,
) -> list[FifoAllocation]:
    """
    Consomme `quantity` en FIFO : verrouille les lots, décrémente, crée un OUT par lot.

    Idempotent : une clé déjà utilisée ne reconsomme rien (retour vide).
    """
    if idempotency_key:
        already = db.execute(
            select(StockMovement.id).where(
                StockMovement.idempotency_key.startswith(f"{idempotency_key}:", autoescape=True)
            )
        ).first()
        if already is not None:
            logger.info("FIFO consumption %s already applied, skipping", idempotency_key)
            return []

    if quantity <= 0:
        raise BusinessRuleError("Quantity must be positive", code="INVALID_QUANTITY")

    plan = _plan(_fifo_lots(db, product_mp_id, lock=True), product_mp_id, quantity)

    for alloc in plan:
        lot = alloc.lot
        lot.quantity_remaining -= alloc.quantity
        if lot.quantity_remaining == 0:
            lot.status = LotStatus.consumed

        record_movement(
            db,
            movement_type=MovementType.out,
            product_type=ProductType.mp,
            origin=origin,
            quantity=alloc.quantity,
            actor=actor,
            product_mp_id=product_mp_id,
            lot_mp_id=lot.id,
            unit_cost=lot.unit_cost,
            reference_type=reference_type,
            reference_id=reference_id,
            reference=reference,
            idempotency_key=f"{idempotency_key}:{lot.id}" if idempotency_key else None,
        )

    return plan


# ---------- Réceptions ----------
def next_reception_reference(db: Session) -> str:
    return next_reference(db, ReceptionMp, f"REC-{today():%Y%m%d}-", 3)


def create_reception(
    db: Session,
    *,
    actor: User,
    supplier_id: int | None,
    lines: list[dict],
    source: ReceptionSource = ReceptionSource.manual,
    purchase_order_id: int | None = None,
    demande_id: int | None = None,
    bl_number: str | None = None,
    notes: str | None = None,
) -> ReceptionMp:
    """Réception en brouillon (rien n'entre en stock avant validation)."""
    if not lines:
        raise BusinessRuleError("A reception needs at least one line", code="EMPTY_RECEPTION")
    if supplier_id is not None and not db.get(Supplier, supplier_id):
        raise NotFoundError("Supplier", supplier_id)

    reception = ReceptionMp(
        reference=next_reception_reference(db),
        supplier_id=supplier_id,
        status=ReceptionStatus.draft,
        source=source,
        purchase_order_id=purchase_order_id,
        demande_id=demande_id,
        bl_number=bl_number,
        date_reception=today(),
        notes=notes,
        created_by=actor.id,
    )
    db.add(reception)
    db.flush()

    for ln in lines:
        if not db.get(ProductMp, ln["product_mp_id"]):
            raise NotFoundError("ProductMp", ln["product_mp_id"])
        if ln["quantity"] < 0:
            raise BusinessRuleError("Reception quantity cannot be negative", code="INVALID_QUANTITY")
        db.add(
            ReceptionMpLine(
                reception_id=reception.id,
                product_mp_id=ln["product_mp_id"],
                quantity=ln["quantity"],
                unit_cost=ln.get("unit_cost"),
                lot_number=ln.get("lot_number"),
                expiry_date=ln.get("expiry_date"),
            )
        )
    db.flush()
    db.refresh(reception)
    return reception


def validate_reception(db: Session, *, reception_id: int, actor: User) -> ReceptionMp:
    """
    DRAFT -> VALIDATED : chaque ligne > 0 devient un lot + un mouvement IN.

    Si la réception vient d'une demande, la demande avance jusqu'à RECEPTIONNEE
    (EN_COURS_COMMANDE -> COMMANDEE -> RECEPTIONNEE, transitions système).
    """
    reception = db.execute(
        select(ReceptionMp).where(ReceptionMp.id == reception_id).with_for_update()
    ).scalar_one_or_none()
    if not reception:
        raise NotFoundError("Reception", reception_id)
    if reception.status != ReceptionStatus.draft:
        raise BusinessRuleError(
            f"Reception {reception.reference} is already validated", code="RECEPTION_ALREADY_VALIDATED"
        )

    for line in reception.lines:
        if line.quantity <= 0:
            continue
        lot = receive_mp_into_lot(
            db,
            product_mp_id=line.product_mp_id,
            quantity=line.quantity,
            actor=actor,
            reception=reception,
            unit_cost=line.unit_cost,
            lot_number=line.lot_number,
            expiry_date=line.expiry_date,
        )
        line.lot_mp_id = lot.id

    reception.status = ReceptionStatus.validated
    reception.validated_at = utcnow()
    reception.validated_by = actor.id

    if reception.demande_id is not None:
        demande = db.get(DemandeAppro, reception.demande_id)
        if demande is not None:
            for current, target in (
                (DemandeStatus.en_cours_commande, DemandeStatus.commandee),
                (DemandeStatus.commandee, DemandeStatus.receptionnee),
            ):
                if demande.status == current:
                    DEMANDE_WORKFLOW.assert_can_transition(current, target, Role.system)
                    demande.status = target

    audit.record(
        db,
        actor=actor,
        action="RECEPTION_VALIDATED",
        entity_type="ReceptionMp",
        entity_id=reception.id,
        meta={"reference": reception.reference, "lines": len(reception.lines)},
    )
    logger.info("Reception %s validated (%d lines)", reception.reference, len(reception.lines))
    return reception
