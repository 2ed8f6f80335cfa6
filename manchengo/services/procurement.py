"""
Procurement service.

Ce module orchestre le cycle de vie des bons de commande (BC) :
création, génération depuis une demande validée, envoi, confirmation,
réception (totale ou partielle), annulation, suivi des retards.

Toute la logique de stock (lots, mouvements) est centralisée dans :
    manchengo.services.inventory
Toute écriture de statut passe par :
    manchengo.services.workflows
"""

from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from manchengo.app.db.models.models_v1 import (
    DemandeAppro,
    LotMp,
    ProductMp,
    PurchaseOrder,
    PurchaseOrderItem,
    ReceptionMp,
    ReceptionMpLine,
    Supplier,
    User,
)
from manchengo.app.db.models.core_types import (
    Criticality,
    DemandeStatus,
    POStatus,
    ReceptionSource,
    ReceptionStatus,
    Role,
    SendVia,
)
from manchengo.app.settings import PO_LATE_CRITICAL_DAYS
from manchengo.services import audit
from manchengo.services.clock import as_utc, today, utcnow
from manchengo.services.errors import BusinessRuleError, ConflictError, ForbiddenError, NotFoundError
from manchengo.services.inventory import next_reception_reference, receive_mp_into_lot
from manchengo.services.references import next_reference
from manchengo.services.workflows import DEMANDE_WORKFLOW, PURCHASE_ORDER_WORKFLOW

logger = logging.getLogger(__name__)

# BC engagés (envoyés au fournisseur, pas encore soldés)
ACTIVE_PO_STATUSES = {POStatus.sent, POStatus.confirmed, POStatus.partial}
PENDING_PO_STATUSES = {POStatus.draft, POStatus.sent}

PROOF_NOTE_MIN_LENGTH = 20
LOCK_MINUTES = 5
CENTS = Decimal("0.01")


# ---------- Helpers ----------
def _get_po(db: Session, po_id: int, *, lock: bool = False) -> PurchaseOrder:
    stmt = select(PurchaseOrder).where(PurchaseOrder.id == po_id)
    if lock:
        stmt = stmt.with_for_update()
    po = db.execute(stmt).scalar_one_or_none()
    if not po:
        raise NotFoundError("PurchaseOrder", po_id)
    return po


def next_po_reference(db: Session) -> str:
    return next_reference(db, PurchaseOrder, f"BC-{today():%Y}-", 5)


def verify_version(po: PurchaseOrder, expected_version: int | None) -> None:
    if expected_version is not None and po.version != expected_version:
        raise ConflictError(
            f"Purchase order {po.reference} was modified by someone else",
            code="VERSION_CONFLICT",
            details={"expected_version": expected_version, "current_version": po.version},
        )


def _assert_not_locked_by_other(po: PurchaseOrder, actor: User) -> None:
    if po.locked_by is None or po.locked_by == actor.id:
        return
    expires = as_utc(po.lock_expires_at)
    if expires is not None and expires > utcnow():
        raise ConflictError(
            f"Purchase order {po.reference} is being edited by another user",
            code="PO_LOCKED",
            details={"locked_by": po.locked_by, "lock_expires_at": expires.isoformat()},
        )


def _prepare_mutation(db: Session, po_id: int, actor: User, expected_version: int | None) -> PurchaseOrder:
    po = _get_po(db, po_id, lock=True)
    verify_version(po, expected_version)
    _assert_not_locked_by_other(po, actor)
    return po


def _advance_demande(db: Session, demande_id: int | None, steps: tuple) -> None:
    """Fait avancer la demande liée (transitions SYSTEM) si elle est au bon statut."""
    if demande_id is None:
        return
    demande = db.get(DemandeAppro, demande_id)
    if demande is None:
        return
    for current, target in steps:
        if demande.status == current:
            DEMANDE_WORKFLOW.assert_can_transition(current, target, Role.system)
            demande.status = target
            logger.info("Demande %s moved to %s", demande.reference, target.value)


def _last_unit_cost(db: Session, product_mp_id: int) -> Decimal | None:
    return db.execute(
        select(LotMp.unit_cost)
        .where(LotMp.product_mp_id == product_mp_id)
        .where(LotMp.unit_cost.is_not(None))
        .order_by(LotMp.created_at.desc(), LotMp.id.desc())
        .limit(1)
    ).scalar_one_or_none()


# ---------- Création ----------
def create_direct(
    db: Session,
    *,
    actor: User,
    supplier_id: int,
    lines: list[dict],
    expected_delivery: date | None = None,
    notes: str | None = None,
    demande_id: int | None = None,
) -> PurchaseOrder:
    """
    Crée un BC en DRAFT.

    lines : [{"product_mp_id", "quantity", "unit_price"}]
    total_ht = SUM(quantity * unit_price)
    """
    if not lines:
        raise BusinessRuleError("A purchase order needs at least one line", code="EMPTY_PURCHASE_ORDER")

    supplier = db.get(Supplier, supplier_id)
    if not supplier:
        raise NotFoundError("Supplier", supplier_id)
    if not supplier.active:
        raise BusinessRuleError(f"Supplier {supplier.code} is inactive", code="SUPPLIER_INACTIVE")

    for ln in lines:
        if not db.get(ProductMp, ln["product_mp_id"]):
            raise NotFoundError("ProductMp", ln["product_mp_id"])
        if ln["quantity"] <= 0:
            raise BusinessRuleError("Line quantity must be positive", code="INVALID_QUANTITY")
        if Decimal(str(ln.get("unit_price") or 0)) < 0:
            raise BusinessRuleError("Unit price cannot be negative", code="INVALID_PRICE")

    po = PurchaseOrder(
        reference=next_po_reference(db),
        supplier_id=supplier.id,
        demande_id=demande_id,
        status=POStatus.draft,
        expected_delivery=expected_delivery,
        notes=notes,
        created_by=actor.id,
        total_ht=Decimal("0"),
    )
    db.add(po)
    db.flush()

    total = Decimal("0")
    for ln in lines:
        unit_price = Decimal(str(ln.get("unit_price") or 0)).quantize(CENTS)
        line_total = (unit_price * ln["quantity"]).quantize(CENTS)
        total += line_total
        db.add(
            PurchaseOrderItem(
                purchase_order_id=po.id,
                product_mp_id=ln["product_mp_id"],
                quantity=ln["quantity"],
                quantity_received=0,
                unit_price=unit_price,
                total_ht=line_total,
            )
        )
    po.total_ht = total
    db.flush()
    db.refresh(po)

    audit.record(
        db,
        actor=actor,
        action="BC_CREATED",
        entity_type="PurchaseOrder",
        entity_id=po.id,
        meta={"reference": po.reference, "supplier_id": supplier.id, "total_ht": str(total)},
    )
    logger.info("BC %s created for supplier %s (%s lines)", po.reference, supplier.code, len(lines))
    return po


def generate_from_demande(
    db: Session,
    *,
    actor: User,
    demande_id: int,
    expected_delivery: date | None = None,
    notes: str | None = None,
    price_overrides: dict[int, Decimal] | None = None,
) -> list[PurchaseOrder]:
    """
    Génère les BC d'une demande VALIDEE : un BC par fournisseur principal.

    Quantité = quantité validée (à défaut, demandée).
    Prix = override, sinon dernier coût lot connu, sinon 0.
    La demande passe EN_COURS_COMMANDE.
    """
    demande = db.execute(
        select(DemandeAppro).where(DemandeAppro.id == demande_id).with_for_update()
    ).scalar_one_or_none()
    if not demande:
        raise NotFoundError("DemandeAppro", demande_id)

    DEMANDE_WORKFLOW.assert_can_transition(demande.status, DemandeStatus.en_cours_commande, actor.role)

    overrides = {int(k): Decimal(str(v)) for k, v in (price_overrides or {}).items()}
    by_supplier: OrderedDict[int, list[dict]] = OrderedDict()
    missing_supplier: list[str] = []

    for line in demande.lines:
        qty = line.quantite_validee if line.quantite_validee is not None else line.quantite_demandee
        if qty <= 0:
            continue
        mp = line.product_mp
        if mp.main_supplier_id is None:
            missing_supplier.append(mp.code)
            continue
        price = overrides.get(mp.id)
        if price is None:
            price = _last_unit_cost(db, mp.id) or Decimal("0")
        by_supplier.setdefault(mp.main_supplier_id, []).append(
            {"product_mp_id": mp.id, "quantity": qty, "unit_price": price}
        )

    if missing_supplier:
        raise BusinessRuleError(
            "Some raw materials have no main supplier",
            code="MP_WITHOUT_SUPPLIER",
            details={"products": missing_supplier},
        )
    if not by_supplier:
        raise BusinessRuleError("Nothing to order on this demande", code="EMPTY_PURCHASE_ORDER")

    orders = [
        create_direct(
            db,
            actor=actor,
            supplier_id=supplier_id,
            lines=lines,
            expected_delivery=expected_delivery,
            notes=notes or f"Généré depuis {demande.reference}",
            demande_id=demande.id,
        )
        for supplier_id, lines in by_supplier.items()
    ]

    demande.status = DemandeStatus.en_cours_commande
    audit.record(
        db,
        actor=actor,
        action="BC_GENERATED_FROM_DEMANDE",
        entity_type="DemandeAppro",
        entity_id=demande.id,
        meta={"reference": demande.reference, "purchase_orders": [po.reference for po in orders]},
    )
    return orders


# ---------- Envoi / confirmation ----------
def send(
    db: Session,
    *,
    actor: User,
    po_id: int,
    send_via: SendVia,
    supplier_email: str | None = None,
    proof_note: str | None = None,
    proof_url: str | None = None,
    idempotency_key: str | None = None,
    expected_version: int | None = None,
) -> tuple[PurchaseOrder, str, bool]:
    """
    DRAFT -> SENT.

    Retourne (po, message_id, replayed). Un rejeu avec la même
    Idempotency-Key renvoie le résultat du premier envoi sans rien réécrire.
    """
    if idempotency_key:
        previous = audit.find_by_idempotency_key(
            db, action="BC_SENT", entity_type="PurchaseOrder", entity_id=po_id, key=idempotency_key
        )
        if previous is not None:
            return _get_po(db, po_id), previous.meta.get("message_id"), True

    po = _prepare_mutation(db, po_id, actor, expected_version)
    status_before = po.status
    PURCHASE_ORDER_WORKFLOW.assert_can_transition(po.status, POStatus.sent, actor.role)

    if send_via == SendVia.email:
        email = (supplier_email or po.supplier.email or "").strip()
        if not email:
            raise BusinessRuleError(
                f"Supplier {po.supplier.code} has no email address", code="SUPPLIER_EMAIL_REQUIRED"
            )
        message_id = f"MSG-{uuid.uuid4().hex[:16].upper()}"
        po.supplier_email_to = email
    else:
        note = (proof_note or "").strip()
        if len(note) < PROOF_NOTE_MIN_LENGTH:
            raise BusinessRuleError(
                f"Manual sending requires a proof note of at least {PROOF_NOTE_MIN_LENGTH} characters",
                code="PROOF_NOTE_REQUIRED",
                details={"min_length": PROOF_NOTE_MIN_LENGTH},
            )
        message_id = f"MANUAL-{uuid.uuid4().hex[:16].upper()}"
        po.proof_note = note
        po.proof_url = proof_url

    po.status = POStatus.sent
    po.sent_at = utcnow()
    po.sent_by = actor.id
    po.sent_via = send_via
    po.message_id = message_id
    po.version += 1

    _advance_demande(db, po.demande_id, ((DemandeStatus.en_cours_commande, DemandeStatus.commandee),))

    audit.record(
        db,
        actor=actor,
        action="BC_SENT",
        entity_type="PurchaseOrder",
        entity_id=po.id,
        meta={
            "reference": po.reference,
            "status_before": status_before.value,
            "status_after": po.status.value,
            "send_via": send_via.value,
            "message_id": message_id,
            "idempotency_key": idempotency_key,
        },
    )
    logger.info("BC %s sent via %s (%s)", po.reference, send_via.value, message_id)
    return po, message_id, False


def confirm(db: Session, *, actor: User, po_id: int, expected_version: int | None = None) -> PurchaseOrder:
    po = _prepare_mutation(db, po_id, actor, expected_version)
    status_before = po.status
    PURCHASE_ORDER_WORKFLOW.assert_can_transition(po.status, POStatus.confirmed, actor.role)

    po.status = POStatus.confirmed
    po.confirmed_at = utcnow()
    po.confirmed_by = actor.id
    po.version += 1

    audit.record(
        db,
        actor=actor,
        action="BC_CONFIRMED",
        entity_type="PurchaseOrder",
        entity_id=po.id,
        meta={"reference": po.reference, "status_before": status_before.value, "status_after": po.status.value},
    )
    return po


def cancel(
    db: Session,
    *,
    actor: User,
    po_id: int,
    reason: str | None,
    idempotency_key: str | None = None,
    expected_version: int | None = None,
) -> tuple[PurchaseOrder, bool]:
    """Annulation (ADMIN). Interdite dès qu'une ligne a été partiellement reçue."""
    if idempotency_key:
        previous = audit.find_by_idempotency_key(
            db, action="BC_CANCELLED", entity_type="PurchaseOrder", entity_id=po_id, key=idempotency_key
        )
        if previous is not None:
            return _get_po(db, po_id), True

    po = _prepare_mutation(db, po_id, actor, expected_version)
    status_before = po.status
    has_partial = any(item.quantity_received > 0 for item in po.items)
    PURCHASE_ORDER_WORKFLOW.assert_can_transition(
        po.status, POStatus.cancelled, actor.role, motif=reason, has_partial_received=has_partial
    )

    po.status = POStatus.cancelled
    po.cancelled_at = utcnow()
    po.cancelled_by = actor.id
    po.cancel_reason = reason.strip()
    po.version += 1

    audit.record(
        db,
        actor=actor,
        action="BC_CANCELLED",
        entity_type="PurchaseOrder",
        entity_id=po.id,
        meta={
            "reference": po.reference,
            "status_before": status_before.value,
            "status_after": po.status.value,
            "reason": po.cancel_reason,
            "idempotency_key": idempotency_key,
        },
    )
    logger.warning("BC %s cancelled by user %s", po.reference, actor.id)
    return po, False


# ---------- Réception ----------
def receive(
    db: Session,
    *,
    actor: User,
    po_id: int,
    lines: list[dict],
    bl_number: str | None = None,
    notes: str | None = None,
    expected_version: int | None = None,
) -> tuple[PurchaseOrder, ReceptionMp]:
    """
    Réception (totale ou partielle) d'un BC SENT / CONFIRMED / PARTIAL.

    lines : [{"item_id", "quantity_received", "lot_number"?, "expiry_date"?}]

    Règle métier :
    - chaque item doit appartenir au BC, sans dépasser la quantité commandée ;
    - une réception VALIDATED est créée, avec un lot + un mouvement IN par ligne > 0 ;
    - statut final = RECEIVED si tout est soldé, sinon PARTIAL.
    """
    po = _prepare_mutation(db, po_id, actor, expected_version)
    items = {item.id: item for item in po.items}

    to_receive: list[tuple[PurchaseOrderItem, dict]] = []
    pending = {item.id: item.quantity_received for item in po.items}
    for ln in lines:
        item = items.get(ln["item_id"])
        if item is None:
            raise BusinessRuleError(
                f"Item {ln['item_id']} does not belong to {po.reference}",
                code="ITEM_NOT_IN_PURCHASE_ORDER",
                details={"item_id": ln["item_id"]},
            )
        qty = int(ln["quantity_received"])
        if qty < 0:
            raise BusinessRuleError("Received quantity cannot be negative", code="INVALID_QUANTITY")
        pending[item.id] += qty
        if pending[item.id] > item.quantity:
            raise BusinessRuleError(
                f"Over-reception on item {item.id}: ordered {item.quantity}",
                code="OVER_RECEPTION",
                details={"item_id": item.id, "ordered": item.quantity, "received": pending[item.id]},
            )
        if qty > 0:
            to_receive.append((item, ln))

    if not to_receive:
        raise BusinessRuleError("Nothing to receive", code="EMPTY_RECEPTION")

    fully_received = all(pending[item.id] >= item.quantity for item in po.items)
    target = POStatus.received if fully_received else POStatus.partial
    status_before = po.status
    PURCHASE_ORDER_WORKFLOW.assert_can_transition(po.status, target, actor.role)

    reception = ReceptionMp(
        reference=next_reception_reference(db),
        supplier_id=po.supplier_id,
        status=ReceptionStatus.validated,
        source=ReceptionSource.bc,
        purchase_order_id=po.id,
        demande_id=po.demande_id,
        bl_number=bl_number,
        date_reception=today(),
        notes=notes,
        validated_at=utcnow(),
        validated_by=actor.id,
        created_by=actor.id,
    )
    db.add(reception)
    db.flush()

    for item, ln in to_receive:
        qty = int(ln["quantity_received"])
        item.quantity_received += qty
        lot = receive_mp_into_lot(
            db,
            product_mp_id=item.product_mp_id,
            quantity=qty,
            actor=actor,
            reception=reception,
            unit_cost=item.unit_price,
            lot_number=ln.get("lot_number"),
            expiry_date=ln.get("expiry_date"),
        )
        db.add(
            ReceptionMpLine(
                reception_id=reception.id,
                product_mp_id=item.product_mp_id,
                quantity=qty,
                unit_cost=item.unit_price,
                lot_number=lot.lot_number,
                expiry_date=lot.expiry_date,
                lot_mp_id=lot.id,
            )
        )

    po.status = target
    if target == POStatus.received:
        po.received_at = utcnow()
    po.version += 1
    db.flush()

    if po.demande_id is not None and target == POStatus.received:
        siblings = db.execute(
            select(PurchaseOrder.status)
            .where(PurchaseOrder.demande_id == po.demande_id)
            .where(PurchaseOrder.status != POStatus.cancelled)
        ).scalars().all()
        if all(s == POStatus.received for s in siblings):
            _advance_demande(
                db,
                po.demande_id,
                (
                    (DemandeStatus.en_cours_commande, DemandeStatus.commandee),
                    (DemandeStatus.commandee, DemandeStatus.receptionnee),
                ),
            )

    audit.record(
        db,
        actor=actor,
        action="BC_RECEIVED" if target == POStatus.received else "BC_PARTIAL_RECEIVED",
        entity_type="PurchaseOrder",
        entity_id=po.id,
        meta={
            "reference": po.reference,
            "reception": reception.reference,
            "status_before": status_before.value,
            "status_after": po.status.value,
            "lines": [{"item_id": item.id, "quantity": int(ln["quantity_received"])} for item, ln in to_receive],
        },
    )
    logger.info("BC %s received -> %s (reception %s)", po.reference, target.value, reception.reference)
    db.refresh(reception)
    return po, reception


# ---------- Verrou d'édition ----------
def acquire_lock(db: Session, *, actor: User, po_id: int, minutes: int = LOCK_MINUTES) -> PurchaseOrder:
    po = _get_po(db, po_id, lock=True)
    _assert_not_locked_by_other(po, actor)
    now = utcnow()
    po.locked_by = actor.id
    po.locked_at = now
    po.lock_expires_at = now + timedelta(minutes=minutes)
    return po


def release_lock(db: Session, *, actor: User, po_id: int) -> PurchaseOrder:
    po = _get_po(db, po_id, lock=True)
    if po.locked_by is None:
        return po
    if po.locked_by != actor.id:
        raise ForbiddenError("Only the lock holder can release it", code="LOCK_NOT_OWNED")
    po.locked_by = None
    po.locked_at = None
    po.lock_expires_at = None
    return po


# ---------- Retards ----------
def _impact_level(has_critical_mp: bool, is_critical: bool) -> str:
    if has_critical_mp:
        return "BLOQUANT"
    if is_critical:
        return "MAJEUR"
    return "MINEUR"


def late_purchase_orders(
    db: Session,
    *,
    critical_days: int = PO_LATE_CRITICAL_DAYS,
    on: date | None = None,
) -> list[dict]:
    """BC engagés dont la livraison prévue est dépassée, les plus en retard d'abord."""
    ref_day = on or today()
    rows = db.execute(
        select(PurchaseOrder)
        .where(PurchaseOrder.status.in_(ACTIVE_PO_STATUSES))
        .where(PurchaseOrder.expected_delivery.is_not(None))
        .where(PurchaseOrder.expected_delivery < ref_day)
        .order_by(PurchaseOrder.expected_delivery.asc(), PurchaseOrder.id.asc())
    ).scalars().all()

    result = []
    for po in rows:
        days_late = (ref_day - po.expected_delivery).days
        is_critical = days_late >= critical_days
        has_critical_mp = any(
            item.product_mp.criticality in (Criticality.haute, Criticality.bloquante) for item in po.items
        )
        result.append(
            {
                "purchase_order": po,
                "days_late": days_late,
                "is_critical": is_critical,
                "has_critical_mp": has_critical_mp,
                "impact_level": _impact_level(has_critical_mp, is_critical),
            }
        )
    result.sort(key=lambda r: r["days_late"], reverse=True)
    return result


def delay_stats(db: Session, *, critical_days: int = PO_LATE_CRITICAL_DAYS, on: date | None = None) -> dict:
    total_active = len(
        db.execute(select(PurchaseOrder.id).where(PurchaseOrder.status.in_(ACTIVE_PO_STATUSES))).all()
    )
    late = late_purchase_orders(db, critical_days=critical_days, on=on)
    total_late = len(late)
    return {
        "total_active": total_active,
        "total_late": total_late,
        "critical_late": sum(1 for r in late if r["is_critical"]),
        "late_percentage": round(total_late * 100 / total_active, 1) if total_active else 0.0,
    }


def available_actions(po: PurchaseOrder, role: Role) -> list[str]:
    has_partial = any(item.quantity_received > 0 for item in po.items)
    return PURCHASE_ORDER_WORKFLOW.available_actions(po.status, role, has_partial_received=has_partial)
