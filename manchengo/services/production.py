"""
Production service : ordres de fabrication (OP).

PENDING -> IN_PROGRESS : consommation FIFO des MP de la recette
IN_PROGRESS -> COMPLETED : création du lot PF + mouvement IN
PENDING | IN_PROGRESS -> CANCELLED : si démarré, les lots consommés sont restaurés
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from manchengo.app.db.models.models_v1 import (
    LotMp,
    LotPf,
    ProductionConsumption,
    ProductionOrder,
    ProductPf,
    Recipe,
    User,
)
from manchengo.app.db.models.core_types import (
    LotStatus,
    MovementOrigin,
    MovementType,
    ProductionStatus,
    ProductType,
)
from manchengo.services import audit
from manchengo.services.appro import check_recipe_stock
from manchengo.services.clock import today, utcnow
from manchengo.services.errors import BusinessRuleError, NotFoundError
from manchengo.services.inventory import available_lot_stock_mp, consume_fifo, record_movement
from manchengo.services.references import next_reference
from manchengo.services.workflows import PRODUCTION_WORKFLOW

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def next_production_reference(db: Session) -> str:
    return next_reference(db, ProductionOrder, f"OP-{today():%y%m%d}-", 3)


def next_pf_lot_number(db: Session, pf: ProductPf) -> str:
    return next_reference(db, LotPf, f"{pf.code}-{today():%y%m%d}-", 3, column=LotPf.lot_number)


def _get(db: Session, order_id: int, *, lock: bool = False) -> ProductionOrder:
    stmt = select(ProductionOrder).where(ProductionOrder.id == order_id)
    if lock:
        stmt = stmt.with_for_update()
    order = db.execute(stmt).scalar_one_or_none()
    if not order:
        raise NotFoundError("ProductionOrder", order_id)
    return order


def get(db: Session, order_id: int) -> ProductionOrder:
    return _get(db, order_id)


def _recipe_for(db: Session, pf: ProductPf) -> Recipe:
    recipe = db.execute(
        select(Recipe).where(Recipe.product_pf_id == pf.id).where(Recipe.is_active.is_(True))
    ).scalar_one_or_none()
    if recipe is None:
        raise BusinessRuleError(f"No active recipe for {pf.code}", code="RECIPE_NOT_FOUND")
    if not recipe.items:
        raise BusinessRuleError(f"Recipe {recipe.name} has no ingredients", code="RECIPE_EMPTY")
    if recipe.batch_weight <= 0 or recipe.output_quantity <= 0:
        raise BusinessRuleError(
            f"Recipe {recipe.name} needs a positive batch weight and output quantity", code="RECIPE_INVALID"
        )
    return recipe


def _required(item, batch_count: int) -> int:
    return math.ceil(Decimal(item.quantity) * batch_count)


def create(
    db: Session,
    *,
    actor: User,
    product_pf_id: int,
    batch_count: int,
    notes: str | None = None,
) -> ProductionOrder:
    pf = db.get(ProductPf, product_pf_id)
    if not pf:
        raise NotFoundError("ProductPf", product_pf_id)
    if batch_count <= 0:
        raise BusinessRuleError("Batch count must be positive", code="INVALID_QUANTITY")

    recipe = _recipe_for(db, pf)
    check = check_recipe_stock(db, recipe=recipe, batch_count=batch_count)
    if not check["can_start"]:
        raise BusinessRuleError(
            f"Insufficient stock to produce {batch_count} batch(es) of {pf.code}",
            code="INSUFFICIENT_STOCK",
            details={"blockers": check["blockers"]},
        )

    order = ProductionOrder(
        reference=next_production_reference(db),
        recipe_id=recipe.id,
        product_pf_id=pf.id,
        batch_count=batch_count,
        target_quantity=recipe.output_quantity * batch_count,
        status=ProductionStatus.pending,
        notes=notes,
        created_by=actor.id,
    )
    db.add(order)
    db.flush()

    audit.record(
        db,
        actor=actor,
        action="PRODUCTION_CREATED",
        entity_type="ProductionOrder",
        entity_id=order.id,
        meta={"reference": order.reference, "product_pf_id": pf.id, "batch_count": batch_count},
    )
    return order


def start(db: Session, *, actor: User, order_id: int) -> ProductionOrder:
    """
    Démarre l'OP : consommation FIFO de chaque MP qui impacte le stock.

    Un ingrédient optionnel en stock insuffisant est ignoré ; un ingrédient
    obligatoire manquant fait échouer tout le démarrage (INSUFFICIENT_STOCK_FIFO).
    """
    order = _get(db, order_id, lock=True)
    PRODUCTION_WORKFLOW.assert_can_transition(order.status, ProductionStatus.in_progress, actor.role)

    lot_stock = available_lot_stock_mp(db)
    for item in order.recipe.items:
        if not item.affects_stock:
            continue
        required = _required(item, order.batch_count)
        if not item.is_mandatory and lot_stock.get(item.product_mp_id, 0) < required:
            logger.warning(
                "OP %s: optional MP %s skipped (required %d)", order.reference, item.product_mp.code, required
            )
            continue

        allocations = consume_fifo(
            db,
            product_mp_id=item.product_mp_id,
            quantity=required,
            actor=actor,
            origin=MovementOrigin.production_out,
            reference_type="PRODUCTION_ORDER",
            reference_id=order.id,
            reference=order.reference,
            idempotency_key=f"{order.reference}-MP{item.product_mp_id}",
        )
        for alloc in allocations:
            db.add(
                ProductionConsumption(
                    production_order_id=order.id,
                    product_mp_id=item.product_mp_id,
                    lot_mp_id=alloc.lot.id,
                    quantity=alloc.quantity,
                    unit_cost=alloc.unit_cost,
                )
            )

    order.status = ProductionStatus.in_progress
    order.started_at = utcnow()
    db.flush()

    audit.record(
        db,
        actor=actor,
        action="PRODUCTION_STARTED",
        entity_type="ProductionOrder",
        entity_id=order.id,
        meta={"reference": order.reference},
    )
    logger.info("OP %s started", order.reference)
    return order


def complete(
    db: Session,
    *,
    actor: User,
    order_id: int,
    quantity_produced: int,
    notes: str | None = None,
) -> ProductionOrder:
    order = _get(db, order_id, lock=True)
    PRODUCTION_WORKFLOW.assert_can_transition(order.status, ProductionStatus.completed, actor.role)
    if quantity_produced <= 0:
        raise BusinessRuleError("Produced quantity must be positive", code="INVALID_QUANTITY")

    recipe = order.recipe
    pf = db.get(ProductPf, order.product_pf_id)

    yield_pct = (Decimal(quantity_produced) * 100 / Decimal(order.target_quantity)).quantize(CENTS)
    if yield_pct < Decimal(100) - Decimal(recipe.loss_tolerance):
        logger.warning(
            "OP %s: low yield %s%% (tolerance %s%%)", order.reference, yield_pct, recipe.loss_tolerance
        )

    consumed_cost = sum(
        (Decimal(c.unit_cost) * c.quantity for c in order.consumptions if not c.is_reversed and c.unit_cost is not None),
        Decimal("0"),
    )
    unit_cost = (consumed_cost / quantity_produced).quantize(CENTS)

    lot = LotPf(
        product_pf_id=pf.id,
        lot_number=next_pf_lot_number(db, pf),
        quantity_initial=quantity_produced,
        quantity_remaining=quantity_produced,
        unit_cost=unit_cost,
        manufacture_date=today(),
        expiry_date=today() + timedelta(days=recipe.shelf_life_days),
        status=LotStatus.available,
        production_order_id=order.id,
    )
    db.add(lot)
    db.flush()

    record_movement(
        db,
        movement_type=MovementType.in_,
        product_type=ProductType.pf,
        origin=MovementOrigin.production_in,
        quantity=quantity_produced,
        actor=actor,
        product_pf_id=pf.id,
        lot_pf_id=lot.id,
        unit_cost=unit_cost,
        reference_type="PRODUCTION_ORDER",
        reference_id=order.id,
        reference=order.reference,
    )

    order.status = ProductionStatus.completed
    order.quantity_produced = quantity_produced
    order.yield_percentage = yield_pct
    order.unit_cost = unit_cost
    order.lot_pf_id = lot.id
    order.completed_at = utcnow()
    if notes:
        order.notes = notes

    audit.record(
        db,
        actor=actor,
        action="PRODUCTION_COMPLETED",
        entity_type="ProductionOrder",
        entity_id=order.id,
        meta={
            "reference": order.reference,
            "lot": lot.lot_number,
            "quantity_produced": quantity_produced,
            "yield_percentage": str(yield_pct),
        },
    )
    logger.info("OP %s completed: %d produced (lot %s)", order.reference, quantity_produced, lot.lot_number)
    return order


def cancel(db: Session, *, actor: User, order_id: int, reason: str | None = None) -> ProductionOrder:
    """Annule l'OP ; si démarré, chaque consommation est restituée à son lot (mouvement IN)."""
    order = _get(db, order_id, lock=True)
    was_started = order.status == ProductionStatus.in_progress
    PRODUCTION_WORKFLOW.assert_can_transition(order.status, ProductionStatus.cancelled, actor.role)

    restored = 0
    if was_started:
        for consumption in order.consumptions:
            if consumption.is_reversed:
                continue
            lot = db.execute(
                select(LotMp).where(LotMp.id == consumption.lot_mp_id).with_for_update()
            ).scalar_one()
            lot.quantity_remaining += consumption.quantity
            if lot.status == LotStatus.consumed:
                lot.status = LotStatus.available
            record_movement(
                db,
                movement_type=MovementType.in_,
                product_type=ProductType.mp,
                origin=MovementOrigin.production_cancel,
                quantity=consumption.quantity,
                actor=actor,
                product_mp_id=consumption.product_mp_id,
                lot_mp_id=lot.id,
                unit_cost=consumption.unit_cost,
                reference_type="PRODUCTION_ORDER",
                reference_id=order.id,
                reference=order.reference,
            )
            consumption.is_reversed = True
            restored += 1

    order.status = ProductionStatus.cancelled
    order.cancelled_at = utcnow()
    order.cancel_reason = reason

    audit.record(
        db,
        actor=actor,
        action="PRODUCTION_CANCELLED",
        entity_type="ProductionOrder",
        entity_id=order.id,
        meta={"reference": order.reference, "restored_consumptions": restored, "reason": reason},
    )
    logger.warning("OP %s cancelled (%d consumptions restored)", order.reference, restored)
    return order
