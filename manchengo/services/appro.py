"""
Appro service : état des stocks MP, criticité, IRS, suggestions de réappro.

Règles métier :
    seuil sécurité effectif = safety_threshold, à défaut min_stock
    seuil commande effectif = reorder_threshold, à défaut round(min_stock * 1.5)

    stock <= 0                 -> BLOQUANT_PRODUCTION si MP utilisée dans une
                                  recette active ou BLOQUANTE, sinon RUPTURE
    stock <= seuil commande    -> BLOQUANT_PRODUCTION si BLOQUANTE et stock < seuil
                                  sécurité, sinon A_COMMANDER
    stock <= seuil sécurité    -> SOUS_SEUIL
    sinon                      -> SAIN

    IRS = 30 * bloquants + 20 * ruptures + 10 * sous_seuil, borné à [0, 100]
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from manchengo.app.db.models.models_v1 import (
    Alert,
    ProductMp,
    PurchaseOrder,
    Recipe,
    RecipeItem,
    StockMovement,
    User,
)
from manchengo.app.db.models.core_types import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    Criticality,
    IrsStatus,
    MovementType,
    ProductType,
    StockState,
    SuggestionPriority,
)
from manchengo.services import alerts, audit
from manchengo.services.clock import utcnow
from manchengo.services.errors import BusinessRuleError, NotFoundError
from manchengo.services.inventory import available_lot_stock_mp, current_stocks_mp
from manchengo.services.procurement import PENDING_PO_STATUSES

logger = logging.getLogger(__name__)

CRITICALITY_ORDER = [Criticality.faible, Criticality.moyenne, Criticality.haute, Criticality.bloquante]
CONSUMPTION_WINDOW_DAYS = 30
SAFETY_MARGIN_DAYS = 7


# ---------- Règles pures ----------
def effective_safety_threshold(min_stock: int, safety_threshold: int | None) -> int:
    return safety_threshold if safety_threshold is not None else min_stock


def effective_reorder_threshold(min_stock: int, reorder_threshold: int | None) -> int:
    # round() Python arrondit au pair (2.5 -> 2) : on veut l'arrondi commercial
    return reorder_threshold if reorder_threshold is not None else math.floor(min_stock * 1.5 + 0.5)


def compute_stock_state(
    stock: int,
    min_stock: int,
    safety_threshold: int | None,
    reorder_threshold: int | None,
    criticality: Criticality,
    used_in_active_recipe: bool,
) -> StockState:
    safety = effective_safety_threshold(min_stock, safety_threshold)
    reorder = effective_reorder_threshold(min_stock, reorder_threshold)
    bloquante = criticality == Criticality.bloquante

    if stock <= 0:
        if used_in_active_recipe or bloquante:
            return StockState.bloquant_production
        return StockState.rupture
    if stock <= reorder:
        if bloquante and stock < safety:
            return StockState.bloquant_production
        return StockState.a_commander
    if stock <= safety:
        return StockState.sous_seuil
    return StockState.sain


def effective_criticality(param: Criticality, active_recipe_count: int) -> Criticality:
    """Max entre le paramétrage et l'usage en recettes (3+ -> BLOQUANTE, 2 -> HAUTE, 1 -> MOYENNE)."""
    if active_recipe_count >= 3:
        from_recipes = Criticality.bloquante
    elif active_recipe_count == 2:
        from_recipes = Criticality.haute
    elif active_recipe_count == 1:
        from_recipes = Criticality.moyenne
    else:
        from_recipes = Criticality.faible
    return max(param, from_recipes, key=CRITICALITY_ORDER.index)


def compute_irs(bloquants: int, ruptures: int, sous_seuil: int, total_mp: int) -> tuple[int, IrsStatus]:
    if total_mp == 0:
        return 0, IrsStatus.sain
    score = max(0, min(100, bloquants * 30 + ruptures * 20 + sous_seuil * 10))
    if score <= 30:
        status = IrsStatus.sain
    elif score <= 60:
        status = IrsStatus.surveillance
    else:
        status = IrsStatus.critique
    return score, status


def coverage_days(stock: int, avg_daily_consumption: Decimal | None) -> float | None:
    if not avg_daily_consumption or avg_daily_consumption <= 0:
        return None
    return round(float(Decimal(stock) / Decimal(avg_daily_consumption)), 1)


# ---------- Lecture ----------
def _recipe_usage(db: Session) -> dict[int, list[str]]:
    rows = db.execute(
        select(RecipeItem.product_mp_id, Recipe.name)
        .join(Recipe, Recipe.id == RecipeItem.recipe_id)
        .where(Recipe.is_active.is_(True))
    ).all()
    usage: dict[int, list[str]] = {}
    for mp_id, recipe_name in rows:
        usage.setdefault(int(mp_id), []).append(recipe_name)
    return usage


def mp_stock_overview(db: Session) -> list[dict]:
    """Une ligne par MP active suivie en stock : stock, état, criticité effective, couverture."""
    mps = db.execute(
        select(ProductMp)
        .where(ProductMp.is_active.is_(True))
        .where(ProductMp.is_stock_tracked.is_(True))
        .order_by(ProductMp.code.asc())
    ).scalars().all()
    stocks = current_stocks_mp(db, [mp.id for mp in mps])
    usage = _recipe_usage(db)

    overview = []
    for mp in mps:
        stock = stocks.get(mp.id, 0)
        recipes = usage.get(mp.id, [])
        overview.append(
            {
                "mp": mp,
                "stock": stock,
                "state": compute_stock_state(
                    stock, mp.min_stock, mp.safety_threshold, mp.reorder_threshold, mp.criticality, bool(recipes)
                ),
                "criticality": effective_criticality(mp.criticality, len(recipes)),
                "coverage_days": coverage_days(stock, mp.avg_daily_consumption),
                "recipes": recipes,
            }
        )
    return overview


def _critical_sort_key(row: dict):
    coverage = row["coverage_days"]
    return (
        row["state"] != StockState.bloquant_production,
        coverage is None,
        coverage if coverage is not None else 0,
        row["mp"].code,
    )


def critical_mp(db: Session) -> list[dict]:
    rows = [r for r in mp_stock_overview(db) if r["state"] != StockState.sain]
    return sorted(rows, key=_critical_sort_key)


def dashboard(db: Session) -> dict:
    overview = mp_stock_overview(db)
    counts = {state.value: 0 for state in StockState}
    for row in overview:
        counts[row["state"].value] += 1

    score, status = compute_irs(
        counts[StockState.bloquant_production.value],
        counts[StockState.rupture.value],
        counts[StockState.sous_seuil.value],
        len(overview),
    )

    open_alerts = db.execute(
        select(func.count())
        .select_from(Alert)
        .where(Alert.status == AlertStatus.open)
        .where(Alert.type.in_([AlertType.low_stock_mp, AlertType.stock_expiring]))
    ).scalar_one()
    pending_po = db.execute(
        select(func.count()).select_from(PurchaseOrder).where(PurchaseOrder.status.in_(PENDING_PO_STATUSES))
    ).scalar_one()

    critical = sorted(
        [r for r in overview if r["state"] in (StockState.bloquant_production, StockState.rupture)],
        key=_critical_sort_key,
    )
    return {
        "irs": {
            "score": score,
            "status": status,
            "details": {
                "bloquants": counts[StockState.bloquant_production.value],
                "ruptures": counts[StockState.rupture.value],
                "sous_seuil": counts[StockState.sous_seuil.value],
            },
        },
        "stock_stats": {**counts, "total": len(overview)},
        "critical_mp": critical[:5],
        "alertes_actives": int(open_alerts),
        "bc_en_attente": int(pending_po),
    }


# ---------- Suggestions ----------
def suggested_quantity(mp: ProductMp, stock: int) -> int:
    if mp.reorder_threshold is not None:
        qty = max(mp.reorder_threshold - stock, 0)
    elif mp.avg_daily_consumption and mp.avg_daily_consumption > 0:
        needed = math.ceil(Decimal(mp.avg_daily_consumption) * (mp.lead_time_days + SAFETY_MARGIN_DAYS))
        qty = max(needed - stock, 0)
    else:
        qty = max(mp.min_stock * 2 - stock, 0)
    if mp.reorder_quantity:
        qty = max(qty, mp.reorder_quantity)
    return qty


def suggestion_priority(
    state: StockState, criticality: Criticality, coverage: float | None, lead_time_days: int
) -> SuggestionPriority:
    if (
        state in (StockState.bloquant_production, StockState.rupture)
        or criticality == Criticality.bloquante
        or (coverage is not None and coverage < lead_time_days)
    ):
        return SuggestionPriority.critique
    if state == StockState.a_commander or criticality == Criticality.haute:
        return SuggestionPriority.elevee
    return SuggestionPriority.normale


STATE_LABELS = {
    StockState.bloquant_production: "Stock bloquant pour la production",
    StockState.rupture: "Rupture de stock",
    StockState.a_commander: "Seuil de commande atteint",
    StockState.sous_seuil: "Stock sous le seuil de sécurité",
}

PRIORITY_ORDER = [SuggestionPriority.critique, SuggestionPriority.elevee, SuggestionPriority.normale]


def suggested_requisitions(db: Session) -> list[dict]:
    suggestions = []
    for row in mp_stock_overview(db):
        if row["state"] == StockState.sain:
            continue
        mp = row["mp"]
        coverage = row["coverage_days"]
        justification = [STATE_LABELS[row["state"]]]
        if coverage is not None:
            justification.append(f"Couverture {coverage} j (délai fournisseur {mp.lead_time_days} j)")
        if row["criticality"] in (Criticality.haute, Criticality.bloquante):
            justification.append(f"Criticité {row['criticality'].value}")
        if row["recipes"]:
            justification.append(f"Utilisée dans {len(row['recipes'])} recette(s)")

        suggestions.append(
            {
                "mp": mp,
                "stock": row["stock"],
                "state": row["state"],
                "quantity": suggested_quantity(mp, row["stock"]),
                "priority": suggestion_priority(row["state"], row["criticality"], coverage, mp.lead_time_days),
                "justification": " ; ".join(justification),
                "impacted_recipes": row["recipes"],
                "supplier_id": mp.main_supplier_id,
            }
        )
    suggestions.sort(key=lambda s: (PRIORITY_ORDER.index(s["priority"]), s["mp"].code))
    return suggestions


# ---------- Paramétrage / métriques ----------
def update_mp_appro_params(
    db: Session,
    *,
    actor: User,
    mp_id: int,
    changes: dict,
) -> ProductMp:
    """
    changes : sous-ensemble de safety_threshold, reorder_threshold,
    reorder_quantity, lead_time_days, criticality, main_supplier_id.
    Invariant : seuil commande > seuil sécurité effectif.
    """
    mp = db.get(ProductMp, mp_id)
    if not mp:
        raise NotFoundError("ProductMp", mp_id)

    safety = changes.get("safety_threshold", mp.safety_threshold)
    reorder = changes.get("reorder_threshold", mp.reorder_threshold)
    if reorder is not None and reorder <= effective_safety_threshold(mp.min_stock, safety):
        raise BusinessRuleError(
            "Reorder threshold must be greater than the safety threshold",
            code="INVALID_THRESHOLDS",
            details={"safety_threshold": safety, "reorder_threshold": reorder},
        )

    before = {field: getattr(mp, field) for field in changes}
    for field, value in changes.items():
        setattr(mp, field, value)

    audit.record(
        db,
        actor=actor,
        action="MP_APPRO_PARAMS_UPDATED",
        entity_type="ProductMp",
        entity_id=mp.id,
        meta={
            "before": {k: getattr(v, "value", v) for k, v in before.items()},
            "after": {k: getattr(v, "value", v) for k, v in changes.items()},
        },
    )
    return mp


def update_mp_metrics(db: Session) -> int:
    """Consommation moyenne journalière = sorties MP des 30 derniers jours / 30."""
    since = utcnow() - timedelta(days=CONSUMPTION_WINDOW_DAYS)
    rows = db.execute(
        select(StockMovement.product_mp_id, func.coalesce(func.sum(StockMovement.quantity), 0))
        .where(StockMovement.product_type == ProductType.mp)
        .where(StockMovement.movement_type == MovementType.out)
        .where(StockMovement.is_deleted.is_(False))
        .where(StockMovement.created_at >= since)
        .group_by(StockMovement.product_mp_id)
    ).all()
    consumed = {int(pid): int(qty) for pid, qty in rows}

    now = utcnow()
    mps = db.execute(select(ProductMp).where(ProductMp.is_active.is_(True))).scalars().all()
    for mp in mps:
        avg = Decimal(consumed.get(mp.id, 0)) / Decimal(CONSUMPTION_WINDOW_DAYS)
        mp.avg_daily_consumption = avg.quantize(Decimal("0.001"))
        mp.metrics_updated_at = now
    logger.info("Consumption metrics refreshed for %d MP", len(mps))
    return len(mps)


# ---------- Production ----------
def check_recipe_stock(db: Session, *, recipe: Recipe, batch_count: int) -> dict:
    """
    Besoin par MP = ceil(quantité par batch * batches), comparé au stock des lots
    disponibles (ce que la consommation FIFO pourra réellement prélever).
    """
    lot_stock = available_lot_stock_mp(db)
    blockers, warnings, requirements = [], [], []
    for item in recipe.items:
        if not item.affects_stock:
            continue
        required = math.ceil(Decimal(item.quantity) * batch_count)
        available = lot_stock.get(item.product_mp_id, 0)
        entry = {
            "product_mp_id": item.product_mp_id,
            "code": item.product_mp.code,
            "name": item.product_mp.name,
            "required": required,
            "available": available,
            "shortage": max(required - available, 0),
            "is_mandatory": item.is_mandatory,
        }
        requirements.append(entry)
        if entry["shortage"] > 0:
            (blockers if item.is_mandatory else warnings).append(entry)
    return {"can_start": not blockers, "blockers": blockers, "warnings": warnings, "requirements": requirements}


def can_start_production(db: Session, *, recipe_id: int, batch_count: int) -> dict:
    """Vérifie le stock d'une recette ; ouvre une alerte PRODUCTION_BLOQUEE si bloqué."""
    recipe = db.get(Recipe, recipe_id)
    if not recipe:
        raise NotFoundError("Recipe", recipe_id)
    if batch_count <= 0:
        raise BusinessRuleError("Batch count must be positive", code="INVALID_QUANTITY")

    result = check_recipe_stock(db, recipe=recipe, batch_count=batch_count)
    if result["blockers"]:
        alerts.upsert_alert(
            db,
            type=AlertType.production_bloquee,
            severity=AlertSeverity.critical,
            entity_type="Recipe",
            entity_id=recipe.id,
            title=f"Production bloquée : {recipe.name}",
            message=", ".join(f"{b['code']} manque {b['shortage']}" for b in result["blockers"]),
            meta={"batch_count": batch_count, "blockers": [b["code"] for b in result["blockers"]]},
            expires_at=utcnow() + timedelta(days=1),
        )
        logger.warning("Production of recipe %s blocked (%d MP short)", recipe.name, len(result["blockers"]))
    return result
