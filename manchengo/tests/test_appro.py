from decimal import Decimal

import pytest
from sqlalchemy import select

from manchengo.app.db.models.models_v1 import Alert, AuditLog
from manchengo.app.db.models.core_types import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    Criticality,
    IrsStatus,
    Role,
    StockState,
    SuggestionPriority,
)
from manchengo.services import appro, inventory
from manchengo.services.errors import BusinessRuleError


# ---------- Règles pures ----------
def test_default_reorder_threshold_rounds_half_up():
    assert appro.effective_reorder_threshold(5, None) == 8
    assert appro.effective_reorder_threshold(10, None) == 15
    assert appro.effective_reorder_threshold(10, 12) == 12
    assert appro.effective_safety_threshold(10, None) == 10
    assert appro.effective_safety_threshold(10, 4) == 4


@pytest.mark.parametrize(
    "stock, criticality, in_recipe, expected",
    [
        (0, Criticality.moyenne, False, StockState.rupture),
        (0, Criticality.moyenne, True, StockState.bloquant_production),
        (-3, Criticality.bloquante, False, StockState.bloquant_production),
        (12, Criticality.moyenne, False, StockState.a_commander),
        (15, Criticality.moyenne, False, StockState.a_commander),
        (9, Criticality.bloquante, False, StockState.bloquant_production),
        (12, Criticality.bloquante, False, StockState.a_commander),
        (16, Criticality.faible, False, StockState.sain),
    ],
)
def test_stock_state(stock, criticality, in_recipe, expected):
    # min_stock 10 : sécurité 10, commande 15
    assert appro.compute_stock_state(stock, 10, None, None, criticality, in_recipe) == expected


def test_stock_state_under_safety_only():
    # seuil commande explicite sous le seuil sécurité
    assert appro.compute_stock_state(9, 10, 10, 5, Criticality.moyenne, False) == StockState.sous_seuil


@pytest.mark.parametrize(
    "param, count, expected",
    [
        (Criticality.faible, 0, Criticality.faible),
        (Criticality.faible, 1, Criticality.moyenne),
        (Criticality.faible, 2, Criticality.haute),
        (Criticality.moyenne, 3, Criticality.bloquante),
        (Criticality.haute, 1, Criticality.haute),
    ],
)
def test_effective_criticality(param, count, expected):
    assert appro.effective_criticality(param, count) == expected


def test_irs_score_and_status():
    assert appro.compute_irs(0, 0, 0, 0) == (0, IrsStatus.sain)
    assert appro.compute_irs(1, 0, 0, 10) == (30, IrsStatus.sain)
    assert appro.compute_irs(1, 1, 1, 10) == (60, IrsStatus.surveillance)
    assert appro.compute_irs(2, 1, 0, 10) == (80, IrsStatus.critique)
    assert appro.compute_irs(5, 5, 5, 10) == (100, IrsStatus.critique)


def test_coverage_days():
    assert appro.coverage_days(30, Decimal("4")) == 7.5
    assert appro.coverage_days(30, Decimal("0")) is None
    assert appro.coverage_days(30, None) is None


# ---------- Vue stock ----------
def test_dashboard_counts_states_and_irs(db_session, make):
    """
    GIVEN
    - lait (en recette, stock 0) -> BLOQUANT_PRODUCTION
    - sel (stock 0, hors recette) -> RUPTURE
    - film (stock 50, min 10) -> SAIN

    THEN
    - IRS = 30 + 20 = 50 (SURVEILLANCE), 2 MP critiques listées
    """
    actor = make.user(Role.appro)
    lait = make.mp(code="MP-LAIT")
    make.mp(code="MP-SEL")
    film = make.mp(code="MP-FILM")
    make.recipe(make.pf(), [(lait, 10, True)])
    make.stock(film, 50, actor=actor)

    board = appro.dashboard(db_session)

    assert board["irs"]["score"] == 50
    assert board["irs"]["status"] == IrsStatus.surveillance
    assert board["irs"]["details"] == {"bloquants": 1, "ruptures": 1, "sous_seuil": 0}
    assert board["stock_stats"]["sain"] == 1
    assert board["stock_stats"]["total"] == 3
    assert [row["mp"].code for row in board["critical_mp"]] == ["MP-LAIT", "MP-SEL"]
    assert board["bc_en_attente"] == 0


def test_overview_uses_recipe_usage_for_criticality(db_session, make):
    lait = make.mp(code="MP-LAIT", criticality=Criticality.faible)
    make.recipe(make.pf(), [(lait, 1, True)])
    make.recipe(make.pf(), [(lait, 2, True)])

    (row,) = appro.mp_stock_overview(db_session)

    assert row["criticality"] == Criticality.haute
    assert len(row["recipes"]) == 2


def test_critical_mp_excludes_healthy(db_session, make):
    actor = make.user(Role.appro)
    ok = make.mp(code="MP-OK")
    make.mp(code="MP-VIDE")
    make.stock(ok, 100, actor=actor)

    assert [row["mp"].code for row in appro.critical_mp(db_session)] == ["MP-VIDE"]


# ---------- Suggestions ----------
def test_suggested_quantity_rules(make):
    with_threshold = make.mp(min_stock=10, reorder_threshold=40)
    with_consumption = make.mp(min_stock=10, avg_daily_consumption=Decimal("2.5"), lead_time_days=5)
    bare = make.mp(min_stock=10)
    with_floor = make.mp(min_stock=10, reorder_threshold=40, reorder_quantity=100)

    assert appro.suggested_quantity(with_threshold, 15) == 25
    # ceil(2.5 * (5 + 7)) = 30
    assert appro.suggested_quantity(with_consumption, 12) == 18
    assert appro.suggested_quantity(bare, 4) == 16
    assert appro.suggested_quantity(with_floor, 15) == 100


def test_suggestion_priority():
    assert appro.suggestion_priority(StockState.rupture, Criticality.faible, None, 7) == SuggestionPriority.critique
    assert appro.suggestion_priority(StockState.a_commander, Criticality.faible, 3.0, 7) == SuggestionPriority.critique
    assert appro.suggestion_priority(StockState.a_commander, Criticality.faible, None, 7) == SuggestionPriority.elevee
    assert appro.suggestion_priority(StockState.sous_seuil, Criticality.moyenne, 20.0, 7) == SuggestionPriority.normale


def test_suggested_requisitions_sorted_by_priority(db_session, make):
    actor = make.user(Role.appro)
    supplier = make.supplier()
    lait = make.mp(code="MP-LAIT", main_supplier_id=supplier.id)
    make.mp(code="MP-SEL")
    make.stock(lait, 12, actor=actor)

    suggestions = appro.suggested_requisitions(db_session)

    assert [(s["mp"].code, s["priority"]) for s in suggestions] == [
        ("MP-SEL", SuggestionPriority.critique),
        ("MP-LAIT", SuggestionPriority.elevee),
    ]
    lait_row = suggestions[1]
    assert lait_row["state"] == StockState.a_commander
    assert lait_row["quantity"] == 8
    assert lait_row["supplier_id"] == supplier.id
    assert "Seuil de commande atteint" in lait_row["justification"]
    assert suggestions[0]["supplier_id"] is None


# ---------- Paramétrage ----------
def test_update_params_rejects_reorder_below_safety(db_session, make):
    actor = make.user(Role.appro)
    mp = make.mp(min_stock=10)

    with pytest.raises(BusinessRuleError) as exc:
        appro.update_mp_appro_params(
            db_session, actor=actor, mp_id=mp.id, changes={"safety_threshold": 20, "reorder_threshold": 20}
        )
    assert exc.value.code == "INVALID_THRESHOLDS"

    appro.update_mp_appro_params(
        db_session,
        actor=actor,
        mp_id=mp.id,
        changes={"safety_threshold": 20, "reorder_threshold": 35, "criticality": Criticality.haute},
    )
    assert (mp.safety_threshold, mp.reorder_threshold, mp.criticality) == (20, 35, Criticality.haute)

    entry = db_session.execute(
        select(AuditLog).where(AuditLog.action == "MP_APPRO_PARAMS_UPDATED")
    ).scalar_one()
    assert entry.meta["after"]["criticality"] == "HAUTE"
    assert entry.meta["before"]["safety_threshold"] is None


def test_update_metrics_averages_thirty_days_of_outputs(db_session, make):
    actor = make.user(Role.production)
    mp = make.mp()
    make.stock(mp, 100, actor=actor)
    inventory.consume_fifo(db_session, product_mp_id=mp.id, quantity=45, actor=actor)

    count = appro.update_mp_metrics(db_session)

    assert count == 1
    assert mp.avg_daily_consumption == Decimal("1.500")
    assert mp.metrics_updated_at is not None


# ---------- Contrôle production ----------
def test_check_recipe_stock_splits_blockers_and_warnings(db_session, make):
    actor = make.user(Role.appro)
    lait = make.mp(code="MP-LAIT")
    film = make.mp(code="MP-FILM")
    make.stock(lait, 15, actor=actor)
    recipe = make.recipe(make.pf(), [(lait, "7.5", True), (film, 1, False)])

    ok = appro.check_recipe_stock(db_session, recipe=recipe, batch_count=2)
    short = appro.check_recipe_stock(db_session, recipe=recipe, batch_count=3)

    assert ok["can_start"] is True
    assert [w["code"] for w in ok["warnings"]] == ["MP-FILM"]
    assert short["can_start"] is False
    # ceil(7.5 * 3) = 23
    assert short["blockers"][0]["required"] == 23
    assert short["blockers"][0]["shortage"] == 8


def test_blocked_production_raises_a_single_critical_alert(db_session, make):
    lait = make.mp(code="MP-LAIT")
    recipe = make.recipe(make.pf(), [(lait, 10, True)])

    first = appro.can_start_production(db_session, recipe_id=recipe.id, batch_count=1)
    appro.can_start_production(db_session, recipe_id=recipe.id, batch_count=2)

    assert first["can_start"] is False
    (alert,) = db_session.execute(select(Alert)).scalars().all()
    assert alert.type == AlertType.production_bloquee
    assert alert.severity == AlertSeverity.critical
    assert alert.status == AlertStatus.open
    assert (alert.entity_type, alert.entity_id) == ("Recipe", str(recipe.id))
    assert alert.meta["batch_count"] == 2
    assert alert.expires_at is not None
