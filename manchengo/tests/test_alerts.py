from datetime import timedelta

import pytest
from sqlalchemy import select

from manchengo.app.db.models.models_v1 import Alert, AlertHistory
from manchengo.app.db.models.core_types import (
    AlertHistoryAction,
    AlertSeverity,
    AlertStatus,
    AlertType,
    Role,
    SendVia,
)
from manchengo.services import alerts, procurement
from manchengo.services.clock import today, utcnow
from manchengo.services.errors import BusinessRuleError
from manchengo.services.pagination import CursorPageRequest


def _alerts(db, type=None):
    stmt = select(Alert).order_by(Alert.id)
    if type is not None:
        stmt = stmt.where(Alert.type == type)
    return db.execute(stmt).scalars().all()


def _history(db, alert):
    return db.execute(
        select(AlertHistory.action).where(AlertHistory.alert_id == alert.id).order_by(AlertHistory.id)
    ).scalars().all()


def test_low_stock_alerts_are_created_updated_then_closed(db_session, make):
    """
    GIVEN
    - lait : min 10, 4 en lot -> WARNING
    - sel : min 10, rien -> CRITICAL
    - film : min 10, 60 en lot -> aucune alerte

    THEN
    - 1er passage : 2 créées
    - 2e passage : 2 mises à jour, toujours 2 alertes
    - lait réapprovisionné : son alerte est fermée automatiquement
    """
    actor = make.user(Role.appro)
    lait = make.mp(code="MP-LAIT", min_stock=10)
    sel = make.mp(code="MP-SEL", min_stock=10)
    film = make.mp(code="MP-FILM", min_stock=10)
    make.stock(lait, 4, actor=actor)
    make.stock(film, 60, actor=actor)

    # ---------- ACT 1 ----------
    first = alerts.run_checks(db_session)

    # ---------- ASSERT 1 ----------
    assert first == {"created": 2, "updated": 0, "closed": 0}
    by_entity = {a.entity_id: a for a in _alerts(db_session, AlertType.low_stock_mp)}
    assert by_entity[str(lait.id)].severity == AlertSeverity.warning
    assert by_entity[str(lait.id)].value == 4
    assert by_entity[str(sel.id)].severity == AlertSeverity.critical

    # ---------- ACT 2 ----------
    second = alerts.run_checks(db_session)
    assert second == {"created": 0, "updated": 2, "closed": 0}
    assert len(_alerts(db_session)) == 2

    # ---------- ACT 3 ----------
    make.stock(lait, 50, actor=actor)
    third = alerts.run_checks(db_session)

    # ---------- ASSERT 3 ----------
    assert third == {"created": 0, "updated": 1, "closed": 1}
    lait_alert = by_entity[str(lait.id)]
    assert lait_alert.status == AlertStatus.closed
    assert lait_alert.closed_by is None
    assert _history(db_session, lait_alert) == [AlertHistoryAction.created, AlertHistoryAction.auto_closed]


def test_low_stock_pf(db_session, make):
    pf = make.pf(code="PF-MANCH", min_stock=5)

    alerts.run_checks(db_session)

    (alert,) = _alerts(db_session, AlertType.low_stock_pf)
    assert (alert.entity_type, alert.entity_id) == ("ProductPf", str(pf.id))
    assert alert.severity == AlertSeverity.critical


def test_zero_minimum_still_raises_critical_when_empty(db_session, make):
    """
    GIVEN
    - présure sans minimum (0) et sans lot
    - film sans minimum, 3 en lot

    THEN
    - une seule alerte : CRITICAL sur la présure, pas de bande WARNING à 0
    """
    actor = make.user(Role.appro)
    presure = make.mp(code="MP-PRES", min_stock=0)
    film = make.mp(code="MP-FILM", min_stock=0)
    make.stock(film, 3, actor=actor)

    summary = alerts.run_checks(db_session)

    assert summary == {"created": 1, "updated": 0, "closed": 0}
    (alert,) = _alerts(db_session, AlertType.low_stock_mp)
    assert alert.entity_id == str(presure.id)
    assert alert.severity == AlertSeverity.critical
    assert alert.threshold == 0


def test_severity_change_is_tracked(db_session, make):
    actor = make.user(Role.appro)
    lait = make.mp(min_stock=10)
    alerts.run_checks(db_session)

    make.stock(lait, 3, actor=actor)
    alerts.run_checks(db_session)

    (alert,) = _alerts(db_session)
    assert alert.severity == AlertSeverity.warning
    assert alert.status == AlertStatus.open
    assert _history(db_session, alert) == [AlertHistoryAction.created, AlertHistoryAction.updated]


def test_expiring_and_expired_lots(db_session, make):
    """
    GIVEN
    - un lot qui expire dans 3 j, un lot expiré depuis 2 j, un lot à 30 j

    THEN
    - 2 alertes STOCK_EXPIRING : WARNING et CRITICAL
    """
    actor = make.user(Role.appro)
    mp = make.mp(min_stock=0)
    soon = make.stock(mp, 5, actor=actor, expiry_date=today() + timedelta(days=3))
    past = make.stock(mp, 5, actor=actor, expiry_date=today() - timedelta(days=2))
    make.stock(mp, 5, actor=actor, expiry_date=today() + timedelta(days=30))

    summary = alerts.run_checks(db_session)

    assert summary["created"] == 2
    by_lot = {a.entity_id: a for a in _alerts(db_session, AlertType.stock_expiring)}
    assert set(by_lot) == {str(soon), str(past)}
    assert by_lot[str(soon)].severity == AlertSeverity.warning
    assert by_lot[str(soon)].meta["days_left"] == 3
    assert by_lot[str(past)].severity == AlertSeverity.critical


def test_late_purchase_order_alert(db_session, make):
    appro_user = make.user(Role.appro)
    supplier = make.supplier()
    mp = make.mp(min_stock=0)
    po = procurement.create_direct(
        db_session,
        actor=appro_user,
        supplier_id=supplier.id,
        lines=[{"product_mp_id": mp.id, "quantity": 10, "unit_price": 5}],
        expected_delivery=today() - timedelta(days=5),
    )
    procurement.send(db_session, actor=appro_user, po_id=po.id, send_via=SendVia.email)

    alerts.run_checks(db_session)

    (alert,) = _alerts(db_session, AlertType.po_late)
    assert alert.entity_id == str(po.id)
    assert alert.severity == AlertSeverity.critical
    assert alert.meta["reference"] == po.reference


def test_acknowledge_then_close(db_session, make):
    actor = make.user(Role.appro)
    make.mp(min_stock=10)
    alerts.run_checks(db_session)
    (alert,) = _alerts(db_session)

    alerts.acknowledge_alert(db_session, actor=actor, alert_id=alert.id, note="Commande en cours")
    assert alert.status == AlertStatus.acknowledged
    assert alert.acknowledged_by == actor.id

    with pytest.raises(BusinessRuleError) as exc:
        alerts.acknowledge_alert(db_session, actor=actor, alert_id=alert.id)
    assert exc.value.code == "ALERT_NOT_OPEN"

    # un passage ne rouvre pas et ne duplique pas une alerte acquittée
    alerts.run_checks(db_session)
    assert len(_alerts(db_session)) == 1
    assert alert.status == AlertStatus.acknowledged

    alerts.close_alert(db_session, actor=actor, alert_id=alert.id)
    assert alert.status == AlertStatus.closed
    assert alert.closed_by == actor.id

    with pytest.raises(BusinessRuleError) as exc:
        alerts.close_alert(db_session, actor=actor, alert_id=alert.id)
    assert exc.value.code == "ALERT_CLOSED"


def test_closed_condition_reopens_as_new_alert(db_session, make):
    actor = make.user(Role.appro)
    make.mp(min_stock=10)
    alerts.run_checks(db_session)
    (first,) = _alerts(db_session)
    alerts.close_alert(db_session, actor=actor, alert_id=first.id)

    summary = alerts.run_checks(db_session)

    assert summary["created"] == 1
    assert len(_alerts(db_session)) == 2


def test_expired_alert_is_auto_closed(db_session, make):
    alert, created = alerts.upsert_alert(
        db_session,
        type=AlertType.production_bloquee,
        severity=AlertSeverity.critical,
        entity_type="Recipe",
        entity_id=1,
        title="Production bloquée",
        message="MP-LAIT manque 10",
        expires_at=utcnow() + timedelta(hours=1),
    )
    assert created is True

    assert alerts.run_checks(db_session) == {"created": 0, "updated": 0, "closed": 0}
    summary = alerts.run_checks(db_session, now=utcnow() + timedelta(hours=2))

    assert summary["closed"] == 1
    assert alert.status == AlertStatus.closed


def test_list_alerts_counts(db_session, make):
    actor = make.user(Role.appro)
    make.mp(min_stock=10)
    lait = make.mp(min_stock=10)
    make.stock(lait, 2, actor=actor)
    alerts.run_checks(db_session)
    before = alerts.list_alerts(db_session, request=CursorPageRequest())
    assert (before["open_count"], before["critical_count"]) == (2, 1)

    # une alerte critique acquittée ne compte plus parmi les critiques ouvertes
    critical = next(a for a in _alerts(db_session) if a.severity == AlertSeverity.critical)
    alerts.acknowledge_alert(db_session, actor=actor, alert_id=critical.id)

    result = alerts.list_alerts(db_session, request=CursorPageRequest())

    assert len(result["page"].data) == 2
    assert result["open_count"] == 1
    assert result["critical_count"] == 0

    only_open = alerts.list_alerts(db_session, request=CursorPageRequest(), status=AlertStatus.open)
    assert [a.severity for a in only_open["page"].data] == [AlertSeverity.warning]
