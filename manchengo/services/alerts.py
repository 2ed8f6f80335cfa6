"""
Monitoring : alertes métier.

`run_checks` est appelé périodiquement (voir manchengo.app.monitoring) :
il relit la base, ouvre ou met à jour une alerte par anomalie détectée,
puis ferme automatiquement les alertes dont la condition a disparu ou
dont la date d'expiration est passée.

Une seule alerte active (OPEN / ACKNOWLEDGED) par (type, entité) : on met
à jour l'existante plutôt que d'en créer une nouvelle à chaque passage.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from manchengo.app.db.models.models_v1 import Alert, AlertHistory, LotMp, ProductMp, ProductPf, User
from manchengo.app.db.models.core_types import (
    AlertHistoryAction,
    AlertSeverity,
    AlertStatus,
    AlertType,
    LotStatus,
)
from manchengo.app.settings import ALERT_STOCK_EXPIRY_DAYS, PO_LATE_CRITICAL_DAYS
from manchengo.services.clock import as_utc, utcnow
from manchengo.services.errors import BusinessRuleError, NotFoundError
from manchengo.services.inventory import available_lot_stock_mp, available_lot_stock_pf
from manchengo.services.pagination import CursorPageRequest, paginate_alerts
from manchengo.services.procurement import late_purchase_orders

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (AlertStatus.open, AlertStatus.acknowledged)

# Types dont la condition est réévaluée à chaque passage (fermeture auto si résolue)
CONDITION_TYPES = (
    AlertType.low_stock_mp,
    AlertType.low_stock_pf,
    AlertType.stock_expiring,
    AlertType.po_late,
)


@dataclass
class CheckSummary:
    created: int = 0
    updated: int = 0
    closed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


# ---------- Écriture ----------
def _history(db: Session, alert: Alert, action: AlertHistoryAction, *, user: User | None = None, note: str | None = None):
    db.add(AlertHistory(alert_id=alert.id, action=action, user_id=user.id if user else None, note=note))


def find_active(db: Session, *, type: AlertType, entity_type: str, entity_id: Any) -> Alert | None:
    return db.execute(
        select(Alert)
        .where(Alert.type == type)
        .where(Alert.entity_type == entity_type)
        .where(Alert.entity_id == str(entity_id))
        .where(Alert.status.in_(ACTIVE_STATUSES))
        .order_by(Alert.id.desc())
    ).scalars().first()


def upsert_alert(
    db: Session,
    *,
    type: AlertType,
    severity: AlertSeverity,
    entity_type: str,
    entity_id: Any,
    title: str,
    message: str,
    value: Decimal | int | None = None,
    threshold: Decimal | int | None = None,
    meta: dict | None = None,
    expires_at: datetime | None = None,
) -> tuple[Alert, bool]:
    """Retourne (alerte, created)."""
    alert = find_active(db, type=type, entity_type=entity_type, entity_id=entity_id)
    if alert is not None:
        alert.title = title
        alert.message = message
        alert.value = value
        alert.threshold = threshold
        alert.meta = meta or {}
        alert.expires_at = expires_at
        if alert.severity != severity:
            _history(db, alert, AlertHistoryAction.updated, note=f"{alert.severity.value} -> {severity.value}")
            alert.severity = severity
        alert.updated_at = utcnow()
        db.flush()
        return alert, False

    alert = Alert(
        type=type,
        severity=severity,
        status=AlertStatus.open,
        entity_type=entity_type,
        entity_id=str(entity_id),
        title=title,
        message=message,
        value=value,
        threshold=threshold,
        meta=meta or {},
        expires_at=expires_at,
    )
    db.add(alert)
    db.flush()
    _history(db, alert, AlertHistoryAction.created)
    db.flush()
    logger.info("Alert %s opened for %s %s (%s)", type.value, entity_type, entity_id, severity.value)
    return alert, True


def _close(db: Session, alert: Alert, action: AlertHistoryAction, *, user: User | None = None, note: str | None = None):
    alert.status = AlertStatus.closed
    alert.closed_at = utcnow()
    alert.closed_by = user.id if user else None
    _history(db, alert, action, user=user, note=note)


def acknowledge_alert(db: Session, *, actor: User, alert_id: int, note: str | None = None) -> Alert:
    alert = db.get(Alert, alert_id)
    if not alert:
        raise NotFoundError("Alert", alert_id)
    if alert.status != AlertStatus.open:
        raise BusinessRuleError(
            f"Alert {alert.id} is {alert.status.value}, only OPEN alerts can be acknowledged",
            code="ALERT_NOT_OPEN",
        )
    alert.status = AlertStatus.acknowledged
    alert.acknowledged_by = actor.id
    alert.acknowledged_at = utcnow()
    _history(db, alert, AlertHistoryAction.acknowledged, user=actor, note=note)
    db.flush()
    return alert


def close_alert(db: Session, *, actor: User, alert_id: int, note: str | None = None) -> Alert:
    alert = db.get(Alert, alert_id)
    if not alert:
        raise NotFoundError("Alert", alert_id)
    if alert.status == AlertStatus.closed:
        raise BusinessRuleError(f"Alert {alert.id} is already closed", code="ALERT_CLOSED")
    _close(db, alert, AlertHistoryAction.closed, user=actor, note=note)
    db.flush()
    return alert


# ---------- Lecture ----------
def list_alerts(
    db: Session,
    *,
    request: CursorPageRequest,
    type: AlertType | None = None,
    severity: AlertSeverity | None = None,
    status: AlertStatus | None = None,
) -> dict:
    page = paginate_alerts(db, request, type=type, severity=severity, status=status)
    open_count = db.execute(
        select(func.count()).select_from(Alert).where(Alert.status == AlertStatus.open)
    ).scalar_one()
    critical_count = db.execute(
        select(func.count())
        .select_from(Alert)
        .where(Alert.status == AlertStatus.open)
        .where(Alert.severity == AlertSeverity.critical)
    ).scalar_one()
    return {"page": page, "open_count": int(open_count), "critical_count": int(critical_count)}


# ---------- Checks ----------
def _apply(db: Session, summary: CheckSummary, active: set, **kwargs) -> None:
    _, created = upsert_alert(db, **kwargs)
    active.add((kwargs["type"], kwargs["entity_type"], str(kwargs["entity_id"])))
    if created:
        summary.created += 1
    else:
        summary.updated += 1


def _low_stock_severity(qty: int) -> AlertSeverity:
    return AlertSeverity.critical if qty <= 0 else AlertSeverity.warning


def check_low_stock_mp(db: Session, summary: CheckSummary, active: set) -> None:
    stock = available_lot_stock_mp(db)
    mps = db.execute(
        select(ProductMp)
        .where(ProductMp.is_active.is_(True))
        .where(ProductMp.is_stock_tracked.is_(True))
    ).scalars().all()
    for mp in mps:
        qty = stock.get(mp.id, 0)
        if qty > mp.min_stock:
            continue
        _apply(
            db, summary, active,
            type=AlertType.low_stock_mp,
            severity=_low_stock_severity(qty),
            entity_type="ProductMp",
            entity_id=mp.id,
            title=f"Stock bas MP {mp.code}",
            message=f"{mp.name} : {qty} {mp.unit} en stock (minimum {mp.min_stock})",
            value=qty,
            threshold=mp.min_stock,
            meta={"code": mp.code},
        )


def check_low_stock_pf(db: Session, summary: CheckSummary, active: set) -> None:
    stock = available_lot_stock_pf(db)
    pfs = db.execute(
        select(ProductPf).where(ProductPf.is_active.is_(True))
    ).scalars().all()
    for pf in pfs:
        qty = stock.get(pf.id, 0)
        if qty > pf.min_stock:
            continue
        _apply(
            db, summary, active,
            type=AlertType.low_stock_pf,
            severity=_low_stock_severity(qty),
            entity_type="ProductPf",
            entity_id=pf.id,
            title=f"Stock bas PF {pf.code}",
            message=f"{pf.name} : {qty} {pf.unit} en stock (minimum {pf.min_stock})",
            value=qty,
            threshold=pf.min_stock,
            meta={"code": pf.code},
        )


def check_expiring_lots(db: Session, summary: CheckSummary, active: set, *, now: datetime) -> None:
    today = now.date()
    horizon = today + timedelta(days=ALERT_STOCK_EXPIRY_DAYS)
    lots = db.execute(
        select(LotMp)
        .where(LotMp.status == LotStatus.available)
        .where(LotMp.quantity_remaining > 0)
        .where(LotMp.expiry_date.is_not(None))
        .where(LotMp.expiry_date <= horizon)
    ).scalars().all()
    for lot in lots:
        days_left = (lot.expiry_date - today).days
        _apply(
            db, summary, active,
            type=AlertType.stock_expiring,
            severity=AlertSeverity.critical if days_left < 0 else AlertSeverity.warning,
            entity_type="LotMp",
            entity_id=lot.id,
            title=f"Lot {lot.lot_number} proche de la DLC",
            message=(
                f"Lot {lot.lot_number} expiré depuis {-days_left} j"
                if days_left < 0
                else f"Lot {lot.lot_number} expire dans {days_left} j"
            ),
            value=lot.quantity_remaining,
            meta={"expiry_date": lot.expiry_date.isoformat(), "days_left": days_left},
        )


def check_late_purchase_orders(db: Session, summary: CheckSummary, active: set, *, now: datetime) -> None:
    for row in late_purchase_orders(db, critical_days=PO_LATE_CRITICAL_DAYS, on=now.date()):
        po = row["purchase_order"]
        _apply(
            db, summary, active,
            type=AlertType.po_late,
            severity=AlertSeverity.critical if row["is_critical"] else AlertSeverity.warning,
            entity_type="PurchaseOrder",
            entity_id=po.id,
            title=f"BC {po.reference} en retard",
            message=f"Livraison attendue le {po.expected_delivery:%d/%m/%Y}, {row['days_late']} j de retard",
            value=row["days_late"],
            threshold=PO_LATE_CRITICAL_DAYS,
            meta={"impact_level": row["impact_level"], "reference": po.reference},
        )


def _close_resolved(db: Session, summary: CheckSummary, active: set) -> None:
    alerts = db.execute(
        select(Alert).where(Alert.type.in_(CONDITION_TYPES)).where(Alert.status.in_(ACTIVE_STATUSES))
    ).scalars().all()
    for alert in alerts:
        if (alert.type, alert.entity_type, alert.entity_id) not in active:
            _close(db, alert, AlertHistoryAction.auto_closed, note="Condition résolue")
            summary.closed += 1


def _close_expired(db: Session, summary: CheckSummary, *, now: datetime) -> None:
    alerts = db.execute(
        select(Alert).where(Alert.status.in_(ACTIVE_STATUSES)).where(Alert.expires_at.is_not(None))
    ).scalars().all()
    for alert in alerts:
        if as_utc(alert.expires_at) <= now:
            _close(db, alert, AlertHistoryAction.auto_closed, note="Alerte expirée")
            summary.closed += 1


def run_checks(db: Session, *, now: datetime | None = None) -> dict[str, int]:
    """Un passage complet du monitoring, dans la transaction de l'appelant (pas de commit)."""
    now = now or utcnow()
    summary = CheckSummary()
    active: set = set()

    check_low_stock_mp(db, summary, active)
    check_low_stock_pf(db, summary, active)
    check_expiring_lots(db, summary, active, now=now)
    check_late_purchase_orders(db, summary, active, now=now)
    db.flush()

    _close_resolved(db, summary, active)
    db.flush()
    _close_expired(db, summary, now=now)
    db.flush()

    logger.info(
        "Alert checks done: %d created, %d updated, %d closed",
        summary.created, summary.updated, summary.closed,
    )
    return summary.to_dict()
