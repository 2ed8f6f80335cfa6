from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from manchengo.app.api.deps import cursor_params, get_current_user, get_db, require_roles
from manchengo.app.db.models.models_v1 import Alert, User
from manchengo.app.db.models.core_types import AlertSeverity, AlertStatus, AlertType, Role
from manchengo.app.schemas.common import serializer
from manchengo.app.schemas.operations import AlertDetail, AlertRead
from manchengo.services import alerts
from manchengo.services.pagination import CursorPageRequest

router = APIRouter(prefix="/alerts")


class AlertNoteIn(BaseModel):
    note: str | None = None


@router.get("")
def list_alerts(
    params: CursorPageRequest = Depends(cursor_params),
    type: AlertType | None = None,
    severity: AlertSeverity | None = None,
    status: AlertStatus | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    result = alerts.list_alerts(db, request=params, type=type, severity=severity, status=status)
    return {
        **result["page"].to_dict(serializer(AlertRead)),
        "open_count": result["open_count"],
        "critical_count": result["critical_count"],
    }


@router.get("/{alert_id}", response_model=AlertDetail)
def get_alert(alert_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    alert = db.get(Alert, alert_id)
    if not alert:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert


@router.post("/{alert_id}/acknowledge", response_model=AlertDetail)
def acknowledge_alert(
    alert_id: int,
    payload: AlertNoteIn | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro, Role.production)),
):
    alert = alerts.acknowledge_alert(db, actor=user, alert_id=alert_id, note=payload.note if payload else None)
    db.commit()
    db.refresh(alert)
    return alert


@router.post("/{alert_id}/close", response_model=AlertDetail)
def close_alert(
    alert_id: int,
    payload: AlertNoteIn | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro, Role.production)),
):
    alert = alerts.close_alert(db, actor=user, alert_id=alert_id, note=payload.note if payload else None)
    db.commit()
    db.refresh(alert)
    return alert


@router.post("/run-checks")
def run_alert_checks(db: Session = Depends(get_db), user: User = Depends(require_roles())):
    summary = alerts.run_checks(db)
    db.commit()
    return summary
