from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from manchengo.app.api.deps import get_db, require_roles
from manchengo.app.db.models.models_v1 import ProductMp, User
from manchengo.app.db.models.core_types import Role
from manchengo.services import appro

router = APIRouter(prefix="/appro")


def _mp(mp: ProductMp) -> dict:
    return {
        "id": mp.id,
        "code": mp.code,
        "name": mp.name,
        "unit": mp.unit,
        "min_stock": mp.min_stock,
        "lead_time_days": mp.lead_time_days,
    }


def _overview_row(row: dict) -> dict:
    return {
        "mp": _mp(row["mp"]),
        "stock": row["stock"],
        "state": row["state"],
        "criticality": row["criticality"],
        "coverage_days": row["coverage_days"],
        "recipes": row["recipes"],
    }


@router.get("/dashboard")
def get_dashboard(db: Session = Depends(get_db), user: User = Depends(require_roles(Role.appro))):
    data = appro.dashboard(db)
    data["critical_mp"] = [_overview_row(r) for r in data["critical_mp"]]
    return data


@router.get("/critical-mp")
def list_critical_mp(db: Session = Depends(get_db), user: User = Depends(require_roles(Role.appro))):
    return [_overview_row(r) for r in appro.critical_mp(db)]


@router.get("/stock-mp")
def list_stock_mp_states(db: Session = Depends(get_db), user: User = Depends(require_roles(Role.appro))):
    return [_overview_row(r) for r in appro.mp_stock_overview(db)]


@router.get("/suggestions")
def list_suggestions(db: Session = Depends(get_db), user: User = Depends(require_roles(Role.appro))):
    return [{**s, "mp": _mp(s["mp"])} for s in appro.suggested_requisitions(db)]


@router.post("/metrics/refresh")
def refresh_metrics(db: Session = Depends(get_db), user: User = Depends(require_roles(Role.appro))):
    updated = appro.update_mp_metrics(db)
    db.commit()
    return {"updated": updated}
