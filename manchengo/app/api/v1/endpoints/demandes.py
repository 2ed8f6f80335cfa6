from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from manchengo.app.api.deps import cursor_params, get_current_user, get_db, require_roles
from manchengo.app.db.models.models_v1 import DemandeAppro, User
from manchengo.app.db.models.core_types import DemandePriority, DemandeStatus, Role
from manchengo.app.schemas.common import serializer
from manchengo.app.schemas.procurement import DEMANDE_VALIDATION_FIELDS, DemandeRead, ReceptionRead
from manchengo.services import demandes
from manchengo.services.pagination import CursorPageRequest

router = APIRouter(prefix="/demandes")


class DemandeLineIn(BaseModel):
    product_mp_id: int
    quantite_demandee: int = Field(gt=0)
    commentaire: str | None = None


class DemandeCreate(BaseModel):
    priority: DemandePriority = DemandePriority.normale
    commentaire: str | None = None
    lines: list[DemandeLineIn] = Field(min_length=1)


class DemandeUpdate(BaseModel):
    priority: DemandePriority | None = None
    commentaire: str | None = None
    lines: list[DemandeLineIn] | None = None


class ValidateIn(BaseModel):
    # line_id -> quantité validée
    adjusted_quantities: dict[int, int] | None = None


class RejectIn(BaseModel):
    motif: str


def _exclude(user: User) -> set[str] | None:
    return DEMANDE_VALIDATION_FIELDS if demandes.hides_validation_fields(user) else None


def _dump(demande: DemandeAppro, user: User) -> dict:
    data = DemandeRead.model_validate(demande).model_dump(exclude=_exclude(user))
    data["available_actions"] = demandes.available_actions(demande, user.role)
    return data


@router.get("")
def list_demandes(
    params: CursorPageRequest = Depends(cursor_params),
    status: DemandeStatus | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    page = demandes.list_demandes(db, actor=user, request=params, status=status)
    return page.to_dict(serializer(DemandeRead, exclude=_exclude(user)))


@router.get("/stats")
def get_demande_stats(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return demandes.stats(db, actor=user)


@router.get("/{demande_id}")
def get_demande(demande_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _dump(demandes.get(db, actor=user, demande_id=demande_id), user)


@router.post("", status_code=201)
def create_demande(
    payload: DemandeCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.production)),
):
    demande = demandes.create(
        db,
        actor=user,
        lines=[ln.model_dump() for ln in payload.lines],
        priority=payload.priority,
        commentaire=payload.commentaire,
    )
    db.commit()
    db.refresh(demande)
    return _dump(demande, user)


@router.patch("/{demande_id}")
def update_demande(
    demande_id: int,
    payload: DemandeUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.production)),
):
    demande = demandes.update(
        db,
        actor=user,
        demande_id=demande_id,
        priority=payload.priority,
        commentaire=payload.commentaire,
        lines=[ln.model_dump() for ln in payload.lines] if payload.lines is not None else None,
    )
    db.commit()
    db.refresh(demande)
    return _dump(demande, user)


@router.delete("/{demande_id}", status_code=204)
def delete_demande(
    demande_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.production)),
):
    demandes.delete(db, actor=user, demande_id=demande_id)
    db.commit()


@router.post("/{demande_id}/submit")
def submit_demande(
    demande_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.production)),
):
    demande = demandes.submit(db, actor=user, demande_id=demande_id)
    db.commit()
    db.refresh(demande)
    return _dump(demande, user)


@router.post("/{demande_id}/validate")
def validate_demande(
    demande_id: int,
    payload: ValidateIn | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    demande = demandes.validate(
        db,
        actor=user,
        demande_id=demande_id,
        adjusted_quantities=payload.adjusted_quantities if payload else None,
    )
    db.commit()
    db.refresh(demande)
    return _dump(demande, user)


@router.post("/{demande_id}/reject")
def reject_demande(
    demande_id: int,
    payload: RejectIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    demande = demandes.reject(db, actor=user, demande_id=demande_id, motif=payload.motif)
    db.commit()
    db.refresh(demande)
    return _dump(demande, user)


@router.post("/{demande_id}/transform", status_code=201)
def transform_demande(
    demande_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.appro)),
):
    """Transforme une demande validée en réception brouillon."""
    reception = demandes.transform_to_reception(db, actor=user, demande_id=demande_id)
    db.commit()
    db.refresh(reception)
    return ReceptionRead.model_validate(reception).model_dump()
