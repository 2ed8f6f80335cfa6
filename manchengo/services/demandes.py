"""
Demandes d'approvisionnement MP.

Circuit : la production rédige (BROUILLON) et soumet, l'appro valide
(quantités éventuellement ajustées) ou rejette, puis la demande est
transformée en BC (procurement.generate_from_demande) ou en réception
brouillon (transform_to_reception).

Visibilité : un utilisateur PRODUCTION ne voit que ses propres demandes.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from manchengo.app.db.models.models_v1 import DemandeAppro, DemandeApproLine, ProductMp, ReceptionMp, User
from manchengo.app.db.models.core_types import DemandePriority, DemandeStatus, ReceptionSource, Role
from manchengo.services import audit
from manchengo.services.clock import today, utcnow
from manchengo.services.errors import BusinessRuleError, ConflictError, ForbiddenError, NotFoundError
from manchengo.services.inventory import create_reception
from manchengo.services.pagination import CursorPage, CursorPageRequest, paginate_demandes
from manchengo.services.references import next_reference
from manchengo.services.workflows import DEMANDE_WORKFLOW

logger = logging.getLogger(__name__)


def next_demande_reference(db: Session) -> str:
    return next_reference(db, DemandeAppro, f"REQ-MP-{today():%Y}-", 3)


def hides_validation_fields(actor: User) -> bool:
    return actor.role == Role.production


def _get(db: Session, demande_id: int, *, lock: bool = False) -> DemandeAppro:
    stmt = select(DemandeAppro).where(DemandeAppro.id == demande_id)
    if lock:
        stmt = stmt.with_for_update()
    demande = db.execute(stmt).scalar_one_or_none()
    if not demande:
        raise NotFoundError("DemandeAppro", demande_id)
    return demande


def _assert_can_see(demande: DemandeAppro, actor: User) -> None:
    if actor.role == Role.production and demande.created_by != actor.id:
        raise ForbiddenError("You can only access your own demandes", code="NOT_OWNER")


def _assert_editable(demande: DemandeAppro, actor: User) -> None:
    if demande.status != DemandeStatus.brouillon:
        raise BusinessRuleError(
            f"Demande {demande.reference} is no longer a draft", code="DEMANDE_NOT_EDITABLE"
        )
    if actor.role != Role.admin and demande.created_by != actor.id:
        raise ForbiddenError("Only the author can modify a draft demande", code="NOT_OWNER")


def _add_lines(db: Session, demande: DemandeAppro, lines: list[dict]) -> None:
    if not lines:
        raise BusinessRuleError("A demande needs at least one line", code="EMPTY_DEMANDE")
    for ln in lines:
        if not db.get(ProductMp, ln["product_mp_id"]):
            raise NotFoundError("ProductMp", ln["product_mp_id"])
        if ln["quantite_demandee"] <= 0:
            raise BusinessRuleError("Requested quantity must be positive", code="INVALID_QUANTITY")
        db.add(
            DemandeApproLine(
                demande_id=demande.id,
                product_mp_id=ln["product_mp_id"],
                quantite_demandee=ln["quantite_demandee"],
                commentaire=ln.get("commentaire"),
            )
        )
    db.flush()


def create(
    db: Session,
    *,
    actor: User,
    lines: list[dict],
    priority: DemandePriority = DemandePriority.normale,
    commentaire: str | None = None,
) -> DemandeAppro:
    if actor.role not in (Role.production, Role.admin):
        raise ForbiddenError("Only production can create a demande", code="ROLE_NOT_AUTHORIZED")
    if not lines:
        raise BusinessRuleError("A demande needs at least one line", code="EMPTY_DEMANDE")

    demande = DemandeAppro(
        reference=next_demande_reference(db),
        status=DemandeStatus.brouillon,
        priority=priority or DemandePriority.normale,
        commentaire=commentaire,
        created_by=actor.id,
    )
    db.add(demande)
    db.flush()
    _add_lines(db, demande, lines)
    db.refresh(demande)

    audit.record(
        db,
        actor=actor,
        action="DEMANDE_CREATED",
        entity_type="DemandeAppro",
        entity_id=demande.id,
        meta={"reference": demande.reference, "priority": demande.priority.value},
    )
    return demande


def list_demandes(
    db: Session,
    *,
    actor: User,
    request: CursorPageRequest,
    status: DemandeStatus | None = None,
) -> CursorPage:
    created_by = actor.id if actor.role == Role.production else None
    return paginate_demandes(db, request, status=status, created_by=created_by)


def get(db: Session, *, actor: User, demande_id: int) -> DemandeAppro:
    demande = _get(db, demande_id)
    _assert_can_see(demande, actor)
    return demande


def update(
    db: Session,
    *,
    actor: User,
    demande_id: int,
    priority: DemandePriority | None = None,
    commentaire: str | None = None,
    lines: list[dict] | None = None,
) -> DemandeAppro:
    demande = _get(db, demande_id, lock=True)
    _assert_editable(demande, actor)

    if priority is not None:
        demande.priority = priority
    if commentaire is not None:
        demande.commentaire = commentaire
    if lines is not None:
        for line in list(demande.lines):
            db.delete(line)
        db.flush()
        _add_lines(db, demande, lines)
    demande.updated_at = utcnow()
    db.flush()
    db.refresh(demande)
    return demande


def delete(db: Session, *, actor: User, demande_id: int) -> None:
    demande = _get(db, demande_id, lock=True)
    _assert_editable(demande, actor)
    audit.record(
        db,
        actor=actor,
        action="DEMANDE_DELETED",
        entity_type="DemandeAppro",
        entity_id=demande.id,
        meta={"reference": demande.reference},
    )
    db.delete(demande)
    db.flush()


def submit(db: Session, *, actor: User, demande_id: int) -> DemandeAppro:
    demande = _get(db, demande_id, lock=True)
    _assert_can_see(demande, actor)
    DEMANDE_WORKFLOW.assert_can_transition(demande.status, DemandeStatus.soumise, actor.role)

    demande.status = DemandeStatus.soumise
    demande.submitted_at = utcnow()
    audit.record(
        db,
        actor=actor,
        action="DEMANDE_SUBMITTED",
        entity_type="DemandeAppro",
        entity_id=demande.id,
        meta={"reference": demande.reference},
    )
    logger.info("Demande %s submitted (%s)", demande.reference, demande.priority.value)
    return demande


def validate(
    db: Session,
    *,
    actor: User,
    demande_id: int,
    adjusted_quantities: dict[int, int] | None = None,
) -> DemandeAppro:
    """SOUMISE -> VALIDEE. Sans ajustement, quantité validée = quantité demandée."""
    demande = _get(db, demande_id, lock=True)
    DEMANDE_WORKFLOW.assert_can_transition(demande.status, DemandeStatus.validee, actor.role)

    adjusted = {int(k): int(v) for k, v in (adjusted_quantities or {}).items()}
    line_ids = {line.id for line in demande.lines}
    unknown = sorted(set(adjusted) - line_ids)
    if unknown:
        raise BusinessRuleError(
            "Adjusted quantities reference unknown lines", code="UNKNOWN_LINE", details={"line_ids": unknown}
        )
    if any(q < 0 for q in adjusted.values()):
        raise BusinessRuleError("Validated quantity cannot be negative", code="INVALID_QUANTITY")

    for line in demande.lines:
        line.quantite_validee = adjusted.get(line.id, line.quantite_demandee)

    demande.status = DemandeStatus.validee
    demande.validated_by = actor.id
    demande.validated_at = utcnow()
    audit.record(
        db,
        actor=actor,
        action="DEMANDE_VALIDATED",
        entity_type="DemandeAppro",
        entity_id=demande.id,
        meta={"reference": demande.reference, "adjusted": {str(k): v for k, v in adjusted.items()}},
    )
    return demande


def reject(db: Session, *, actor: User, demande_id: int, motif: str | None) -> DemandeAppro:
    """SOUMISE -> REJETEE (appro) ou VALIDEE -> REJETEE (admin, annulation de validation)."""
    demande = _get(db, demande_id, lock=True)
    DEMANDE_WORKFLOW.assert_can_transition(demande.status, DemandeStatus.rejetee, actor.role, motif=motif)

    demande.status = DemandeStatus.rejetee
    demande.rejected_by = actor.id
    demande.rejected_at = utcnow()
    demande.motif_rejet = motif.strip()
    audit.record(
        db,
        actor=actor,
        action="DEMANDE_REJECTED",
        entity_type="DemandeAppro",
        entity_id=demande.id,
        meta={"reference": demande.reference, "motif": demande.motif_rejet},
    )
    return demande


def transform_to_reception(db: Session, *, actor: User, demande_id: int) -> ReceptionMp:
    """VALIDEE -> EN_COURS_COMMANDE, avec création d'une réception DRAFT (source DEMANDE_MP)."""
    demande = _get(db, demande_id, lock=True)
    if demande.reception_id is not None:
        raise ConflictError(
            f"Demande {demande.reference} was already transformed", code="ALREADY_TRANSFORMED"
        )
    DEMANDE_WORKFLOW.assert_can_transition(demande.status, DemandeStatus.en_cours_commande, actor.role)

    lines = [
        {
            "product_mp_id": line.product_mp_id,
            "quantity": line.quantite_validee if line.quantite_validee is not None else line.quantite_demandee,
        }
        for line in demande.lines
    ]
    reception = create_reception(
        db,
        actor=actor,
        supplier_id=None,
        lines=lines,
        source=ReceptionSource.demande_mp,
        demande_id=demande.id,
        notes=f"Réception issue de {demande.reference}",
    )

    demande.status = DemandeStatus.en_cours_commande
    demande.reception_id = reception.id
    demande.transformed_at = utcnow()
    audit.record(
        db,
        actor=actor,
        action="DEMANDE_TRANSFORMED",
        entity_type="DemandeAppro",
        entity_id=demande.id,
        meta={"reference": demande.reference, "reception": reception.reference},
    )
    return reception


def stats(db: Session, *, actor: User) -> dict[str, int]:
    stmt = select(DemandeAppro.status, func.count()).group_by(DemandeAppro.status)
    if actor.role == Role.production:
        stmt = stmt.where(DemandeAppro.created_by == actor.id)
    counts = {status.value: 0 for status in DemandeStatus}
    for status, n in db.execute(stmt).all():
        counts[status.value] = int(n)
    counts["total"] = sum(counts.values())
    return counts


def available_actions(demande: DemandeAppro, role: Role) -> list[str]:
    return DEMANDE_WORKFLOW.available_actions(demande.status, role)
