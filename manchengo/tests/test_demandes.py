import pytest

from manchengo.app.db.models.models_v1 import DemandeAppro
from manchengo.app.db.models.core_types import DemandePriority, DemandeStatus, ReceptionSource, Role
from manchengo.services import demandes, inventory
from manchengo.services.clock import today
from manchengo.services.errors import (
    BusinessRuleError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
)
from manchengo.services.pagination import CursorPageRequest


@pytest.fixture
def actors(make):
    return {
        "prod": make.user(Role.production),
        "prod2": make.user(Role.production),
        "appro": make.user(Role.appro),
        "admin": make.user(Role.admin),
    }


def _demande(db, actor, mp, qty=40, **kw):
    return demandes.create(db, actor=actor, lines=[{"product_mp_id": mp.id, "quantite_demandee": qty}], **kw)


def test_create_draft_with_reference(db_session, make, actors):
    mp = make.mp()

    d1 = _demande(db_session, actors["prod"], mp, priority=DemandePriority.urgente)
    d2 = _demande(db_session, actors["prod"], mp)

    assert d1.status == DemandeStatus.brouillon
    assert d1.priority == DemandePriority.urgente
    assert d1.reference == f"REQ-MP-{today():%Y}-001"
    assert d2.reference == f"REQ-MP-{today():%Y}-002"
    assert [(ln.product_mp_id, ln.quantite_demandee) for ln in d1.lines] == [(mp.id, 40)]


def test_reference_after_deleting_an_earlier_draft(db_session, make, actors):
    """
    GIVEN
    - 2 demandes (001, 002), la 001 supprimée

    THEN
    - la suivante prend 003 : pas de réutilisation de 002
    """
    mp = make.mp()
    d1 = _demande(db_session, actors["prod"], mp)
    d2 = _demande(db_session, actors["prod"], mp)
    demandes.delete(db_session, actor=actors["prod"], demande_id=d1.id)
    db_session.flush()

    d3 = _demande(db_session, actors["prod"], mp)

    assert d2.reference == f"REQ-MP-{today():%Y}-002"
    assert d3.reference == f"REQ-MP-{today():%Y}-003"


def test_appro_cannot_create(db_session, make, actors):
    with pytest.raises(ForbiddenError):
        _demande(db_session, actors["appro"], make.mp())


def test_create_rejects_empty_or_non_positive_lines(db_session, make, actors):
    with pytest.raises(BusinessRuleError) as exc:
        demandes.create(db_session, actor=actors["prod"], lines=[])
    assert exc.value.code == "EMPTY_DEMANDE"

    with pytest.raises(BusinessRuleError) as exc:
        _demande(db_session, actors["prod"], make.mp(), qty=0)
    assert exc.value.code == "INVALID_QUANTITY"


def test_full_lifecycle_through_reception(db_session, make, actors):
    """
    GIVEN
    - une demande de 40 kg, validée à 35 par l'appro

    THEN
    - BROUILLON -> SOUMISE -> VALIDEE -> EN_COURS_COMMANDE (réception brouillon de 35)
    - validation de la réception : demande RECEPTIONNEE, 35 kg en stock
    """
    mp = make.mp()
    demande = _demande(db_session, actors["prod"], mp)
    line_id = demande.lines[0].id

    # ---------- ACT ----------
    demandes.submit(db_session, actor=actors["prod"], demande_id=demande.id)
    assert demande.status == DemandeStatus.soumise
    assert demande.submitted_at is not None

    demandes.validate(db_session, actor=actors["appro"], demande_id=demande.id, adjusted_quantities={line_id: 35})
    assert demande.status == DemandeStatus.validee
    assert demande.lines[0].quantite_validee == 35
    assert demande.validated_by == actors["appro"].id

    reception = demandes.transform_to_reception(db_session, actor=actors["appro"], demande_id=demande.id)
    assert demande.status == DemandeStatus.en_cours_commande
    assert demande.reception_id == reception.id
    assert reception.source == ReceptionSource.demande_mp
    assert [(ln.product_mp_id, ln.quantity) for ln in reception.lines] == [(mp.id, 35)]

    inventory.validate_reception(db_session, reception_id=reception.id, actor=actors["appro"])

    # ---------- ASSERT ----------
    assert demande.status == DemandeStatus.receptionnee
    assert inventory.current_stocks_mp(db_session, [mp.id]) == {mp.id: 35}


def test_transform_twice_is_a_conflict(db_session, make, actors):
    demande = _demande(db_session, actors["prod"], make.mp())
    demandes.submit(db_session, actor=actors["prod"], demande_id=demande.id)
    demandes.validate(db_session, actor=actors["appro"], demande_id=demande.id)
    demandes.transform_to_reception(db_session, actor=actors["appro"], demande_id=demande.id)

    with pytest.raises(ConflictError) as exc:
        demandes.transform_to_reception(db_session, actor=actors["appro"], demande_id=demande.id)

    assert exc.value.code == "ALREADY_TRANSFORMED"


def test_validate_defaults_to_requested_quantity(db_session, make, actors):
    demande = _demande(db_session, actors["prod"], make.mp(), qty=12)
    demandes.submit(db_session, actor=actors["prod"], demande_id=demande.id)

    demandes.validate(db_session, actor=actors["appro"], demande_id=demande.id)

    assert demande.lines[0].quantite_validee == 12


def test_validate_rejects_unknown_lines(db_session, make, actors):
    demande = _demande(db_session, actors["prod"], make.mp())
    demandes.submit(db_session, actor=actors["prod"], demande_id=demande.id)

    with pytest.raises(BusinessRuleError) as exc:
        demandes.validate(
            db_session, actor=actors["appro"], demande_id=demande.id, adjusted_quantities={999_999: 3}
        )

    assert exc.value.code == "UNKNOWN_LINE"


def test_reject_requires_motif(db_session, make, actors):
    demande = _demande(db_session, actors["prod"], make.mp())
    demandes.submit(db_session, actor=actors["prod"], demande_id=demande.id)

    with pytest.raises(BusinessRuleError) as exc:
        demandes.reject(db_session, actor=actors["appro"], demande_id=demande.id, motif="non")
    assert exc.value.code == "MOTIF_REQUIRED"

    demandes.reject(
        db_session, actor=actors["appro"], demande_id=demande.id, motif="  Stock suffisant en chambre froide "
    )
    assert demande.status == DemandeStatus.rejetee
    assert demande.motif_rejet == "Stock suffisant en chambre froide"
    assert demande.rejected_by == actors["appro"].id


def test_only_admin_can_cancel_a_validation(db_session, make, actors):
    demande = _demande(db_session, actors["prod"], make.mp())
    demandes.submit(db_session, actor=actors["prod"], demande_id=demande.id)
    demandes.validate(db_session, actor=actors["appro"], demande_id=demande.id)

    with pytest.raises(ForbiddenError):
        demandes.reject(db_session, actor=actors["appro"], demande_id=demande.id, motif="Erreur de validation")

    demandes.reject(db_session, actor=actors["admin"], demande_id=demande.id, motif="Erreur de validation")
    assert demande.status == DemandeStatus.rejetee


def test_production_cannot_validate_its_own_demande(db_session, make, actors):
    demande = _demande(db_session, actors["prod"], make.mp())
    demandes.submit(db_session, actor=actors["prod"], demande_id=demande.id)

    with pytest.raises(ForbiddenError) as exc:
        demandes.validate(db_session, actor=actors["prod"], demande_id=demande.id)

    assert exc.value.code == "ROLE_NOT_AUTHORIZED"


def test_submitted_demande_is_no_longer_editable(db_session, make, actors):
    demande = _demande(db_session, actors["prod"], make.mp())
    demandes.submit(db_session, actor=actors["prod"], demande_id=demande.id)

    with pytest.raises(BusinessRuleError) as exc:
        demandes.update(db_session, actor=actors["prod"], demande_id=demande.id, commentaire="urgent")
    assert exc.value.code == "DEMANDE_NOT_EDITABLE"

    with pytest.raises(InvalidTransitionError):
        demandes.submit(db_session, actor=actors["prod"], demande_id=demande.id)


def test_update_replaces_lines(db_session, make, actors):
    lait, sel = make.mp(), make.mp()
    demande = _demande(db_session, actors["prod"], lait)

    demandes.update(
        db_session,
        actor=actors["prod"],
        demande_id=demande.id,
        priority=DemandePriority.critique,
        lines=[{"product_mp_id": sel.id, "quantite_demandee": 5, "commentaire": "pour le saumurage"}],
    )

    assert demande.priority == DemandePriority.critique
    assert [(ln.product_mp_id, ln.quantite_demandee) for ln in demande.lines] == [(sel.id, 5)]


def test_delete_draft_owner_or_admin_only(db_session, make, actors):
    mp = make.mp()
    mine = _demande(db_session, actors["prod"], mp)
    other = _demande(db_session, actors["prod"], mp)

    with pytest.raises(ForbiddenError):
        demandes.delete(db_session, actor=actors["prod2"], demande_id=mine.id)

    demandes.delete(db_session, actor=actors["prod"], demande_id=mine.id)
    demandes.delete(db_session, actor=actors["admin"], demande_id=other.id)

    assert db_session.query(DemandeAppro).count() == 0


def test_production_only_sees_its_own_demandes(db_session, make, actors):
    """
    GIVEN
    - 2 demandes de prod, 1 de prod2

    THEN
    - prod voit 2 demandes, prod2 en voit 1, l'appro voit tout
    - prod2 ne peut pas ouvrir une demande de prod
    """
    mp = make.mp()
    d1 = _demande(db_session, actors["prod"], mp)
    _demande(db_session, actors["prod"], mp)
    _demande(db_session, actors["prod2"], mp)

    def visible(actor):
        page = demandes.list_demandes(db_session, actor=actor, request=CursorPageRequest())
        return len(page.data)

    assert visible(actors["prod"]) == 2
    assert visible(actors["prod2"]) == 1
    assert visible(actors["appro"]) == 3

    with pytest.raises(ForbiddenError) as exc:
        demandes.get(db_session, actor=actors["prod2"], demande_id=d1.id)
    assert exc.value.code == "NOT_OWNER"

    assert demandes.hides_validation_fields(actors["prod"]) is True
    assert demandes.hides_validation_fields(actors["appro"]) is False


def test_stats_count_by_status(db_session, make, actors):
    mp = make.mp()
    _demande(db_session, actors["prod"], mp)
    submitted = _demande(db_session, actors["prod"], mp)
    demandes.submit(db_session, actor=actors["prod"], demande_id=submitted.id)
    _demande(db_session, actors["prod2"], mp)

    own = demandes.stats(db_session, actor=actors["prod"])
    everything = demandes.stats(db_session, actor=actors["appro"])

    assert own["brouillon"] == 1
    assert own["soumise"] == 1
    assert own["total"] == 2
    assert everything["brouillon"] == 2
    assert everything["total"] == 3


def test_available_actions(db_session, make, actors):
    demande = _demande(db_session, actors["prod"], make.mp())
    demandes.submit(db_session, actor=actors["prod"], demande_id=demande.id)

    assert demandes.available_actions(demande, Role.appro) == ["valider", "rejeter"]
    assert demandes.available_actions(demande, Role.production) == []
