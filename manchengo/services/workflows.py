"""
Machines à états (BC, demandes d'appro, ordres de production).

Chaque écriture de statut dans les services passe par
`assert_can_transition` : transition connue, rôle autorisé (ADMIN passe
toujours), motif obligatoire quand la règle l'exige, et annulation interdite
dès qu'une réception partielle a eu lieu.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from manchengo.app.db.models.core_types import DemandeStatus, POStatus, ProductionStatus, Role
from manchengo.services.errors import BusinessRuleError, ForbiddenError, InvalidTransitionError

MOTIF_MIN_LENGTH = 10


@dataclass(frozen=True)
class TransitionRule:
    from_status: str
    to_status: str
    allowed_roles: frozenset
    action: str
    requires_motif: bool = False
    irreversible: bool = False
    blocked_if_partial: bool = False


def _rule(from_status, to_status, roles: Iterable[Role], action: str, **flags) -> TransitionRule:
    return TransitionRule(from_status, to_status, frozenset(roles), action, **flags)


def _value(status) -> str:
    return getattr(status, "value", status)


class Workflow:
    def __init__(self, name: str, rules: list[TransitionRule], *, terminal: set, irreversible: set):
        self.name = name
        self.rules = rules
        self.terminal = frozenset(terminal)
        self.irreversible = frozenset(irreversible)
        self._by_pair = {(r.from_status, r.to_status): r for r in rules}

    def find_rule(self, from_status, to_status) -> TransitionRule | None:
        return self._by_pair.get((from_status, to_status))

    def is_terminal(self, status) -> bool:
        return status in self.terminal

    def is_irreversible(self, status) -> bool:
        return status in self.irreversible

    def is_irreversible_transition(self, from_status, to_status) -> bool:
        rule = self.find_rule(from_status, to_status)
        return rule is not None and rule.irreversible

    @staticmethod
    def _role_allowed(rule: TransitionRule, role: Role) -> bool:
        return role == Role.admin or role in rule.allowed_roles

    def assert_can_transition(
        self,
        from_status,
        to_status,
        role: Role,
        *,
        motif: str | None = None,
        has_partial_received: bool = False,
    ) -> TransitionRule:
        rule = self.find_rule(from_status, to_status)
        if rule is None:
            allowed = self.available_transitions(from_status, Role.admin)
            raise InvalidTransitionError(
                f"{self.name}: transition {_value(from_status)} -> {_value(to_status)} not allowed",
                details={
                    "current_status": _value(from_status),
                    "requested_status": _value(to_status),
                    "allowed_transitions": [_value(s) for s in allowed],
                },
            )

        if not self._role_allowed(rule, role):
            raise ForbiddenError(
                f"{self.name}: role {_value(role)} cannot perform '{rule.action}'",
                code="ROLE_NOT_AUTHORIZED",
                details={
                    "role": _value(role),
                    "allowed_roles": sorted(_value(r) for r in rule.allowed_roles),
                },
            )

        if rule.requires_motif and len((motif or "").strip()) < MOTIF_MIN_LENGTH:
            raise BusinessRuleError(
                f"A reason of at least {MOTIF_MIN_LENGTH} characters is required",
                code="MOTIF_REQUIRED",
                details={"min_length": MOTIF_MIN_LENGTH},
            )

        if rule.blocked_if_partial and has_partial_received:
            raise BusinessRuleError(
                "Cannot cancel: goods were already partially received",
                code="CANNOT_CANCEL_PARTIAL",
            )

        return rule

    def _available_rules(self, from_status, role: Role, has_partial_received: bool) -> list[TransitionRule]:
        return [
            r
            for r in self.rules
            if r.from_status == from_status
            and self._role_allowed(r, role)
            and not (r.blocked_if_partial and has_partial_received)
        ]

    def available_transitions(self, from_status, role: Role, *, has_partial_received: bool = False) -> list:
        targets = []
        for r in self._available_rules(from_status, role, has_partial_received):
            if r.to_status not in targets:
                targets.append(r.to_status)
        return targets

    def available_actions(self, from_status, role: Role, *, has_partial_received: bool = False) -> list[str]:
        actions: list[str] = []
        for r in self._available_rules(from_status, role, has_partial_received):
            if r.action not in actions:
                actions.append(r.action)
        return actions


# ---------- Bon de commande ----------
_APPRO = (Role.appro, Role.admin)
_ADMIN = (Role.admin,)

PURCHASE_ORDER_WORKFLOW = Workflow(
    "purchase_order",
    [
        _rule(POStatus.draft, POStatus.sent, _APPRO, "envoyer", irreversible=True),
        _rule(POStatus.draft, POStatus.cancelled, _ADMIN, "annuler", requires_motif=True),
        _rule(POStatus.sent, POStatus.confirmed, _APPRO, "confirmer"),
        _rule(POStatus.sent, POStatus.partial, _APPRO, "receptionner"),
        _rule(POStatus.sent, POStatus.received, _APPRO, "receptionner", irreversible=True),
        _rule(
            POStatus.sent, POStatus.cancelled, _ADMIN, "annuler",
            requires_motif=True, blocked_if_partial=True,
        ),
        _rule(POStatus.confirmed, POStatus.partial, _APPRO, "receptionner"),
        _rule(POStatus.confirmed, POStatus.received, _APPRO, "receptionner", irreversible=True),
        _rule(
            POStatus.confirmed, POStatus.cancelled, _ADMIN, "annuler",
            requires_motif=True, blocked_if_partial=True,
        ),
        _rule(POStatus.partial, POStatus.partial, _APPRO, "receptionner"),
        _rule(POStatus.partial, POStatus.received, _APPRO, "receptionner", irreversible=True),
    ],
    terminal={POStatus.received, POStatus.cancelled},
    irreversible={POStatus.sent, POStatus.confirmed, POStatus.partial, POStatus.received, POStatus.cancelled},
)


# ---------- Demande d'approvisionnement ----------
_PRODUCTION = (Role.production, Role.admin)
_SYSTEM = (Role.system,)

DEMANDE_WORKFLOW = Workflow(
    "demande_appro",
    [
        _rule(DemandeStatus.brouillon, DemandeStatus.soumise, _PRODUCTION, "soumettre"),
        _rule(DemandeStatus.soumise, DemandeStatus.validee, _APPRO, "valider"),
        _rule(DemandeStatus.soumise, DemandeStatus.rejetee, _APPRO, "rejeter", requires_motif=True),
        _rule(
            DemandeStatus.validee, DemandeStatus.en_cours_commande, _APPRO, "genererBc", irreversible=True
        ),
        _rule(DemandeStatus.validee, DemandeStatus.rejetee, _ADMIN, "annulerValidation", requires_motif=True),
        _rule(DemandeStatus.en_cours_commande, DemandeStatus.commandee, _SYSTEM, "bcEnvoye", irreversible=True),
        _rule(DemandeStatus.commandee, DemandeStatus.receptionnee, _SYSTEM, "bcReceptionne", irreversible=True),
    ],
    terminal={DemandeStatus.receptionnee},
    irreversible={DemandeStatus.en_cours_commande, DemandeStatus.commandee, DemandeStatus.receptionnee},
)


# ---------- Ordre de production ----------
PRODUCTION_WORKFLOW = Workflow(
    "production_order",
    [
        _rule(ProductionStatus.pending, ProductionStatus.in_progress, _PRODUCTION, "demarrer"),
        _rule(ProductionStatus.in_progress, ProductionStatus.completed, _PRODUCTION, "terminer"),
        _rule(ProductionStatus.pending, ProductionStatus.cancelled, _PRODUCTION, "annuler"),
        _rule(ProductionStatus.in_progress, ProductionStatus.cancelled, _PRODUCTION, "annuler"),
    ],
    terminal={ProductionStatus.completed, ProductionStatus.cancelled},
    irreversible={ProductionStatus.completed, ProductionStatus.cancelled},
)
