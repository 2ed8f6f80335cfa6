from __future__ import annotations

import re

from sqlalchemy import func, select
from sqlalchemy.orm import Session

_LEADING_DIGITS = re.compile(r"\d+")


def next_reference(db: Session, model, prefix: str, width: int, *, column=None) -> str:
    """
    Référence séquentielle par préfixe : BC-2026-00001, REC-20260314-001, ...

    Dernier numéro attribué pour le préfixe + 1 ; le compteur repart à 1
    pour chaque préfixe (année, jour). Un trou laissé par une suppression
    n'est jamais réutilisé. L'unicité finale reste garantie par la
    contrainte UNIQUE sur la colonne.
    """
    column = column if column is not None else model.reference
    last = db.execute(
        select(func.max(column)).where(column.startswith(prefix, autoescape=True))
    ).scalar_one()
    number = 0
    if last is not None:
        match = _LEADING_DIGITS.match(last[len(prefix):])
        if match:
            number = int(match.group())
    return f"{prefix}{number + 1:0{width}d}"


def unique_code(db: Session, column, base: str) -> str:
    """Ajoute un suffixe -2, -3... tant que `base` existe déjà dans `column`."""
    candidate = base
    n = 1
    while db.execute(select(column).where(column == candidate)).first() is not None:
        n += 1
        candidate = f"{base}-{n}"
    return candidate
