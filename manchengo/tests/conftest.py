import os

# Base SQLite mémoire partagée, monitoring coupé : à poser avant tout import manchengo.*
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["ALERT_POLL_INTERVAL_SECONDS"] = "0"

from datetime import date  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from manchengo.app.api.deps import get_db  # noqa: E402
from manchengo.app.db.base import Base  # noqa: E402
from manchengo.app.db.session import SessionLocal, engine  # noqa: E402
from manchengo.app.db.models.models_v1 import (  # noqa: E402
    ProductMp,
    ProductPf,
    Recipe,
    RecipeItem,
    Supplier,
    User,
)
from manchengo.app.db.models.core_types import Criticality, Role, SupplierGrade  # noqa: E402
from manchengo.app.main import app  # noqa: E402
from manchengo.services import inventory  # noqa: E402


@pytest.fixture(scope="function")
def db_session() -> Session:
    """
    Session DB isolée par test.

    Schéma recréé à chaque test sur la base mémoire : les commit() des
    services et des endpoints n'ont aucun effet de bord entre tests.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


class Factory:
    """Données de référence minimales, créées à la demande par les tests."""

    def __init__(self, db: Session):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def user(self, role: Role = Role.admin, **kw) -> User:
        n = self._next()
        u = User(
            email=kw.pop("email", f"user{n}@manchengo.test"),
            first_name=kw.pop("first_name", f"Prenom{n}"),
            last_name=kw.pop("last_name", role.value.title()),
            role=role,
            active=kw.pop("active", True),
            **kw,
        )
        self.db.add(u)
        self.db.flush()
        return u

    def supplier(self, **kw) -> Supplier:
        n = self._next()
        s = Supplier(
            code=kw.pop("code", f"FRN-{n:03d}"),
            name=kw.pop("name", f"Fournisseur {n}"),
            email=kw.pop("email", f"contact{n}@fournisseur.test"),
            lead_time_days=kw.pop("lead_time_days", 5),
            grade=kw.pop("grade", SupplierGrade.b),
            **kw,
        )
        self.db.add(s)
        self.db.flush()
        return s

    def mp(self, **kw) -> ProductMp:
        n = self._next()
        mp = ProductMp(
            code=kw.pop("code", f"MP-{n:03d}"),
            name=kw.pop("name", f"Matiere {n}"),
            unit=kw.pop("unit", "kg"),
            min_stock=kw.pop("min_stock", 10),
            lead_time_days=kw.pop("lead_time_days", 7),
            criticality=kw.pop("criticality", Criticality.moyenne),
            **kw,
        )
        self.db.add(mp)
        self.db.flush()
        return mp

    def pf(self, **kw) -> ProductPf:
        n = self._next()
        pf = ProductPf(
            code=kw.pop("code", f"PF-{n:03d}"),
            name=kw.pop("name", f"Fromage {n}"),
            min_stock=kw.pop("min_stock", 0),
            **kw,
        )
        self.db.add(pf)
        self.db.flush()
        return pf

    def recipe(self, pf: ProductPf, items: list[tuple], **kw) -> Recipe:
        """items : [(mp, quantité par batch, obligatoire?)]"""
        recipe = Recipe(
            product_pf_id=pf.id,
            name=kw.pop("name", f"Recette {pf.code}"),
            batch_weight=kw.pop("batch_weight", Decimal("100")),
            output_quantity=kw.pop("output_quantity", 10),
            loss_tolerance=kw.pop("loss_tolerance", Decimal("5")),
            shelf_life_days=kw.pop("shelf_life_days", 60),
            **kw,
        )
        self.db.add(recipe)
        self.db.flush()
        for position, (mp, qty, mandatory) in enumerate(items):
            self.db.add(
                RecipeItem(
                    recipe_id=recipe.id,
                    product_mp_id=mp.id,
                    quantity=Decimal(str(qty)),
                    is_mandatory=mandatory,
                    affects_stock=True,
                    sort_order=position,
                )
            )
        self.db.flush()
        self.db.refresh(recipe)
        return recipe

    def stock(self, mp: ProductMp, quantity: int, *, actor: User, unit_cost=None,
              lot_number: str | None = None, expiry_date: date | None = None):
        """Entrée de stock par une réception validée (lot + mouvement IN)."""
        reception = inventory.create_reception(
            self.db,
            actor=actor,
            supplier_id=None,
            lines=[{
                "product_mp_id": mp.id,
                "quantity": quantity,
                "unit_cost": unit_cost,
                "lot_number": lot_number,
                "expiry_date": expiry_date,
            }],
        )
        inventory.validate_reception(self.db, reception_id=reception.id, actor=actor)
        self.db.flush()
        return reception.lines[0].lot_mp_id


@pytest.fixture
def make(db_session) -> Factory:
    return Factory(db_session)


@pytest.fixture
def client(db_session):
    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
