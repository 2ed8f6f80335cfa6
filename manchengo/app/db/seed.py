from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from manchengo.app.db.session import SessionLocal
from manchengo.app.db.models.models_v1 import LotMp, ProductMp, ProductPf, Recipe, RecipeItem, Supplier, User
from manchengo.app.db.models.core_types import Criticality, Role, SupplierGrade
from manchengo.services import inventory
from manchengo.services.clock import today

USERS = [
    ("admin@manchengo.dz", "Admin", "Manchengo", Role.admin),
    ("appro@manchengo.dz", "Samir", "Appro", Role.appro),
    ("production@manchengo.dz", "Nadia", "Production", Role.production),
]


def _get_or_create(db, model, lookup: dict, **values):
    obj = db.scalar(select(model).filter_by(**lookup))
    if not obj:
        obj = model(**lookup, **values)
        db.add(obj)
        db.flush()
    return obj


def run_seed():
    db = SessionLocal()
    try:
        # 1) Utilisateurs (un par rôle)
        users = {}
        for email, first, last, role in USERS:
            users[role] = _get_or_create(
                db, User, {"email": email}, first_name=first, last_name=last, role=role, active=True
            )

        # 2) Fournisseurs
        lait = _get_or_create(
            db, Supplier, {"code": "FRN-001"},
            name="Laiterie du Tell", email="commandes@laiterie-tell.dz", lead_time_days=3, grade=SupplierGrade.a,
        )
        emballage = _get_or_create(
            db, Supplier, {"code": "FRN-002"},
            name="Emballages Mitidja", email=None, lead_time_days=10, grade=SupplierGrade.b,
        )

        # 3) Matières premières
        mp_lait = _get_or_create(
            db, ProductMp, {"code": "MP-LAIT"},
            name="Lait cru", unit="L", category="Laitier", min_stock=500, lead_time_days=3,
            criticality=Criticality.bloquante, main_supplier_id=lait.id,
        )
        mp_presure = _get_or_create(
            db, ProductMp, {"code": "MP-PRES"},
            name="Présure", unit="L", category="Ingrédient", min_stock=10, lead_time_days=7,
            criticality=Criticality.haute, main_supplier_id=lait.id,
        )
        mp_sel = _get_or_create(
            db, ProductMp, {"code": "MP-SEL"},
            name="Sel", unit="kg", category="Ingrédient", min_stock=20, lead_time_days=5,
            criticality=Criticality.moyenne, main_supplier_id=lait.id,
        )
        mp_film = _get_or_create(
            db, ProductMp, {"code": "MP-FILM"},
            name="Film d'emballage", unit="m", category="Emballage", min_stock=100, lead_time_days=10,
            criticality=Criticality.faible, main_supplier_id=emballage.id,
        )

        # 4) Produit fini + recette
        pf = _get_or_create(
            db, ProductPf, {"code": "PF-MANCH"},
            name="Manchego affiné 1kg", unit="unit", min_stock=50, price_ht=Decimal("1450.00"),
        )
        recipe = db.scalar(select(Recipe).where(Recipe.product_pf_id == pf.id))
        if not recipe:
            recipe = Recipe(
                product_pf_id=pf.id, name="Manchego 1kg", batch_weight=Decimal("100"),
                output_quantity=10, loss_tolerance=Decimal("5"), shelf_life_days=90,
            )
            db.add(recipe)
            db.flush()
            for position, (mp, qty, mandatory) in enumerate(
                [(mp_lait, "100", True), (mp_presure, "0.5", True), (mp_sel, "2", True), (mp_film, "10", False)]
            ):
                db.add(RecipeItem(recipe_id=recipe.id, product_mp_id=mp.id, quantity=Decimal(qty),
                                  is_mandatory=mandatory, affects_stock=True, sort_order=position))

        # 5) Stock initial (réception validée)
        if not db.scalar(select(LotMp.id).limit(1)):
            reception = inventory.create_reception(
                db,
                actor=users[Role.appro],
                supplier_id=lait.id,
                lines=[
                    {"product_mp_id": mp_lait.id, "quantity": 1000, "unit_cost": Decimal("45.00"),
                     "expiry_date": today() + timedelta(days=5)},
                    {"product_mp_id": mp_presure.id, "quantity": 20, "unit_cost": Decimal("900.00")},
                    {"product_mp_id": mp_sel.id, "quantity": 50, "unit_cost": Decimal("30.00")},
                ],
                notes="Stock initial",
            )
            inventory.validate_reception(db, reception_id=reception.id, actor=users[Role.appro])

        db.commit()
        print("SEED OK: users=%d, recipe=%s" % (len(users), recipe.name))
    finally:
        db.close()


if __name__ == "__main__":
    run_seed()
