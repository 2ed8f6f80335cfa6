from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from manchengo.app.api.deps import get_current_user, get_db, require_roles
from manchengo.app.db.models.models_v1 import ProductMp, ProductPf, Recipe, RecipeItem, User
from manchengo.app.db.models.core_types import Role
from manchengo.app.schemas.master_data import RecipeRead
from manchengo.services import appro, audit

router = APIRouter(prefix="/recipes")


class RecipeItemCreate(BaseModel):
    product_mp_id: int
    quantity: Decimal = Field(gt=0)
    is_mandatory: bool = True
    affects_stock: bool = True


class RecipeCreate(BaseModel):
    product_pf_id: int
    name: str = Field(min_length=1, max_length=255)
    batch_weight: Decimal = Field(gt=0)
    output_quantity: int = Field(gt=0)
    loss_tolerance: Decimal = Field(default=Decimal("2"), ge=0, le=100)
    shelf_life_days: int = Field(default=30, gt=0)
    items: list[RecipeItemCreate] = Field(min_length=1)


@router.get("/{recipe_id}", response_model=RecipeRead)
def get_recipe(recipe_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    recipe = db.get(Recipe, recipe_id)
    if not recipe:
        raise HTTPException(status_code=404, detail="Recipe not found")
    return recipe


@router.post("", response_model=RecipeRead, status_code=201)
def create_recipe(
    payload: RecipeCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.production)),
):
    if not db.get(ProductPf, payload.product_pf_id):
        raise HTTPException(status_code=400, detail="Invalid product_pf_id")
    exists = db.execute(select(Recipe).where(Recipe.product_pf_id == payload.product_pf_id)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="This finished product already has a recipe")

    mp_ids = [it.product_mp_id for it in payload.items]
    if len(set(mp_ids)) != len(mp_ids):
        raise HTTPException(status_code=400, detail="Duplicate raw material in recipe")
    for mp_id in mp_ids:
        if not db.get(ProductMp, mp_id):
            raise HTTPException(status_code=400, detail=f"Invalid product_mp_id {mp_id}")

    recipe = Recipe(**payload.model_dump(exclude={"items"}))
    db.add(recipe)
    db.flush()
    for position, it in enumerate(payload.items):
        db.add(RecipeItem(recipe_id=recipe.id, sort_order=position, **it.model_dump()))

    audit.record(db, actor=user, action="RECIPE_CREATED", entity_type="Recipe", entity_id=recipe.id,
                 meta={"name": recipe.name, "items": len(payload.items)})
    db.commit()
    db.refresh(recipe)
    return recipe


@router.get("/{recipe_id}/stock-check")
def check_recipe_stock(
    recipe_id: int,
    batch_count: int = Query(default=1, gt=0),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Peut-on lancer `batch_count` batches ? Ouvre une alerte PRODUCTION_BLOQUEE sinon."""
    result = appro.can_start_production(db, recipe_id=recipe_id, batch_count=batch_count)
    db.commit()
    return result
