from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from manchengo.app.db.models.core_types import Criticality, Role, SupplierGrade


class UserRead(BaseModel):
    id: int
    email: str
    first_name: str
    last_name: str
    role: Role
    active: bool

    class Config:
        from_attributes = True


class SupplierRead(BaseModel):
    id: int
    code: str
    name: str
    contact_name: str | None
    email: str | None
    phone: str | None
    address: str | None
    nif: str | None
    lead_time_days: int
    grade: SupplierGrade
    active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class ProductMpRead(BaseModel):
    id: int
    code: str
    name: str
    unit: str
    category: str | None
    min_stock: int
    safety_threshold: int | None
    reorder_threshold: int | None
    reorder_quantity: int | None
    lead_time_days: int
    criticality: Criticality
    avg_daily_consumption: Decimal
    main_supplier_id: int | None
    is_active: bool
    is_stock_tracked: bool

    class Config:
        from_attributes = True


class ProductPfRead(BaseModel):
    id: int
    code: str
    name: str
    unit: str
    min_stock: int
    price_ht: Decimal | None
    is_active: bool

    class Config:
        from_attributes = True


class RecipeItemRead(BaseModel):
    id: int
    product_mp_id: int
    quantity: Decimal
    is_mandatory: bool
    affects_stock: bool

    class Config:
        from_attributes = True


class RecipeRead(BaseModel):
    id: int
    product_pf_id: int
    name: str
    batch_weight: Decimal
    output_quantity: int
    loss_tolerance: Decimal
    shelf_life_days: int
    is_active: bool
    items: list[RecipeItemRead]

    class Config:
        from_attributes = True
