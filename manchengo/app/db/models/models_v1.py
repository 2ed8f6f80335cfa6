from __future__ import annotations

from datetime import datetime, date
from decimal import Decimal

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Numeric,
    Text,
    Enum,
    JSON,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from manchengo.app.db.base import Base, BigIntPK
from manchengo.app.db.models.core_types import (
    Role,
    Criticality,
    SupplierGrade,
    ProductType,
    MovementType,
    MovementOrigin,
    LotStatus,
    POStatus,
    SendVia,
    DemandeStatus,
    DemandePriority,
    ReceptionStatus,
    ReceptionSource,
    ProductionStatus,
    AlertType,
    AlertSeverity,
    AlertStatus,
    AlertHistoryAction,
)
from manchengo.services.clock import utcnow


# ---------- AUTH ----------
class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[Role] = mapped_column(Enum(Role, name="role"), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


# ---------- MASTER DATA ----------
class Supplier(Base):
    __tablename__ = "suppliers"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(200))
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(32))
    address: Mapped[str | None] = mapped_column(Text)
    nif: Mapped[str | None] = mapped_column(String(32))  # identifiant fiscal
    lead_time_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)
    grade: Mapped[SupplierGrade] = mapped_column(
        Enum(SupplierGrade, name="supplier_grade"), default=SupplierGrade.b, nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (CheckConstraint("lead_time_days >= 0", name="ck_supplier_lead_time_nonneg"),)


class ProductMp(Base):
    """Matière première."""

    __tablename__ = "products_mp"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(16), default="kg", nullable=False)
    category: Mapped[str | None] = mapped_column(String(64))

    min_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    safety_threshold: Mapped[int | None] = mapped_column(Integer)  # seuil sécurité
    reorder_threshold: Mapped[int | None] = mapped_column(Integer)  # seuil commande
    reorder_quantity: Mapped[int | None] = mapped_column(Integer)
    lead_time_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)
    criticality: Mapped[Criticality] = mapped_column(
        Enum(Criticality, name="criticality"), default=Criticality.moyenne, nullable=False
    )
    avg_daily_consumption: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=0, nullable=False)
    metrics_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    main_supplier_id: Mapped[int | None] = mapped_column(ForeignKey("suppliers.id", ondelete="SET NULL"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_stock_tracked: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    main_supplier: Mapped[Supplier | None] = relationship()

    __table_args__ = (
        CheckConstraint("min_stock >= 0", name="ck_mp_min_stock_nonneg"),
        CheckConstraint("lead_time_days >= 0", name="ck_mp_lead_time_nonneg"),
    )


class ProductPf(Base):
    """Produit fini."""

    __tablename__ = "products_pf"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(16), default="unit", nullable=False)
    min_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price_ht: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Recipe(Base):
    __tablename__ = "recipes"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    product_pf_id: Mapped[int] = mapped_column(
        ForeignKey("products_pf.id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    batch_weight: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    output_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    loss_tolerance: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=2, nullable=False)  # en %
    shelf_life_days: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    product_pf: Mapped[ProductPf] = relationship()
    items: Mapped[list["RecipeItem"]] = relationship(
        back_populates="recipe", cascade="all, delete-orphan", order_by="RecipeItem.sort_order"
    )


class RecipeItem(Base):
    __tablename__ = "recipe_items"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    recipe_id: Mapped[int] = mapped_column(ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False, index=True)
    product_mp_id: Mapped[int] = mapped_column(ForeignKey("products_mp.id", ondelete="RESTRICT"), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)  # par batch
    is_mandatory: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    affects_stock: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    recipe: Mapped[Recipe] = relationship(back_populates="items")
    product_mp: Mapped[ProductMp] = relationship()

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_recipe_item_qty_pos"),
        UniqueConstraint("recipe_id", "product_mp_id", name="uq_recipe_item_mp"),
    )


# ---------- LOTS ----------
class LotMp(Base):
    __tablename__ = "lots_mp"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    product_mp_id: Mapped[int] = mapped_column(ForeignKey("products_mp.id", ondelete="RESTRICT"), nullable=False)
    lot_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    quantity_initial: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    expiry_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[LotStatus] = mapped_column(
        Enum(LotStatus, name="lot_status"), default=LotStatus.available, nullable=False
    )
    supplier_id: Mapped[int | None] = mapped_column(ForeignKey("suppliers.id", ondelete="SET NULL"))
    reception_id: Mapped[int | None] = mapped_column(ForeignKey("receptions_mp.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    product_mp: Mapped[ProductMp] = relationship()

    __table_args__ = (
        CheckConstraint("quantity_remaining >= 0", name="ck_lot_mp_remaining_nonneg"),
        CheckConstraint("quantity_remaining <= quantity_initial", name="ck_lot_mp_remaining_le_initial"),
        Index("ix_lots_mp_fifo", "product_mp_id", "status", "created_at"),
    )


class LotPf(Base):
    __tablename__ = "lots_pf"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    product_pf_id: Mapped[int] = mapped_column(ForeignKey("products_pf.id", ondelete="RESTRICT"), nullable=False)
    lot_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    quantity_initial: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    manufacture_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[LotStatus] = mapped_column(
        Enum(LotStatus, name="lot_status"), default=LotStatus.available, nullable=False
    )
    production_order_id: Mapped[int | None] = mapped_column(
        ForeignKey("production_orders.id", ondelete="SET NULL", use_alter=True)
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (CheckConstraint("quantity_remaining >= 0", name="ck_lot_pf_remaining_nonneg"),)


# ---------- INVENTORY ----------
class StockMovement(Base):
    __tablename__ = "stock_movements"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    movement_type: Mapped[MovementType] = mapped_column(Enum(MovementType, name="movement_type"), nullable=False)
    product_type: Mapped[ProductType] = mapped_column(Enum(ProductType, name="product_type"), nullable=False)
    origin: Mapped[MovementOrigin] = mapped_column(Enum(MovementOrigin, name="movement_origin"), nullable=False)

    product_mp_id: Mapped[int | None] = mapped_column(ForeignKey("products_mp.id", ondelete="RESTRICT"), index=True)
    product_pf_id: Mapped[int | None] = mapped_column(ForeignKey("products_pf.id", ondelete="RESTRICT"), index=True)
    lot_mp_id: Mapped[int | None] = mapped_column(ForeignKey("lots_mp.id", ondelete="SET NULL"))
    lot_pf_id: Mapped[int | None] = mapped_column(ForeignKey("lots_pf.id", ondelete="SET NULL"))

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    reference_type: Mapped[str | None] = mapped_column(String(32))
    reference_id: Mapped[int | None] = mapped_column(Integer)
    reference: Mapped[str | None] = mapped_column(String(64))
    note: Mapped[str | None] = mapped_column(String(255))

    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_movement_qty_pos"),
        CheckConstraint(
            "(product_mp_id IS NOT NULL) OR (product_pf_id IS NOT NULL)",
            name="ck_stock_movement_has_product",
        ),
        Index("ix_stock_movements_created", "created_at", "id"),
    )


class ReceptionMp(Base):
    __tablename__ = "receptions_mp"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    reference: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    supplier_id: Mapped[int | None] = mapped_column(ForeignKey("suppliers.id", ondelete="RESTRICT"))
    status: Mapped[ReceptionStatus] = mapped_column(
        Enum(ReceptionStatus, name="reception_status"), default=ReceptionStatus.draft, nullable=False
    )
    source: Mapped[ReceptionSource] = mapped_column(
        Enum(ReceptionSource, name="reception_source"), default=ReceptionSource.manual, nullable=False
    )
    purchase_order_id: Mapped[int | None] = mapped_column(
        ForeignKey("purchase_orders.id", ondelete="SET NULL", use_alter=True)
    )
    demande_id: Mapped[int | None] = mapped_column(
        ForeignKey("demandes_appro.id", ondelete="SET NULL", use_alter=True)
    )
    bl_number: Mapped[str | None] = mapped_column(String(64))  # bon de livraison
    date_reception: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    validated_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    lines: Mapped[list["ReceptionMpLine"]] = relationship(back_populates="reception", cascade="all, delete-orphan")


class ReceptionMpLine(Base):
    __tablename__ = "reception_mp_lines"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    reception_id: Mapped[int] = mapped_column(
        ForeignKey("receptions_mp.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_mp_id: Mapped[int] = mapped_column(ForeignKey("products_mp.id", ondelete="RESTRICT"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    lot_number: Mapped[str | None] = mapped_column(String(64))
    expiry_date: Mapped[date | None] = mapped_column(Date)
    lot_mp_id: Mapped[int | None] = mapped_column(ForeignKey("lots_mp.id", ondelete="SET NULL"))

    reception: Mapped[ReceptionMp] = relationship(back_populates="lines")

    __table_args__ = (CheckConstraint("quantity >= 0", name="ck_reception_line_qty_nonneg"),)


# ---------- PROCUREMENT ----------
class DemandeAppro(Base):
    """Demande d'approvisionnement MP (production -> appro)."""

    __tablename__ = "demandes_appro"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    reference: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    status: Mapped[DemandeStatus] = mapped_column(
        Enum(DemandeStatus, name="demande_status"), default=DemandeStatus.brouillon, nullable=False
    )
    priority: Mapped[DemandePriority] = mapped_column(
        Enum(DemandePriority, name="demande_priority"), default=DemandePriority.normale, nullable=False
    )
    commentaire: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    validated_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejected_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    motif_rejet: Mapped[str | None] = mapped_column(Text)
    reception_id: Mapped[int | None] = mapped_column(ForeignKey("receptions_mp.id", ondelete="SET NULL"))
    transformed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    creator: Mapped[User] = relationship(foreign_keys=[created_by])
    lines: Mapped[list["DemandeApproLine"]] = relationship(back_populates="demande", cascade="all, delete-orphan")


class DemandeApproLine(Base):
    __tablename__ = "demande_appro_lines"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    demande_id: Mapped[int] = mapped_column(
        ForeignKey("demandes_appro.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_mp_id: Mapped[int] = mapped_column(ForeignKey("products_mp.id", ondelete="RESTRICT"), nullable=False)
    quantite_demandee: Mapped[int] = mapped_column(Integer, nullable=False)
    quantite_validee: Mapped[int | None] = mapped_column(Integer)
    commentaire: Mapped[str | None] = mapped_column(String(255))

    demande: Mapped[DemandeAppro] = relationship(back_populates="lines")
    product_mp: Mapped[ProductMp] = relationship()

    __table_args__ = (
        CheckConstraint("quantite_demandee > 0", name="ck_demande_line_qty_pos"),
        CheckConstraint("quantite_validee IS NULL OR quantite_validee >= 0", name="ck_demande_line_validee_nonneg"),
    )


class PurchaseOrder(Base):
    """Bon de commande fournisseur (BC)."""

    __tablename__ = "purchase_orders"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    reference: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False)
    demande_id: Mapped[int | None] = mapped_column(ForeignKey("demandes_appro.id", ondelete="SET NULL"))
    status: Mapped[POStatus] = mapped_column(Enum(POStatus, name="po_status"), default=POStatus.draft, nullable=False)
    expected_delivery: Mapped[date | None] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(Text)
    total_ht: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)

    created_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sent_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    sent_via: Mapped[SendVia | None] = mapped_column(Enum(SendVia, name="send_via"))
    supplier_email_to: Mapped[str | None] = mapped_column(String(255))
    message_id: Mapped[str | None] = mapped_column(String(128))
    proof_note: Mapped[str | None] = mapped_column(Text)
    proof_url: Mapped[str | None] = mapped_column(String(512))
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    confirmed_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    cancel_reason: Mapped[str | None] = mapped_column(Text)

    # Concurrence : version optimiste + verrou d'édition
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    locked_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    lock_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    supplier: Mapped[Supplier] = relationship()
    items: Mapped[list["PurchaseOrderItem"]] = relationship(
        back_populates="po", cascade="all, delete-orphan", order_by="PurchaseOrderItem.id"
    )

    __table_args__ = (
        CheckConstraint("total_ht >= 0", name="ck_po_total_nonneg"),
        Index("ix_purchase_orders_status_delivery", "status", "expected_delivery"),
    )


class PurchaseOrderItem(Base):
    __tablename__ = "purchase_order_items"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    purchase_order_id: Mapped[int] = mapped_column(
        ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_mp_id: Mapped[int] = mapped_column(ForeignKey("products_mp.id", ondelete="RESTRICT"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_received: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_ht: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    po: Mapped[PurchaseOrder] = relationship(back_populates="items")
    product_mp: Mapped[ProductMp] = relationship()

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_po_item_qty_pos"),
        CheckConstraint("quantity_received >= 0", name="ck_po_item_received_nonneg"),
        CheckConstraint("unit_price >= 0", name="ck_po_item_unit_price_nonneg"),
    )


# ---------- PRODUCTION ----------
class ProductionOrder(Base):
    __tablename__ = "production_orders"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    reference: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    recipe_id: Mapped[int] = mapped_column(ForeignKey("recipes.id", ondelete="RESTRICT"), nullable=False)
    product_pf_id: Mapped[int] = mapped_column(ForeignKey("products_pf.id", ondelete="RESTRICT"), nullable=False)
    batch_count: Mapped[int] = mapped_column(Integer, nullable=False)
    target_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_produced: Mapped[int | None] = mapped_column(Integer)
    yield_percentage: Mapped[Decimal | None] = mapped_column(Numeric(6, 2))
    status: Mapped[ProductionStatus] = mapped_column(
        Enum(ProductionStatus, name="production_status"), default=ProductionStatus.pending, nullable=False
    )
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    lot_pf_id: Mapped[int | None] = mapped_column(ForeignKey("lots_pf.id", ondelete="SET NULL"))
    notes: Mapped[str | None] = mapped_column(Text)
    cancel_reason: Mapped[str | None] = mapped_column(Text)

    created_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    recipe: Mapped[Recipe] = relationship()
    consumptions: Mapped[list["ProductionConsumption"]] = relationship(
        back_populates="production_order", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("batch_count > 0", name="ck_production_batch_pos"),
        CheckConstraint("target_quantity > 0", name="ck_production_target_pos"),
    )


class ProductionConsumption(Base):
    __tablename__ = "production_consumptions"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    production_order_id: Mapped[int] = mapped_column(
        ForeignKey("production_orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_mp_id: Mapped[int] = mapped_column(ForeignKey("products_mp.id", ondelete="RESTRICT"), nullable=False)
    lot_mp_id: Mapped[int] = mapped_column(ForeignKey("lots_mp.id", ondelete="RESTRICT"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    is_reversed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    production_order: Mapped[ProductionOrder] = relationship(back_populates="consumptions")

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_consumption_qty_pos"),)


# ---------- MONITORING ----------
class Alert(Base):
    __tablename__ = "alerts"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    type: Mapped[AlertType] = mapped_column(Enum(AlertType, name="alert_type"), nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(Enum(AlertSeverity, name="alert_severity"), nullable=False)
    status: Mapped[AlertStatus] = mapped_column(
        Enum(AlertStatus, name="alert_status"), default=AlertStatus.open, nullable=False
    )
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    threshold: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    meta: Mapped[dict | None] = mapped_column(JSON)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    acknowledged_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    closed_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    history: Mapped[list["AlertHistory"]] = relationship(
        back_populates="alert", cascade="all, delete-orphan", order_by="AlertHistory.id"
    )

    __table_args__ = (Index("ix_alerts_entity_status", "type", "entity_type", "entity_id", "status"),)


class AlertHistory(Base):
    __tablename__ = "alert_history"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    alert_id: Mapped[int] = mapped_column(ForeignKey("alerts.id", ondelete="CASCADE"), nullable=False, index=True)
    action: Mapped[AlertHistoryAction] = mapped_column(
        Enum(AlertHistoryAction, name="alert_history_action"), nullable=False
    )
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    note: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    alert: Mapped[Alert] = relationship(back_populates="history")


# ---------- AUDIT ----------
class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    actor_role: Mapped[str | None] = mapped_column(String(32))
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    meta: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_entity", "entity_type", "entity_id"),
        Index("ix_audit_action", "action"),
    )
