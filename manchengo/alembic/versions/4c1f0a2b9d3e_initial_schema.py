"""initial schema: master data, lots, stock, procurement, production, alerts, audit

Revision ID: 4c1f0a2b9d3e
Revises:
Create Date: 2026-09-28 09:12:41.503218
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

from manchengo.app.db.models.core_types import (
    AlertHistoryAction,
    AlertSeverity,
    AlertStatus,
    AlertType,
    Criticality,
    DemandePriority,
    DemandeStatus,
    LotStatus,
    MovementOrigin,
    MovementType,
    POStatus,
    ProductionStatus,
    ProductType,
    ReceptionSource,
    ReceptionStatus,
    Role,
    SendVia,
    SupplierGrade,
)

# revision identifiers, used by Alembic.
revision: str = "4c1f0a2b9d3e"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS = {
    "role": Role,
    "criticality": Criticality,
    "supplier_grade": SupplierGrade,
    "product_type": ProductType,
    "movement_type": MovementType,
    "movement_origin": MovementOrigin,
    "lot_status": LotStatus,
    "po_status": POStatus,
    "send_via": SendVia,
    "demande_status": DemandeStatus,
    "demande_priority": DemandePriority,
    "reception_status": ReceptionStatus,
    "reception_source": ReceptionSource,
    "production_status": ProductionStatus,
    "alert_type": AlertType,
    "alert_severity": AlertSeverity,
    "alert_status": AlertStatus,
    "alert_history_action": AlertHistoryAction,
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(ENUMS[name], name=name)


def _pk() -> sa.Column:
    return sa.Column("id", sa.BigInteger(), primary_key=True)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)


def _user_fk(name: str, nullable: bool = True, ondelete: str = "SET NULL") -> sa.Column:
    return sa.Column(name, sa.BigInteger(), sa.ForeignKey("users.id", ondelete=ondelete), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "users",
        _pk(),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("role", _enum("role"), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        _created_at(),
    )

    op.create_table(
        "suppliers",
        _pk(),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("contact_name", sa.String(200)),
        sa.Column("email", sa.String(255)),
        sa.Column("phone", sa.String(32)),
        sa.Column("address", sa.Text()),
        sa.Column("nif", sa.String(32)),
        sa.Column("lead_time_days", sa.Integer(), nullable=False),
        sa.Column("grade", _enum("supplier_grade"), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        _created_at(),
        sa.CheckConstraint("lead_time_days >= 0", name="ck_supplier_lead_time_nonneg"),
    )

    op.create_table(
        "products_mp",
        _pk(),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(16), nullable=False),
        sa.Column("category", sa.String(64)),
        sa.Column("min_stock", sa.Integer(), nullable=False),
        sa.Column("safety_threshold", sa.Integer()),
        sa.Column("reorder_threshold", sa.Integer()),
        sa.Column("reorder_quantity", sa.Integer()),
        sa.Column("lead_time_days", sa.Integer(), nullable=False),
        sa.Column("criticality", _enum("criticality"), nullable=False),
        sa.Column("avg_daily_consumption", sa.Numeric(14, 3), nullable=False),
        sa.Column("metrics_updated_at", sa.DateTime(timezone=True)),
        sa.Column("main_supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="SET NULL")),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_stock_tracked", sa.Boolean(), nullable=False),
        _created_at(),
        sa.CheckConstraint("min_stock >= 0", name="ck_mp_min_stock_nonneg"),
        sa.CheckConstraint("lead_time_days >= 0", name="ck_mp_lead_time_nonneg"),
    )

    op.create_table(
        "products_pf",
        _pk(),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(16), nullable=False),
        sa.Column("min_stock", sa.Integer(), nullable=False),
        sa.Column("price_ht", sa.Numeric(14, 2)),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _created_at(),
    )

    op.create_table(
        "recipes",
        _pk(),
        sa.Column(
            "product_pf_id", sa.BigInteger(), sa.ForeignKey("products_pf.id", ondelete="RESTRICT"),
            nullable=False, unique=True,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("batch_weight", sa.Numeric(14, 3), nullable=False),
        sa.Column("output_quantity", sa.Integer(), nullable=False),
        sa.Column("loss_tolerance", sa.Numeric(5, 2), nullable=False),
        sa.Column("shelf_life_days", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _created_at(),
    )

    op.create_table(
        "recipe_items",
        _pk(),
        sa.Column("recipe_id", sa.BigInteger(), sa.ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "product_mp_id", sa.BigInteger(), sa.ForeignKey("products_mp.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False),
        sa.Column("is_mandatory", sa.Boolean(), nullable=False),
        sa.Column("affects_stock", sa.Boolean(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_recipe_item_qty_pos"),
        sa.UniqueConstraint("recipe_id", "product_mp_id", name="uq_recipe_item_mp"),
    )
    op.create_index("ix_recipe_items_recipe_id", "recipe_items", ["recipe_id"])

    # purchase_order_id / demande_id : FK ajoutées en fin de migration (tables créées plus bas)
    op.create_table(
        "receptions_mp",
        _pk(),
        sa.Column("reference", sa.String(32), nullable=False, unique=True),
        sa.Column("supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="RESTRICT")),
        sa.Column("status", _enum("reception_status"), nullable=False),
        sa.Column("source", _enum("reception_source"), nullable=False),
        sa.Column("purchase_order_id", sa.BigInteger()),
        sa.Column("demande_id", sa.BigInteger()),
        sa.Column("bl_number", sa.String(64)),
        sa.Column("date_reception", sa.Date(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("validated_at", sa.DateTime(timezone=True)),
        _user_fk("validated_by"),
        _user_fk("created_by"),
        _created_at(),
    )

    op.create_table(
        "lots_mp",
        _pk(),
        sa.Column(
            "product_mp_id", sa.BigInteger(), sa.ForeignKey("products_mp.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("lot_number", sa.String(64), nullable=False, unique=True),
        sa.Column("quantity_initial", sa.Integer(), nullable=False),
        sa.Column("quantity_remaining", sa.Integer(), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 2)),
        sa.Column("expiry_date", sa.Date()),
        sa.Column("status", _enum("lot_status"), nullable=False),
        sa.Column("supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="SET NULL")),
        sa.Column("reception_id", sa.BigInteger(), sa.ForeignKey("receptions_mp.id", ondelete="SET NULL")),
        _created_at(),
        sa.CheckConstraint("quantity_remaining >= 0", name="ck_lot_mp_remaining_nonneg"),
        sa.CheckConstraint("quantity_remaining <= quantity_initial", name="ck_lot_mp_remaining_le_initial"),
    )
    op.create_index("ix_lots_mp_fifo", "lots_mp", ["product_mp_id", "status", "created_at"])

    op.create_table(
        "reception_mp_lines",
        _pk(),
        sa.Column(
            "reception_id", sa.BigInteger(), sa.ForeignKey("receptions_mp.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "product_mp_id", sa.BigInteger(), sa.ForeignKey("products_mp.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 2)),
        sa.Column("lot_number", sa.String(64)),
        sa.Column("expiry_date", sa.Date()),
        sa.Column("lot_mp_id", sa.BigInteger(), sa.ForeignKey("lots_mp.id", ondelete="SET NULL")),
        sa.CheckConstraint("quantity >= 0", name="ck_reception_line_qty_nonneg"),
    )
    op.create_index("ix_reception_mp_lines_reception_id", "reception_mp_lines", ["reception_id"])

    op.create_table(
        "demandes_appro",
        _pk(),
        sa.Column("reference", sa.String(32), nullable=False, unique=True),
        sa.Column("status", _enum("demande_status"), nullable=False),
        sa.Column("priority", _enum("demande_priority"), nullable=False),
        sa.Column("commentaire", sa.Text()),
        _user_fk("created_by", nullable=False, ondelete="RESTRICT"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True)),
        _user_fk("validated_by"),
        sa.Column("validated_at", sa.DateTime(timezone=True)),
        _user_fk("rejected_by"),
        sa.Column("rejected_at", sa.DateTime(timezone=True)),
        sa.Column("motif_rejet", sa.Text()),
        sa.Column("reception_id", sa.BigInteger(), sa.ForeignKey("receptions_mp.id", ondelete="SET NULL")),
        sa.Column("transformed_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "demande_appro_lines",
        _pk(),
        sa.Column(
            "demande_id", sa.BigInteger(), sa.ForeignKey("demandes_appro.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "product_mp_id", sa.BigInteger(), sa.ForeignKey("products_mp.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("quantite_demandee", sa.Integer(), nullable=False),
        sa.Column("quantite_validee", sa.Integer()),
        sa.Column("commentaire", sa.String(255)),
        sa.CheckConstraint("quantite_demandee > 0", name="ck_demande_line_qty_pos"),
        sa.CheckConstraint(
            "quantite_validee IS NULL OR quantite_validee >= 0", name="ck_demande_line_validee_nonneg"
        ),
    )
    op.create_index("ix_demande_appro_lines_demande_id", "demande_appro_lines", ["demande_id"])

    op.create_table(
        "purchase_orders",
        _pk(),
        sa.Column("reference", sa.String(32), nullable=False, unique=True),
        sa.Column("supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("demande_id", sa.BigInteger(), sa.ForeignKey("demandes_appro.id", ondelete="SET NULL")),
        sa.Column("status", _enum("po_status"), nullable=False),
        sa.Column("expected_delivery", sa.Date()),
        sa.Column("notes", sa.Text()),
        sa.Column("total_ht", sa.Numeric(14, 2), nullable=False),
        _user_fk("created_by", nullable=False, ondelete="RESTRICT"),
        _created_at(),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        _user_fk("sent_by"),
        sa.Column("sent_via", _enum("send_via")),
        sa.Column("supplier_email_to", sa.String(255)),
        sa.Column("message_id", sa.String(128)),
        sa.Column("proof_note", sa.Text()),
        sa.Column("proof_url", sa.String(512)),
        sa.Column("confirmed_at", sa.DateTime(timezone=True)),
        _user_fk("confirmed_by"),
        sa.Column("received_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        _user_fk("cancelled_by"),
        sa.Column("cancel_reason", sa.Text()),
        sa.Column("version", sa.Integer(), nullable=False),
        _user_fk("locked_by"),
        sa.Column("locked_at", sa.DateTime(timezone=True)),
        sa.Column("lock_expires_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("total_ht >= 0", name="ck_po_total_nonneg"),
    )
    op.create_index("ix_purchase_orders_status_delivery", "purchase_orders", ["status", "expected_delivery"])

    op.create_table(
        "purchase_order_items",
        _pk(),
        sa.Column(
            "purchase_order_id", sa.BigInteger(), sa.ForeignKey("purchase_orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "product_mp_id", sa.BigInteger(), sa.ForeignKey("products_mp.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("quantity_received", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_ht", sa.Numeric(14, 2), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_po_item_qty_pos"),
        sa.CheckConstraint("quantity_received >= 0", name="ck_po_item_received_nonneg"),
        sa.CheckConstraint("unit_price >= 0", name="ck_po_item_unit_price_nonneg"),
    )
    op.create_index("ix_purchase_order_items_purchase_order_id", "purchase_order_items", ["purchase_order_id"])

    # production_order_id : FK ajoutée en fin de migration
    op.create_table(
        "lots_pf",
        _pk(),
        sa.Column(
            "product_pf_id", sa.BigInteger(), sa.ForeignKey("products_pf.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("lot_number", sa.String(64), nullable=False, unique=True),
        sa.Column("quantity_initial", sa.Integer(), nullable=False),
        sa.Column("quantity_remaining", sa.Integer(), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 2)),
        sa.Column("manufacture_date", sa.Date(), nullable=False),
        sa.Column("expiry_date", sa.Date()),
        sa.Column("status", _enum("lot_status"), nullable=False),
        sa.Column("production_order_id", sa.BigInteger()),
        _created_at(),
        sa.CheckConstraint("quantity_remaining >= 0", name="ck_lot_pf_remaining_nonneg"),
    )

    op.create_table(
        "production_orders",
        _pk(),
        sa.Column("reference", sa.String(32), nullable=False, unique=True),
        sa.Column("recipe_id", sa.BigInteger(), sa.ForeignKey("recipes.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "product_pf_id", sa.BigInteger(), sa.ForeignKey("products_pf.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("batch_count", sa.Integer(), nullable=False),
        sa.Column("target_quantity", sa.Integer(), nullable=False),
        sa.Column("quantity_produced", sa.Integer()),
        sa.Column("yield_percentage", sa.Numeric(6, 2)),
        sa.Column("status", _enum("production_status"), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 2)),
        sa.Column("lot_pf_id", sa.BigInteger(), sa.ForeignKey("lots_pf.id", ondelete="SET NULL")),
        sa.Column("notes", sa.Text()),
        sa.Column("cancel_reason", sa.Text()),
        _user_fk("created_by", nullable=False, ondelete="RESTRICT"),
        _created_at(),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("batch_count > 0", name="ck_production_batch_pos"),
        sa.CheckConstraint("target_quantity > 0", name="ck_production_target_pos"),
    )

    op.create_table(
        "production_consumptions",
        _pk(),
        sa.Column(
            "production_order_id", sa.BigInteger(), sa.ForeignKey("production_orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "product_mp_id", sa.BigInteger(), sa.ForeignKey("products_mp.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("lot_mp_id", sa.BigInteger(), sa.ForeignKey("lots_mp.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 2)),
        sa.Column("is_reversed", sa.Boolean(), nullable=False),
        _created_at(),
        sa.CheckConstraint("quantity > 0", name="ck_consumption_qty_pos"),
    )
    op.create_index(
        "ix_production_consumptions_production_order_id", "production_consumptions", ["production_order_id"]
    )

    op.create_table(
        "stock_movements",
        _pk(),
        sa.Column("movement_type", _enum("movement_type"), nullable=False),
        sa.Column("product_type", _enum("product_type"), nullable=False),
        sa.Column("origin", _enum("movement_origin"), nullable=False),
        sa.Column("product_mp_id", sa.BigInteger(), sa.ForeignKey("products_mp.id", ondelete="RESTRICT")),
        sa.Column("product_pf_id", sa.BigInteger(), sa.ForeignKey("products_pf.id", ondelete="RESTRICT")),
        sa.Column("lot_mp_id", sa.BigInteger(), sa.ForeignKey("lots_mp.id", ondelete="SET NULL")),
        sa.Column("lot_pf_id", sa.BigInteger(), sa.ForeignKey("lots_pf.id", ondelete="SET NULL")),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 2)),
        sa.Column("reference_type", sa.String(32)),
        sa.Column("reference_id", sa.Integer()),
        sa.Column("reference", sa.String(64)),
        sa.Column("note", sa.String(255)),
        sa.Column("idempotency_key", sa.String(128), unique=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False),
        _user_fk("created_by"),
        _created_at(),
        sa.CheckConstraint("quantity > 0", name="ck_stock_movement_qty_pos"),
        sa.CheckConstraint(
            "(product_mp_id IS NOT NULL) OR (product_pf_id IS NOT NULL)", name="ck_stock_movement_has_product"
        ),
    )
    op.create_index("ix_stock_movements_product_mp_id", "stock_movements", ["product_mp_id"])
    op.create_index("ix_stock_movements_product_pf_id", "stock_movements", ["product_pf_id"])
    op.create_index("ix_stock_movements_created", "stock_movements", ["created_at", "id"])

    op.create_table(
        "alerts",
        _pk(),
        sa.Column("type", _enum("alert_type"), nullable=False),
        sa.Column("severity", _enum("alert_severity"), nullable=False),
        sa.Column("status", _enum("alert_status"), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("value", sa.Numeric(14, 3)),
        sa.Column("threshold", sa.Numeric(14, 3)),
        sa.Column("meta", sa.JSON()),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        _user_fk("acknowledged_by"),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True)),
        _user_fk("closed_by"),
        sa.Column("closed_at", sa.DateTime(timezone=True)),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_alerts_entity_status", "alerts", ["type", "entity_type", "entity_id", "status"])

    op.create_table(
        "alert_history",
        _pk(),
        sa.Column("alert_id", sa.BigInteger(), sa.ForeignKey("alerts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("action", _enum("alert_history_action"), nullable=False),
        _user_fk("user_id"),
        sa.Column("note", sa.Text()),
        _created_at(),
    )
    op.create_index("ix_alert_history_alert_id", "alert_history", ["alert_id"])

    op.create_table(
        "audit_log",
        _pk(),
        _user_fk("actor_id"),
        sa.Column("actor_role", sa.String(32)),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("meta", sa.JSON()),
        _created_at(),
    )
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])
    op.create_index("ix_audit_action", "audit_log", ["action"])

    # FK circulaires
    op.create_foreign_key(
        "fk_receptions_mp_purchase_order", "receptions_mp", "purchase_orders",
        ["purchase_order_id"], ["id"], ondelete="SET NULL",
    )
    op.create_foreign_key(
        "fk_receptions_mp_demande", "receptions_mp", "demandes_appro",
        ["demande_id"], ["id"], ondelete="SET NULL",
    )
    op.create_foreign_key(
        "fk_lots_pf_production_order", "lots_pf", "production_orders",
        ["production_order_id"], ["id"], ondelete="SET NULL",
    )


def downgrade() -> None:
    op.drop_constraint("fk_lots_pf_production_order", "lots_pf", type_="foreignkey")
    op.drop_constraint("fk_receptions_mp_demande", "receptions_mp", type_="foreignkey")
    op.drop_constraint("fk_receptions_mp_purchase_order", "receptions_mp", type_="foreignkey")

    for table in (
        "audit_log",
        "alert_history",
        "alerts",
        "stock_movements",
        "production_consumptions",
        "production_orders",
        "lots_pf",
        "purchase_order_items",
        "purchase_orders",
        "demande_appro_lines",
        "demandes_appro",
        "reception_mp_lines",
        "lots_mp",
        "receptions_mp",
        "recipe_items",
        "recipes",
        "products_pf",
        "products_mp",
        "suppliers",
        "users",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in ENUMS:
        sa.Enum(name=name).drop(bind, checkfirst=True)
