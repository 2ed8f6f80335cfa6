"""
Pagination service.

Deux modes :
- cursor (keyset) : stable même si des lignes sont insérées entre deux pages ;
- offset : page/limit classique, avec total (écrans d'administration).

Format du curseur (opaque pour le client) :
    base64url( JSON {"id": <pk>, "sortField": <champ>, "sortValue": <valeur>} )

Règle keyset (tri sur un champ autre que id) :
    (sortField = v AND id OP cid) OR (sortField OP v)
avec OP = '>' pour (forward, asc) / (backward, desc), '<' sinon.
Le tri final est toujours (sortField, id) : id départage les ex-aequo.
"""

from __future__ import annotations

import base64
import enum
import json
import logging
import math
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Literal, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import Select, and_, func, or_, select
from sqlalchemy.orm import Session

from manchengo.app.db.models.models_v1 import (
    Alert,
    AuditLog,
    DemandeAppro,
    LotMp,
    ProductionOrder,
    ProductMp,
    ProductPf,
    PurchaseOrder,
    StockMovement,
    Supplier,
)
from manchengo.app.settings import PAGINATION_DEFAULT_LIMIT, PAGINATION_MAX_LIMIT
from manchengo.services.errors import InvalidCursorError, InvalidSortError

logger = logging.getLogger(__name__)

SortDirection = Literal["asc", "desc"]
PageDirection = Literal["forward", "backward"]


# ---------- Types ----------
class SortOptions(BaseModel):
    field: str
    direction: SortDirection = "desc"


class CursorPageRequest(BaseModel):
    cursor: str | None = None
    limit: int | None = Field(default=None, ge=1)
    sort_by: str | None = None
    sort_direction: SortDirection | None = None
    direction: PageDirection = "forward"


class OffsetPageRequest(BaseModel):
    page: int | None = Field(default=None, ge=1)
    limit: int | None = Field(default=None, ge=1)
    sort_by: str | None = None
    sort_direction: SortDirection | None = None


@dataclass(frozen=True)
class DecodedCursor:
    id: int
    sort_field: str | None = None
    sort_value: Any = None


@dataclass
class CursorPagination:
    cursor: str | None
    next_cursor: str | None
    prev_cursor: str | None
    has_more: bool
    has_previous: bool
    limit: int


@dataclass
class CursorPage:
    data: list
    pagination: CursorPagination

    def to_dict(self, serialize: Callable[[Any], dict]) -> dict:
        return {"data": [serialize(row) for row in self.data], "pagination": asdict(self.pagination)}


@dataclass
class OffsetPagination:
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_previous: bool


@dataclass
class OffsetPage:
    data: list
    pagination: OffsetPagination

    def to_dict(self, serialize: Callable[[Any], dict]) -> dict:
        return {"data": [serialize(row) for row in self.data], "pagination": asdict(self.pagination)}


# ---------- Cursor codec ----------
def _to_json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    return value


def encode_cursor(decoded: DecodedCursor) -> str:
    payload = {
        "id": decoded.id,
        "sortField": decoded.sort_field,
        "sortValue": _to_json_value(decoded.sort_value),
    }
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str | None) -> DecodedCursor | None:
    """Retourne None pour un curseur illisible (l'appelant repart de la 1re page)."""
    if not cursor:
        return None
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except ValueError:
        # binascii.Error, UnicodeError et JSONDecodeError sont des ValueError
        return None

    if not isinstance(payload, dict):
        return None
    cursor_id = payload.get("id")
    if isinstance(cursor_id, bool) or not isinstance(cursor_id, int):
        return None
    return DecodedCursor(
        id=cursor_id,
        sort_field=payload.get("sortField"),
        sort_value=payload.get("sortValue"),
    )


def coerce_sort_value(column, raw: Any) -> Any:
    """Remet la valeur JSON du curseur dans le type Python de la colonne."""
    if raw is None:
        raise InvalidCursorError("Cursor has no sort value")
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return raw

    try:
        if python_type is datetime:
            return datetime.fromisoformat(raw)
        if python_type is date:
            return date.fromisoformat(raw)
        if python_type is Decimal:
            return Decimal(str(raw))
        if issubclass(python_type, enum.Enum):
            return python_type(raw)
        if isinstance(raw, python_type):
            return raw
        return python_type(raw)
    except (TypeError, ValueError, InvalidOperation) as exc:
        raise InvalidCursorError(
            "Cursor sort value does not match column type",
            details={"sort_value": raw},
        ) from exc


# ---------- Keyset ----------
def cursor_operator(sort_direction: SortDirection, page_direction: PageDirection) -> str:
    forward = page_direction == "forward"
    ascending = sort_direction == "asc"
    return "gt" if forward == ascending else "lt"


def _compare(column, op: str, value):
    return column > value if op == "gt" else column < value


def build_cursor_where(model, cursor: DecodedCursor, sort: SortOptions, direction: PageDirection = "forward"):
    op = cursor_operator(sort.direction, direction)
    if sort.field == "id":
        return _compare(model.id, op, cursor.id)

    column = getattr(model, sort.field)
    value = coerce_sort_value(column, cursor.sort_value)
    return or_(
        and_(column == value, _compare(model.id, op, cursor.id)),
        _compare(column, op, value),
    )


def _order_by(model, sort: SortOptions, *, reverse: bool = False) -> list:
    ascending = (sort.direction == "asc") != reverse
    columns = [model.id] if sort.field == "id" else [getattr(model, sort.field), model.id]
    return [c.asc() if ascending else c.desc() for c in columns]


def _clamp_limit(limit: int | None) -> int:
    return max(1, min(limit or PAGINATION_DEFAULT_LIMIT, PAGINATION_MAX_LIMIT))


def _resolve_sort(
    sort_by: str | None,
    sort_direction: SortDirection | None,
    sortable: Sequence[str],
    default_sort: SortOptions,
) -> SortOptions:
    field = sort_by or default_sort.field
    if field not in sortable:
        raise InvalidSortError(
            f"Cannot sort by '{field}'",
            details={"sortable": list(sortable)},
        )
    direction = sort_direction or (default_sort.direction if field == default_sort.field else "desc")
    return SortOptions(field=field, direction=direction)


def _cursor_for(row, sort: SortOptions) -> str:
    return encode_cursor(DecodedCursor(id=row.id, sort_field=sort.field, sort_value=getattr(row, sort.field)))


# ---------- Paginators ----------
def cursor_paginate(
    db: Session,
    stmt: Select,
    model,
    request: CursorPageRequest,
    *,
    sortable: Sequence[str],
    default_sort: SortOptions,
) -> CursorPage:
    """
    Pagination keyset générique.

    On lit limit + 1 lignes : la ligne en trop indique qu'il reste des
    données dans le sens de lecture, puis elle est retirée.
    En backward, la requête tourne à l'envers et les lignes sont remises
    dans l'ordre d'affichage avant retour.
    """
    limit = _clamp_limit(request.limit)
    sort = _resolve_sort(request.sort_by, request.sort_direction, sortable, default_sort)
    backward = request.direction == "backward"

    cursor = decode_cursor(request.cursor)
    if request.cursor and cursor is None:
        logger.warning("Ignoring malformed pagination cursor for %s", model.__tablename__)

    if cursor is not None:
        if cursor.sort_field != sort.field:
            raise InvalidCursorError(
                "Cursor was issued for another sort field",
                details={"cursor_sort_field": cursor.sort_field, "sort_field": sort.field},
            )
        stmt = stmt.where(build_cursor_where(model, cursor, sort, request.direction))

    stmt = stmt.order_by(*_order_by(model, sort, reverse=backward)).limit(limit + 1)
    rows = list(db.execute(stmt).scalars().all())

    has_extra = len(rows) > limit
    rows = rows[:limit]
    if backward:
        rows.reverse()

    if backward:
        has_previous = has_extra
        has_more = cursor is not None
    else:
        has_more = has_extra
        has_previous = cursor is not None

    next_cursor = _cursor_for(rows[-1], sort) if rows and has_more else None
    prev_cursor = _cursor_for(rows[0], sort) if rows and has_previous else None

    return CursorPage(
        data=rows,
        pagination=CursorPagination(
            cursor=request.cursor if cursor is not None else None,
            next_cursor=next_cursor,
            prev_cursor=prev_cursor,
            has_more=has_more,
            has_previous=has_previous,
            limit=limit,
        ),
    )


def offset_paginate(
    db: Session,
    stmt: Select,
    model,
    request: OffsetPageRequest,
    *,
    sortable: Sequence[str],
    default_sort: SortOptions,
) -> OffsetPage:
    page = max(request.page or 1, 1)
    limit = _clamp_limit(request.limit)
    sort = _resolve_sort(request.sort_by, request.sort_direction, sortable, default_sort)

    total = db.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
    rows = (
        db.execute(stmt.order_by(*_order_by(model, sort)).offset((page - 1) * limit).limit(limit))
        .scalars()
        .all()
    )

    total_pages = math.ceil(total / limit) if total else 0
    return OffsetPage(
        data=list(rows),
        pagination=OffsetPagination(
            page=page,
            limit=limit,
            total=int(total),
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        ),
    )


# ---------- Ressources ----------
def _search(model, search: str | None):
    if not search:
        return None
    pattern = f"%{search.strip()}%"
    return or_(model.code.ilike(pattern), model.name.ilike(pattern))


def paginate_products_mp(
    db: Session,
    request: CursorPageRequest,
    *,
    search: str | None = None,
    category: str | None = None,
    criticality=None,
) -> CursorPage:
    stmt = select(ProductMp).where(ProductMp.is_active.is_(True))
    if (clause := _search(ProductMp, search)) is not None:
        stmt = stmt.where(clause)
    if category:
        stmt = stmt.where(ProductMp.category == category)
    if criticality:
        stmt = stmt.where(ProductMp.criticality == criticality)
    return cursor_paginate(
        db, stmt, ProductMp, request,
        sortable=("code", "name", "min_stock", "created_at", "id"),
        default_sort=SortOptions(field="code", direction="asc"),
    )


def paginate_products_pf(db: Session, request: CursorPageRequest, *, search: str | None = None) -> CursorPage:
    stmt = select(ProductPf).where(ProductPf.is_active.is_(True))
    if (clause := _search(ProductPf, search)) is not None:
        stmt = stmt.where(clause)
    return cursor_paginate(
        db, stmt, ProductPf, request,
        sortable=("code", "name", "created_at", "id"),
        default_sort=SortOptions(field="code", direction="asc"),
    )


def paginate_suppliers(
    db: Session,
    request: CursorPageRequest,
    *,
    search: str | None = None,
    grade=None,
) -> CursorPage:
    stmt = select(Supplier).where(Supplier.active.is_(True))
    if (clause := _search(Supplier, search)) is not None:
        stmt = stmt.where(clause)
    if grade:
        stmt = stmt.where(Supplier.grade == grade)
    return cursor_paginate(
        db, stmt, Supplier, request,
        sortable=("name", "code", "lead_time_days", "created_at", "id"),
        default_sort=SortOptions(field="name", direction="asc"),
    )


def paginate_stock_movements(
    db: Session,
    request: CursorPageRequest,
    *,
    product_type=None,
    product_mp_id: int | None = None,
    product_pf_id: int | None = None,
    movement_type=None,
    origin=None,
) -> CursorPage:
    stmt = select(StockMovement).where(StockMovement.is_deleted.is_(False))
    if product_type:
        stmt = stmt.where(StockMovement.product_type == product_type)
    if product_mp_id is not None:
        stmt = stmt.where(StockMovement.product_mp_id == product_mp_id)
    if product_pf_id is not None:
        stmt = stmt.where(StockMovement.product_pf_id == product_pf_id)
    if movement_type:
        stmt = stmt.where(StockMovement.movement_type == movement_type)
    if origin:
        stmt = stmt.where(StockMovement.origin == origin)
    return cursor_paginate(
        db, stmt, StockMovement, request,
        sortable=("created_at", "quantity", "id"),
        default_sort=SortOptions(field="created_at", direction="desc"),
    )


def paginate_lots_mp(
    db: Session,
    request: CursorPageRequest,
    *,
    product_mp_id: int | None = None,
    status=None,
) -> CursorPage:
    stmt = select(LotMp)
    if product_mp_id is not None:
        stmt = stmt.where(LotMp.product_mp_id == product_mp_id)
    if status:
        stmt = stmt.where(LotMp.status == status)
    return cursor_paginate(
        db, stmt, LotMp, request,
        sortable=("created_at", "lot_number", "quantity_remaining", "id"),
        default_sort=SortOptions(field="created_at", direction="desc"),
    )


def paginate_production_orders(
    db: Session,
    request: CursorPageRequest,
    *,
    status=None,
    product_pf_id: int | None = None,
) -> CursorPage:
    stmt = select(ProductionOrder)
    if status:
        stmt = stmt.where(ProductionOrder.status == status)
    if product_pf_id is not None:
        stmt = stmt.where(ProductionOrder.product_pf_id == product_pf_id)
    return cursor_paginate(
        db, stmt, ProductionOrder, request,
        sortable=("created_at", "reference", "id"),
        default_sort=SortOptions(field="created_at", direction="desc"),
    )


def paginate_purchase_orders(
    db: Session,
    request: CursorPageRequest,
    *,
    status=None,
    supplier_id: int | None = None,
) -> CursorPage:
    stmt = select(PurchaseOrder)
    if status:
        stmt = stmt.where(PurchaseOrder.status == status)
    if supplier_id is not None:
        stmt = stmt.where(PurchaseOrder.supplier_id == supplier_id)
    return cursor_paginate(
        db, stmt, PurchaseOrder, request,
        sortable=("created_at", "reference", "total_ht", "id"),
        default_sort=SortOptions(field="created_at", direction="desc"),
    )


def paginate_demandes(
    db: Session,
    request: CursorPageRequest,
    *,
    status=None,
    created_by: int | None = None,
) -> CursorPage:
    stmt = select(DemandeAppro)
    if status:
        stmt = stmt.where(DemandeAppro.status == status)
    if created_by is not None:
        stmt = stmt.where(DemandeAppro.created_by == created_by)
    return cursor_paginate(
        db, stmt, DemandeAppro, request,
        sortable=("created_at", "reference", "id"),
        default_sort=SortOptions(field="created_at", direction="desc"),
    )


def paginate_alerts(
    db: Session,
    request: CursorPageRequest,
    *,
    type=None,
    severity=None,
    status=None,
) -> CursorPage:
    stmt = select(Alert)
    if type:
        stmt = stmt.where(Alert.type == type)
    if severity:
        stmt = stmt.where(Alert.severity == severity)
    if status:
        stmt = stmt.where(Alert.status == status)
    return cursor_paginate(
        db, stmt, Alert, request,
        sortable=("created_at", "id"),
        default_sort=SortOptions(field="created_at", direction="desc"),
    )


AUDIT_SORTABLE = ("created_at", "id")
AUDIT_DEFAULT_SORT = SortOptions(field="created_at", direction="desc")


def _audit_stmt(
    *,
    action: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    actor_id: int | None = None,
) -> Select:
    stmt = select(AuditLog)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == entity_id)
    if actor_id is not None:
        stmt = stmt.where(AuditLog.actor_id == actor_id)
    return stmt


def paginate_audit_logs(db: Session, request: CursorPageRequest, **filters) -> CursorPage:
    return cursor_paginate(
        db, _audit_stmt(**filters), AuditLog, request,
        sortable=AUDIT_SORTABLE, default_sort=AUDIT_DEFAULT_SORT,
    )


def paginate_audit_logs_offset(db: Session, request: OffsetPageRequest, **filters) -> OffsetPage:
    return offset_paginate(
        db, _audit_stmt(**filters), AuditLog, request,
        sortable=AUDIT_SORTABLE, default_sort=AUDIT_DEFAULT_SORT,
    )
