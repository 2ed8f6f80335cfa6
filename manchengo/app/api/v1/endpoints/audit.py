from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from manchengo.app.api.deps import cursor_params, get_db, require_roles
from manchengo.app.db.models.models_v1 import User
from manchengo.app.schemas.common import serializer
from manchengo.app.schemas.operations import AuditLogRead
from manchengo.services.pagination import (
    CursorPageRequest,
    OffsetPageRequest,
    paginate_audit_logs,
    paginate_audit_logs_offset,
)

router = APIRouter(prefix="/audit")


@router.get("")
def list_audit_logs(
    params: CursorPageRequest = Depends(cursor_params),
    page: int | None = Query(default=None, ge=1),
    action: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    actor_id: int | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles()),
):
    """Journal d'audit (ADMIN). `page` bascule en pagination offset, avec total."""
    filters = {"action": action, "entity_type": entity_type, "entity_id": entity_id, "actor_id": actor_id}
    if page is not None:
        request = OffsetPageRequest(
            page=page, limit=params.limit, sort_by=params.sort_by, sort_direction=params.sort_direction
        )
        result = paginate_audit_logs_offset(db, request, **filters)
    else:
        result = paginate_audit_logs(db, params, **filters)
    return result.to_dict(serializer(AuditLogRead))
