from __future__ import annotations

from typing import Generator

from fastapi import Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from manchengo.app.db.session import SessionLocal
from manchengo.app.db.models.models_v1 import User
from manchengo.app.db.models.core_types import Role
from manchengo.services.pagination import CursorPageRequest, PageDirection, SortDirection


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    db: Session = Depends(get_db),
    user_id: int | None = Header(default=None, alias="X-User-Id"),
) -> User:
    # L'authentification (JWT) est faite en amont : on reçoit l'id utilisateur résolu
    if user_id is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user = db.get(User, user_id)
    if not user or not user.active:
        raise HTTPException(status_code=401, detail="Unknown or inactive user")
    return user


def cursor_params(
    cursor: str | None = None,
    limit: int | None = Query(default=None, ge=1),
    sort_by: str | None = None,
    sort_direction: SortDirection | None = None,
    direction: PageDirection = "forward",
) -> CursorPageRequest:
    return CursorPageRequest(
        cursor=cursor,
        limit=limit,
        sort_by=sort_by,
        sort_direction=sort_direction,
        direction=direction,
    )


def require_roles(*roles: Role):
    allowed = set(roles) | {Role.admin}

    def _checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            raise HTTPException(status_code=403, detail=f"Role {user.role.value} not allowed")
        return user

    return _checker
