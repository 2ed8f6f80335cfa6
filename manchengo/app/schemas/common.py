from typing import Callable

from pydantic import BaseModel


def serializer(schema: type[BaseModel], exclude: set[str] | None = None) -> Callable[[object], dict]:
    """ORM -> dict via un schéma Pydantic (utilisé pour les pages paginées)."""

    def _dump(obj) -> dict:
        return schema.model_validate(obj).model_dump(exclude=exclude)

    return _dump
