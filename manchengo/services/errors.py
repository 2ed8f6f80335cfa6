"""
Erreurs métier.

Les services lèvent ces exceptions ; la couche API les traduit en réponse HTTP
(voir manchengo.app.main). Chaque erreur porte un code stable, exploitable
par le front.
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    status_code = 400
    default_code = "DOMAIN_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class NotFoundError(DomainError):
    status_code = 404
    default_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            f"{resource} {identifier} not found",
            details={"resource": resource, "id": identifier},
        )


class BusinessRuleError(DomainError):
    status_code = 400
    default_code = "BUSINESS_RULE"


class InvalidTransitionError(DomainError):
    status_code = 400
    default_code = "INVALID_TRANSITION"


class InvalidCursorError(DomainError):
    status_code = 400
    default_code = "INVALID_CURSOR"


class InvalidSortError(DomainError):
    status_code = 400
    default_code = "INVALID_SORT"


class ForbiddenError(DomainError):
    status_code = 403
    default_code = "FORBIDDEN"


class ConflictError(DomainError):
    status_code = 409
    default_code = "CONFLICT"
