"""Error taxonomy for the pickup API.

Every error is an ``HTTPException`` so it can be raised where the failure is
detected and rendered by FastAPI without extra handlers. ``detail`` carries a
short user-facing message; ``code`` is stable for clients.
"""
from __future__ import annotations

from typing import Optional

from fastapi import HTTPException


class PickupError(HTTPException):
    status_code_default = 400
    code = "error"
    message = "Noe gikk galt"

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None) -> None:
        super().__init__(
            status_code=status_code or self.status_code_default,
            detail=message or self.message,
        )

    @property
    def message_text(self) -> str:
        return str(self.detail)


class ValidationError(PickupError):
    status_code_default = 400
    code = "validation_error"
    message = "Mangler påkrevd valg"


class AuthorizationError(PickupError):
    status_code_default = 403
    code = "authorization_error"
    message = "Du har ikke tilgang til dette"


class NotFoundError(PickupError):
    status_code_default = 404
    code = "not_found"
    message = "Fant ikke forespørselen"


class StateConflictError(PickupError):
    status_code_default = 409
    code = "state_conflict"
    message = "Hentingen er allerede behandlet"


class TransportError(PickupError):
    status_code_default = 502
    code = "transport_error"
    message = "Tjenesten er ikke tilgjengelig akkurat nå"
