"""
Error taxonomy for the scheduling engine.

Every error carries a stable machine-readable ``code`` and a message that can be
shown to the customer as-is. The HTTP layer maps each class to a status code in
``register_exception_handlers``.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class GarageError(Exception):
    """Base class for all domain errors."""

    code = "garage_error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Une erreur est survenue"

    def __init__(self, message: Optional[str] = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


class ValidationError(GarageError):
    code = "invalid_request"
    status_code = 422
    default_message = "Requête invalide"


class SlotTakenError(GarageError):
    """Someone else already holds a confirmed appointment at this instant."""

    code = "slot_taken"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Ce créneau horaire n'est plus disponible"


class RuleViolationError(GarageError):
    """A non-privileged user tried to change an appointment inside the protected window."""

    code = "within_protected_window"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = (
        "Vous ne pouvez pas modifier ou annuler un rendez-vous dans les 24 heures "
        "précédant l'heure prévue. Veuillez contacter le garage directement pour "
        "toute modification de dernière minute."
    )


class PermissionDeniedError(GarageError):
    code = "permission_denied"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Vous n'avez pas les permissions pour modifier ce rendez-vous"


class UserNotFoundError(GarageError):
    code = "user_not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Utilisateur non trouvé"


class AppointmentNotFoundError(GarageError):
    code = "appointment_not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Rendez-vous non trouvé"


class InsufficientBalanceError(GarageError):
    code = "insufficient_balance"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Solde de points de fidélité insuffisant"


class GatewayDeliveryError(GarageError):
    """A single recipient could not be reached. Never fatal to a sweep."""

    code = "delivery_failed"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Échec de l'envoi de la notification"

    def __init__(self, message: Optional[str] = None, address: Optional[str] = None, reason_code: Optional[str] = None):
        super().__init__(message, address=address, reason_code=reason_code)
        self.address = address
        self.reason_code = reason_code


class StoreContentionError(GarageError):
    """Transient lock or serialization conflict in the store. Safe to retry."""

    code = "store_contention"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Le service est momentanément occupé, veuillez réessayer"


def error_response(exc: GarageError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.code, "message": exc.message},
    )


async def garage_error_handler(request: Request, exc: GarageError) -> JSONResponse:
    """Render domain errors with a standard envelope."""
    if exc.status_code >= 500:
        logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return error_response(exc)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(GarageError, garage_error_handler)
