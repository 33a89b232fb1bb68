"""Shared route dependencies."""

from typing import Optional

from fastapi import Depends, Header, Request

from garage.bootstrap import Services
from garage.exceptions import PermissionDeniedError
from garage.models.user import User


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_acting_user_id(x_user_id: int = Header(..., alias="X-User-Id")) -> int:
    """Identity of the caller, set by the authenticating proxy in front of the API."""
    return x_user_id


async def get_acting_user(
    acting_user_id: int = Depends(get_acting_user_id),
    services: Services = Depends(get_services),
) -> User:
    return await services.users.get_user(acting_user_id)


async def require_staff(actor: User = Depends(get_acting_user)) -> User:
    if not actor.is_privileged:
        raise PermissionDeniedError("Action réservée au personnel du garage", user_id=actor.id)
    return actor


def ensure_self_or_staff(actor: User, user_id: Optional[int]) -> None:
    if user_id is not None and user_id != actor.id and not actor.is_privileged:
        raise PermissionDeniedError(user_id=actor.id, target_user_id=user_id)
