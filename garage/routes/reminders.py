"""Internal endpoint to trigger the reminder sweep from an external cron."""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header

from garage.bootstrap import Services
from garage.exceptions import PermissionDeniedError
from garage.routes.deps import get_services
from garage.schemas import SweepResponse

logger = logging.getLogger(__name__)

router = APIRouter()


async def _authorize(
    services: Services,
    internal_token: Optional[str],
    acting_user_id: Optional[int],
) -> None:
    expected = services.settings.INTERNAL_API_TOKEN
    if expected and internal_token and hmac.compare_digest(internal_token, expected):
        return

    if acting_user_id is not None:
        actor = await services.users.get_user(acting_user_id)
        if actor.is_privileged:
            return

    raise PermissionDeniedError("Accès réservé aux tâches planifiées et au personnel")


@router.post("/reminders/run", response_model=SweepResponse)
async def run_reminders(
    x_internal_token: Optional[str] = Header(None, alias="X-Internal-Token"),
    x_user_id: Optional[int] = Header(None, alias="X-User-Id"),
    services: Services = Depends(get_services),
):
    """Run one reminder sweep now. Safe to call repeatedly; each appointment is reminded once."""
    await _authorize(services, x_internal_token, x_user_id)
    logger.info("Reminder sweep triggered over HTTP")
    report = await services.reminders.run_reminder_sweep()
    return SweepResponse(report=report.as_dict())
