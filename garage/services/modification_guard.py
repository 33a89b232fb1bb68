"""
Modification guard: the 24-hour rule.

Every change to an appointment passes through ``ModificationGuard.enforce``
inside the transaction that writes it:

- Privileged roles (agenda manager, admin) may change anything at any time.
- The owner may reschedule, change the service or cancel only while the
  *original* scheduled time is strictly more than 24 hours away.
- Completing an appointment is always allowed, and requests that change
  nothing guarded (notes, vehicle, no-op status) skip the rule entirely.

A rejected change is rolled back: the in-memory row is overwritten with its
pre-change snapshot and the enclosing transaction aborts, so the caller never
sees the unauthorized state committed.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from garage.exceptions import PermissionDeniedError, RuleViolationError
from garage.models.appointment import Appointment, AppointmentStatus
from garage.models.base import utcnow
from garage.models.user import User
from garage.services.user_directory import UserDirectory
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class ChangeKind(str, enum.Enum):
    NONE = "none"
    COMPLETION = "completion"
    CANCELLATION = "cancellation"
    MODIFICATION = "modification"
    DELETION = "deletion"


GUARDED_CHANGES = (ChangeKind.CANCELLATION, ChangeKind.MODIFICATION, ChangeKind.DELETION)


@dataclass
class GuardDecision:
    allowed: bool
    kind: ChangeKind
    reason: str


def classify_change(before: Dict[str, Any], after: Optional[Dict[str, Any]]) -> ChangeKind:
    """Work out what a change does, from full before/after snapshots (after=None is a delete)."""
    before_status = AppointmentStatus(before["status"])

    if after is None:
        if before_status != AppointmentStatus.CONFIRMED:
            return ChangeKind.NONE
        return ChangeKind.DELETION

    after_status = AppointmentStatus(after["status"])

    if after_status == AppointmentStatus.COMPLETED and before_status != AppointmentStatus.COMPLETED:
        return ChangeKind.COMPLETION

    if after_status == AppointmentStatus.CANCELLED and before_status != AppointmentStatus.CANCELLED:
        return ChangeKind.CANCELLATION

    if (
        after["scheduled_at"] != before["scheduled_at"]
        or after["service_type"] != before["service_type"]
    ):
        return ChangeKind.MODIFICATION

    return ChangeKind.NONE


def is_outside_protected_window(scheduled_at: datetime, now: datetime, window: timedelta) -> bool:
    """True when the appointment is strictly more than ``window`` away. Exactly ``window`` is inside."""
    return (scheduled_at - now) > window


class ModificationGuard:
    """Decides Allow / Reject for changes to an appointment."""

    def __init__(
        self,
        users: UserDirectory,
        window_hours: int = 24,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.users = users
        self.window = timedelta(hours=window_hours)
        self.clock = clock

    def check(self, before: Dict[str, Any], kind: ChangeKind, actor: User, now: datetime) -> GuardDecision:
        """Apply the rule for an already resolved actor. Never writes."""
        if kind not in GUARDED_CHANGES:
            return GuardDecision(True, kind, "not_guarded")

        if actor.is_privileged:
            return GuardDecision(True, kind, "privileged")

        if actor.id != before["user_id"]:
            raise PermissionDeniedError(appointment_id=before.get("id"), user_id=actor.id)

        if is_outside_protected_window(before["scheduled_at"], now, self.window):
            return GuardDecision(True, kind, "outside_window")

        return GuardDecision(False, kind, "within_window")

    async def evaluate(
        self,
        before: Dict[str, Any],
        after: Optional[Dict[str, Any]],
        acting_user_id: int,
        now: Optional[datetime] = None,
        session: Optional[AsyncSession] = None,
    ) -> GuardDecision:
        kind = classify_change(before, after)
        if kind not in GUARDED_CHANGES:
            return GuardDecision(True, kind, "not_guarded")

        # Missing user is an error, never an implicit allow or deny
        actor = await self.users.get_user(acting_user_id, session=session)
        return self.check(before, kind, actor, now or self.clock())

    async def enforce(
        self,
        session: AsyncSession,
        appointment: Appointment,
        before: Dict[str, Any],
        acting_user_id: int,
        deleted: bool = False,
        now: Optional[datetime] = None,
    ) -> GuardDecision:
        """Validate a change already applied to ``appointment`` in ``session``.

        Raises RuleViolationError after restoring ``before`` when the change is
        not allowed; the caller's transaction must then abort.
        """
        after = None if deleted else appointment.snapshot()

        try:
            decision = await self.evaluate(before, after, acting_user_id, now=now, session=session)
        except Exception:
            appointment.restore(before)
            raise

        if not decision.allowed:
            appointment.restore(before)
            logger.warning(
                f"Rejected {decision.kind.value} of appointment {before.get('id')} by user "
                f"{acting_user_id}: scheduled at {before['scheduled_at'].isoformat()}, inside "
                f"{int(self.window.total_seconds() // 3600)}h window"
            )
            raise RuleViolationError(appointment_id=before.get("id"), user_id=acting_user_id)

        if decision.kind in GUARDED_CHANGES:
            logger.info(
                f"Appointment {decision.kind.value} validated: appointment {before.get('id')}, "
                f"user {acting_user_id} ({decision.reason})"
            )
        return decision
