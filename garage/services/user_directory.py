"""User lookups and the few user-record writes the scheduling engine performs."""

import logging
from typing import List, Optional

from garage.exceptions import UserNotFoundError
from garage.models.user import PRIVILEGED_ROLES, User
from garage.services.database import Database
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class UserDirectory:
    """Access to user records (role, delivery address, opt-ins, cached loyalty balance)."""

    def __init__(self, database: Database):
        self.database = database

    async def get_user(
        self, user_id: int, session: Optional[AsyncSession] = None, for_update: bool = False
    ) -> User:
        """Load a user or raise UserNotFoundError.

        Pass ``session`` to read inside an ongoing transaction; ``for_update``
        then locks the row until that transaction ends.
        """
        if session is not None:
            user = await session.get(User, user_id, with_for_update=for_update, populate_existing=for_update)
        else:
            async with self.database.session_maker() as own_session:
                user = await own_session.get(User, user_id)

        if user is None:
            logger.warning(f"User {user_id} not found")
            raise UserNotFoundError(user_id=user_id)
        return user

    async def clear_delivery_address(self, user_id: int, address: Optional[str] = None) -> bool:
        """Remove a stale phone number from a user record.

        When ``address`` is given the row is only cleared if it still holds that
        address, so a number the user re-registered in the meantime survives.
        """

        async def _clear(session: AsyncSession) -> int:
            stmt = update(User).where(User.id == user_id)
            if address is not None:
                stmt = stmt.where(User.phone_number == address)
            result = await session.execute(stmt.values(phone_number=None))
            return result.rowcount

        cleared = await self.database.run_in_transaction(_clear, operation_name="Clear delivery address")
        if cleared:
            logger.info(f"Cleared stale delivery address for user {user_id}")
        return bool(cleared)

    async def update_loyalty_balance(self, session: AsyncSession, user_id: int, new_balance: int) -> None:
        """Write the cached balance. Only called inside the loyalty ledger's transaction."""
        result = await session.execute(
            update(User).where(User.id == user_id).values(loyalty_points=new_balance)
        )
        if result.rowcount == 0:
            raise UserNotFoundError(user_id=user_id)

    async def list_staff_recipients(self) -> List[User]:
        """Admins and agenda managers with a phone number who want new-booking alerts."""
        async with self.database.session_maker() as session:
            result = await session.execute(
                select(User).where(
                    User.role.in_(PRIVILEGED_ROLES),
                    User.phone_number.is_not(None),
                    User.notify_new_appointments.is_(True),
                )
            )
            return list(result.scalars().all())
