"""
Loyalty ledger.

Transactions are append-only. A user's balance is the sum of their
transactions; ``users.loyalty_points`` caches it and is written in the same
database transaction as every insert, so the log and the cache never disagree
at rest. Each completed appointment is credited at most once.
"""

import logging
from typing import List, Optional

from garage.exceptions import InsufficientBalanceError, ValidationError
from garage.models.loyalty import LoyaltyTransaction, LoyaltyTransactionType
from garage.services.database import Database
from garage.services.user_directory import UserDirectory
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class LoyaltyLedger:
    """Credits, debits and balance of loyalty points."""

    def __init__(
        self,
        database: Database,
        users: UserDirectory,
        points_per_appointment: int = 10,
        welcome_bonus_points: int = 50,
    ):
        self.database = database
        self.users = users
        self.points_per_appointment = points_per_appointment
        self.welcome_bonus_points = welcome_bonus_points

    async def _append(
        self,
        session: AsyncSession,
        user_id: int,
        points: int,
        type_: LoyaltyTransactionType,
        description: str,
        related_appointment_id: Optional[int] = None,
        related_reward_id: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> LoyaltyTransaction:
        """Insert one transaction and move the cached balance, inside ``session``'s transaction."""
        # Row lock serializes concurrent writers of the same balance
        user = await self.users.get_user(user_id, session=session, for_update=True)
        current = user.loyalty_points or 0
        new_balance = current + points

        if new_balance < 0:
            logger.warning(
                f"Rejected {type_.value} of {points} points for user {user_id}: balance {current}"
            )
            raise InsufficientBalanceError(user_id=user_id, balance=current, delta=points)

        transaction = LoyaltyTransaction(
            user_id=user_id,
            points=points,
            type=type_,
            description=description,
            related_appointment_id=related_appointment_id,
            related_reward_id=related_reward_id,
            created_by=created_by,
        )
        session.add(transaction)
        await session.flush()

        await self.users.update_loyalty_balance(session, user_id, new_balance)
        return transaction

    async def credit_for_completed_appointment(
        self, user_id: int, appointment_id: int
    ) -> Optional[LoyaltyTransaction]:
        """Credit points for a completed appointment.

        Returns the new transaction, or None when the appointment was already
        credited (a repeat call is a no-op).
        """

        async def _credit(session: AsyncSession) -> Optional[LoyaltyTransaction]:
            existing = await session.execute(
                select(LoyaltyTransaction.id).where(
                    LoyaltyTransaction.related_appointment_id == appointment_id,
                    LoyaltyTransaction.type == LoyaltyTransactionType.APPOINTMENT_COMPLETED,
                )
            )
            if existing.first() is not None:
                logger.info(f"Appointment {appointment_id} already credited, skipping")
                return None

            return await self._append(
                session,
                user_id,
                self.points_per_appointment,
                LoyaltyTransactionType.APPOINTMENT_COMPLETED,
                "Points earned for completed appointment",
                related_appointment_id=appointment_id,
            )

        try:
            transaction = await self.database.run_in_transaction(
                _credit, operation_name="Credit completed appointment"
            )
        except IntegrityError:
            # A concurrent credit for the same appointment won the unique index
            logger.info(f"Appointment {appointment_id} credited concurrently, skipping")
            return None

        if transaction is not None:
            logger.info(
                f"Credited {transaction.points} points to user {user_id} for appointment {appointment_id}"
            )
        return transaction

    async def adjust_manually(
        self, user_id: int, delta: int, reason: str, actor_id: Optional[int] = None
    ) -> LoyaltyTransaction:
        """Admin adjustment. Negative deltas may not take the balance below zero."""
        if delta == 0:
            raise ValidationError("Le nombre de points doit être différent de zéro")
        if not reason:
            raise ValidationError("Un motif est requis pour un ajustement manuel")

        async def _adjust(session: AsyncSession) -> LoyaltyTransaction:
            return await self._append(
                session,
                user_id,
                delta,
                LoyaltyTransactionType.MANUAL_ADJUSTMENT,
                reason,
                created_by=actor_id,
            )

        transaction = await self.database.run_in_transaction(_adjust, operation_name="Manual loyalty adjustment")
        logger.info(f"Manual adjustment of {delta} points for user {user_id} by {actor_id}: {reason}")
        return transaction

    async def award_welcome_bonus(self, user_id: int) -> Optional[LoyaltyTransaction]:
        if self.welcome_bonus_points <= 0:
            return None

        async def _award(session: AsyncSession) -> LoyaltyTransaction:
            return await self._append(
                session,
                user_id,
                self.welcome_bonus_points,
                LoyaltyTransactionType.BONUS,
                "Welcome bonus - Thank you for joining!",
            )

        return await self.database.run_in_transaction(_award, operation_name="Welcome bonus")

    async def redeem(self, user_id: int, points: int, reward_id: str, description: str) -> LoyaltyTransaction:
        """Spend points on a reward."""
        if points <= 0:
            raise ValidationError("Le coût en points doit être positif")

        async def _redeem(session: AsyncSession) -> LoyaltyTransaction:
            return await self._append(
                session,
                user_id,
                -points,
                LoyaltyTransactionType.REWARD_REDEMPTION,
                description,
                related_reward_id=reward_id,
            )

        return await self.database.run_in_transaction(_redeem, operation_name="Reward redemption")

    async def get_balance(self, user_id: int) -> int:
        user = await self.users.get_user(user_id)
        return user.loyalty_points or 0

    async def list_transactions(self, user_id: int, limit: int = 50) -> List[LoyaltyTransaction]:
        async with self.database.session_maker() as session:
            result = await session.execute(
                select(LoyaltyTransaction)
                .where(LoyaltyTransaction.user_id == user_id)
                .order_by(LoyaltyTransaction.created_at.desc(), LoyaltyTransaction.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def recompute_balance(self, user_id: int) -> int:
        """Rewrite the cached balance from the transaction log. Returns the balance."""

        async def _recompute(session: AsyncSession) -> int:
            await self.users.get_user(user_id, session=session, for_update=True)
            result = await session.execute(
                select(func.coalesce(func.sum(LoyaltyTransaction.points), 0)).where(
                    LoyaltyTransaction.user_id == user_id
                )
            )
            total = int(result.scalar_one())
            await self.users.update_loyalty_balance(session, user_id, total)
            return total

        total = await self.database.run_in_transaction(_recompute, operation_name="Recompute loyalty balance")
        logger.info(f"Recomputed loyalty balance for user {user_id}: {total}")
        return total
