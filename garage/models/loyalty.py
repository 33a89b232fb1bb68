"""Loyalty transaction model."""

import enum

from garage.models.base import Base, UTCDateTime, utcnow
from sqlalchemy import Column
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import ForeignKey, Index, Integer, String, event, text
from sqlalchemy.orm import relationship


class LoyaltyTransactionType(str, enum.Enum):
    """Loyalty transaction type enum."""

    APPOINTMENT_COMPLETED = "appointment_completed"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    REWARD_REDEMPTION = "reward_redemption"
    BONUS = "bonus"


class LoyaltyTransaction(Base):
    """Append-only loyalty ledger entry.

    A user's balance is the sum of ``points`` over their rows; ``users.loyalty_points``
    caches it and is written in the same transaction as each insert.
    """

    __tablename__ = "loyalty_transactions"

    __table_args__ = (
        # An appointment can be credited once
        Index(
            "uq_loyalty_appointment_credit",
            "related_appointment_id",
            unique=True,
            sqlite_where=text("type = 'appointment_completed'"),
            postgresql_where=text("type = 'appointment_completed'"),
        ),
        Index("ix_loyalty_transactions_user_created", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    points = Column(Integer, nullable=False)
    type = Column(
        SQLEnum(
            LoyaltyTransactionType,
            values_callable=lambda e: [member.value for member in e],
            native_enum=False,
            length=30,
        ),
        nullable=False,
    )
    description = Column(String(255), nullable=False)
    related_appointment_id = Column(Integer)  # Survives deletion of the appointment
    related_reward_id = Column(String(100))
    created_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="loyalty_transactions", foreign_keys=[user_id])

    def __repr__(self):
        return f"<LoyaltyTransaction(id={self.id}, user_id={self.user_id}, points={self.points}, type='{self.type}')>"


@event.listens_for(LoyaltyTransaction, "before_update")
def _refuse_update(mapper, connection, target):
    raise RuntimeError(f"Loyalty transactions are append-only (id={target.id})")


@event.listens_for(LoyaltyTransaction, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise RuntimeError(f"Loyalty transactions are append-only (id={target.id})")
