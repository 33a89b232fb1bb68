"""Appointment model."""

import enum
from typing import Any, Dict

from garage.models.base import Base, TimestampMixin, UTCDateTime
from sqlalchemy import Boolean, Column
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import relationship


class AppointmentStatus(str, enum.Enum):
    """Appointment status enum."""

    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ServiceType(str, enum.Enum):
    """Service type enum."""

    MAINTENANCE = "maintenance"
    REPAIR = "repair"
    REPROGRAMMING = "reprogramming"


SERVICE_TYPE_LABELS = {
    ServiceType.MAINTENANCE: "Entretien",
    ServiceType.REPAIR: "Réparation",
    ServiceType.REPROGRAMMING: "Re-programmation",
}

TERMINAL_STATUSES = (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Appointment(Base, TimestampMixin):
    """Appointment model for storing appointment information.

    Stores:
    - The slot (a single timezone-aware instant)
    - Service category and the vehicle it is booked for
    - Lifecycle status
    - Reminder dispatch tracking
    """

    __tablename__ = "appointments"

    __table_args__ = (
        # Backs the booking transaction: one confirmed appointment per instant
        Index(
            "uq_appointments_confirmed_slot",
            "scheduled_at",
            unique=True,
            sqlite_where=text("status = 'confirmed'"),
            postgresql_where=text("status = 'confirmed'"),
        ),
        # Reminder sweep query
        Index("ix_appointments_status_scheduled", "status", "scheduled_at"),
        Index("ix_appointments_user_scheduled", "user_id", "scheduled_at"),
    )

    # Primary Identity
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    customer_name = Column(String(200), nullable=False)

    # Appointment Details
    scheduled_at = Column(UTCDateTime, nullable=False)
    service_type = Column(
        SQLEnum(ServiceType, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
    )

    # Vehicle descriptor
    vehicle_make = Column(String(100), nullable=False)
    vehicle_model = Column(String(100), nullable=False)
    vehicle_plate = Column(String(20), nullable=False)

    customer_notes = Column(Text, default="")

    # Status & Workflow
    status = Column(
        SQLEnum(AppointmentStatus, values_callable=_enum_values, native_enum=False, length=20),
        default=AppointmentStatus.CONFIRMED,
        nullable=False,
    )
    completed_at = Column(UTCDateTime)
    cancelled_at = Column(UTCDateTime)

    # Communication tracking
    reminder_sent = Column(Boolean, default=False, nullable=False)
    reminder_sent_at = Column(UTCDateTime)

    # Relationships
    user = relationship("User", back_populates="appointments")

    @property
    def is_active(self) -> bool:
        return self.status == AppointmentStatus.CONFIRMED

    def snapshot(self) -> Dict[str, Any]:
        """Copy of every column value, used to restore a rejected change."""
        return {column.key: getattr(self, column.key) for column in self.__table__.columns}

    def restore(self, snapshot: Dict[str, Any]) -> None:
        """Overwrite every column with the values of a previous snapshot."""
        for key, value in snapshot.items():
            setattr(self, key, value)

    def __repr__(self):
        return f"<Appointment(id={self.id}, user_id={self.user_id}, scheduled_at='{self.scheduled_at}', status='{self.status}')>"
