"""Database models for the application."""

from garage.models.appointment import Appointment, AppointmentStatus, ServiceType
from garage.models.base import Base
from garage.models.loyalty import LoyaltyTransaction, LoyaltyTransactionType
from garage.models.user import User, UserRole

__all__ = [
    "Base",
    "User",
    "UserRole",
    "Appointment",
    "AppointmentStatus",
    "ServiceType",
    "LoyaltyTransaction",
    "LoyaltyTransactionType",
]
