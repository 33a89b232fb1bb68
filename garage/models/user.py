"""User model."""

import enum
import re

from garage.models.base import Base, TimestampMixin
from sqlalchemy import Boolean, Column
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import Integer, String
from sqlalchemy.orm import relationship, validates


class UserRole(str, enum.Enum):
    """User role enum."""

    USER = "user"
    AGENDA_MANAGER = "agenda_manager"
    ADMIN = "admin"


PRIVILEGED_ROLES = (UserRole.AGENDA_MANAGER, UserRole.ADMIN)


class User(Base, TimestampMixin):
    """User record consulted by the scheduling engine.

    Holds:
    - Role, which decides whether the 24-hour rule applies
    - The SMS delivery address and notification opt-ins
    - The cached loyalty balance (derived from loyalty_transactions)
    """

    __tablename__ = "users"

    # Primary Identity
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    role = Column(
        SQLEnum(
            UserRole,
            values_callable=lambda e: [member.value for member in e],
            native_enum=False,
            length=20,
        ),
        default=UserRole.USER,
        nullable=False,
    )

    # Delivery address for notifications (E.164 phone number)
    phone_number = Column(String(20), index=True)

    # Preferences
    notify_appointment_reminders = Column(Boolean, default=True, nullable=False)
    notify_new_appointments = Column(Boolean, default=True, nullable=False)

    # Loyalty (cache of SUM(loyalty_transactions.points))
    loyalty_points = Column(Integer, default=0, nullable=False)

    # Relationships
    appointments = relationship("Appointment", back_populates="user")
    loyalty_transactions = relationship(
        "LoyaltyTransaction", back_populates="user", foreign_keys="LoyaltyTransaction.user_id"
    )

    @property
    def display_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part) or "Client"

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    @validates("phone_number")
    def validate_phone_number(self, key, value):
        """Validate phone number format and length.

        Only allows digits, spaces, hyphens, parentheses, and plus sign.
        Enforces 10-15 digits.
        """
        if not value:
            return value

        digits_only = re.sub(r"[\s\-\(\)\+]", "", value)

        if not re.match(r"^\d+$", digits_only):
            raise ValueError(f"Phone number contains invalid characters: {value}")

        if len(digits_only) < 10 or len(digits_only) > 15:
            raise ValueError(f"Phone number must contain 10-15 digits, got {len(digits_only)}")

        if len(value) > 20:
            raise ValueError(f"Phone number must be <= 20 characters, got {len(value)}")

        return value

    @validates("email")
    def validate_email(self, key, value):
        """Validate email format and normalize to lowercase."""
        if not value:
            return value

        value = value.lower()

        if len(value) > 255:
            raise ValueError(f"Email must be <= 255 characters, got {len(value)}")

        email_pattern = (
            r"^[a-z0-9]([a-z0-9._-]*[a-z0-9])?@[a-z0-9]([a-z0-9.-]*[a-z0-9])?\.[a-z]{2,}$"
        )
        if not re.match(email_pattern, value):
            raise ValueError(f"Invalid email format: {value}")

        return value

    def __repr__(self):
        return f"<User(id={self.id}, name='{self.display_name}', role='{self.role}')>"
