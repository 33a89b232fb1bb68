"""
Services package for the garage scheduling engine.
"""

from .appointment_service import AppointmentChanges, AppointmentService, CompletionResult, VehicleInfo
from .database import Database
from .loyalty_ledger import LoyaltyLedger
from .modification_guard import ModificationGuard
from .notification_gateway import InMemoryGateway, NotificationService, TwilioSMSGateway
from .reminder_scheduler import ReminderScheduler, SweepReport
from .slot_ledger import SlotLedger
from .user_directory import UserDirectory

__all__ = [
    "AppointmentChanges",
    "AppointmentService",
    "CompletionResult",
    "VehicleInfo",
    "Database",
    "LoyaltyLedger",
    "ModificationGuard",
    "InMemoryGateway",
    "NotificationService",
    "TwilioSMSGateway",
    "ReminderScheduler",
    "SweepReport",
    "SlotLedger",
    "UserDirectory",
]
