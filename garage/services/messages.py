"""Customer-facing notification texts (French, as shown to the garage's customers)."""

from datetime import datetime
from typing import Dict, Tuple
from zoneinfo import ZoneInfo

from garage.models.appointment import SERVICE_TYPE_LABELS, Appointment, ServiceType

WEEKDAYS = ["lundi", "mardi", "mercredi", "jeudi", "vendredi", "samedi", "dimanche"]
MONTHS = [
    "janvier",
    "février",
    "mars",
    "avril",
    "mai",
    "juin",
    "juillet",
    "août",
    "septembre",
    "octobre",
    "novembre",
    "décembre",
]


def format_date_fr(moment: datetime) -> str:
    """'lundi 10 mars 2025'"""
    return f"{WEEKDAYS[moment.weekday()]} {moment.day} {MONTHS[moment.month - 1]} {moment.year}"


def format_time_fr(moment: datetime) -> str:
    """'14:00'"""
    return moment.strftime("%H:%M")


def service_label(service_type) -> str:
    try:
        return SERVICE_TYPE_LABELS[ServiceType(service_type)]
    except ValueError:
        return str(service_type)


def reminder_message(appointment: Appointment, tz: ZoneInfo) -> Tuple[str, str, Dict[str, str]]:
    local = appointment.scheduled_at.astimezone(tz)
    title = "Rappel de rendez-vous"
    body = (
        f"Votre rendez-vous pour {service_label(appointment.service_type)} est prévu demain "
        f"{format_date_fr(local)} à {format_time_fr(local)}"
    )
    metadata = {
        "type": "appointment_reminder",
        "appointmentId": str(appointment.id),
        "url": "/dashboard",
    }
    return title, body, metadata


def new_appointment_message(appointment: Appointment, tz: ZoneInfo) -> Tuple[str, str, Dict[str, str]]:
    local = appointment.scheduled_at.astimezone(tz)
    title = "Nouveau rendez-vous"
    body = (
        f"{appointment.customer_name or 'Client'} a pris rendez-vous pour "
        f"{service_label(appointment.service_type)} le {format_date_fr(local)} à {format_time_fr(local)}"
    )
    metadata = {
        "type": "new_appointment",
        "appointmentId": str(appointment.id),
        "url": "/admin/calendrier",
    }
    return title, body, metadata
