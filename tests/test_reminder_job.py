"""Tests for the scheduled reminder job and the worker's scheduler."""

from conftest import CUSTOMER_PHONE, utc
from worker.jobs.reminder_job import send_appointment_reminders
from worker.main import create_scheduler


class TestReminderJob:
    async def test_job_runs_a_sweep(self, services, gateway, customer, book):
        await book(utc(2025, 3, 10, 14, 0))

        report = await send_appointment_reminders(now=utc(2025, 3, 9, 14, 0), services=services)

        assert report.sent == 1
        assert len(gateway.sent_to(CUSTOMER_PHONE)) == 1

    async def test_job_builds_its_own_services(self, settings, database, customer, book):
        await book(utc(2025, 3, 10, 14, 0))

        # No Twilio credentials in the test settings: the in-memory gateway is used
        report = await send_appointment_reminders(now=utc(2025, 3, 9, 14, 0), settings=settings)

        assert report.sent == 1

    async def test_job_errors_are_logged_not_raised(self, services, monkeypatch):
        async def broken_sweep(now=None):
            raise RuntimeError("store down")

        monkeypatch.setattr(services.reminders, "run_reminder_sweep", broken_sweep)

        assert await send_appointment_reminders(services=services) is None


class TestScheduler:
    def test_reminders_run_every_hour(self):
        scheduler = create_scheduler()

        jobs = scheduler.get_jobs()

        assert [job.id for job in jobs] == ["appointment_reminders"]
        trigger = jobs[0].trigger
        fields = {field.name: str(field) for field in trigger.fields}
        assert fields["minute"] == "0"
        assert fields["hour"] == "*"
