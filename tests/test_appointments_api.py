"""Tests for the HTTP API: status codes, error envelope, staff-only routes."""

from datetime import datetime, timedelta

from conftest import ADMIN_PHONE, utc
from httpx import AsyncClient

SLOT = "2025-03-10T14:00:00Z"


def headers(user) -> dict:
    return {"X-User-Id": str(user.id)}


def booking_body(**overrides) -> dict:
    body = {
        "customer_name": "Marie Dupont",
        "service_type": "maintenance",
        "scheduled_at": SLOT,
        "vehicle": {"make": "Peugeot", "model": "308", "plate": "ab-123-cd"},
        "notes": "Révision des 60 000 km",
    }
    body.update(overrides)
    return body


async def book_via_api(client: AsyncClient, user, **overrides) -> dict:
    response = await client.post("/api/v1/appointments", json=booking_body(**overrides), headers=headers(user))
    assert response.status_code == 201, response.text
    return response.json()


class TestBookingEndpoint:
    async def test_book_returns_created_appointment(self, client: AsyncClient, customer):
        data = await book_via_api(client, customer)

        assert data["status"] == "confirmed"
        assert data["service_type"] == "maintenance"
        assert data["vehicle_plate"] == "AB-123-CD"
        assert data["user_id"] == customer.id
        assert datetime.fromisoformat(data["scheduled_at"].replace("Z", "+00:00")) == utc(2025, 3, 10, 14, 0)

    async def test_taken_slot_returns_409_envelope(self, client: AsyncClient, customer, other_customer):
        await book_via_api(client, customer)

        response = await client.post("/api/v1/appointments", json=booking_body(), headers=headers(other_customer))

        assert response.status_code == 409
        assert response.json() == {
            "success": False,
            "error": "slot_taken",
            "message": "Ce créneau horaire n'est plus disponible",
        }

    async def test_missing_identity_is_rejected(self, client: AsyncClient, customer):
        response = await client.post("/api/v1/appointments", json=booking_body())

        assert response.status_code == 422

    async def test_naive_datetime_is_rejected(self, client: AsyncClient, customer):
        response = await client.post(
            "/api/v1/appointments",
            json=booking_body(scheduled_at="2025-03-10T14:00:00"),
            headers=headers(customer),
        )

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_request"

    async def test_unknown_user_is_404(self, client: AsyncClient):
        response = await client.post("/api/v1/appointments", json=booking_body(), headers={"X-User-Id": "999"})

        assert response.status_code == 404
        assert response.json()["error"] == "user_not_found"

    async def test_booking_on_behalf_of_someone_else_needs_staff(
        self, client: AsyncClient, customer, other_customer, admin
    ):
        response = await client.post(
            "/api/v1/appointments",
            json=booking_body(user_id=other_customer.id),
            headers=headers(customer),
        )
        assert response.status_code == 403

        data = await book_via_api(client, admin, user_id=other_customer.id)
        assert data["user_id"] == other_customer.id

    async def test_staff_is_alerted_after_booking(self, client: AsyncClient, gateway, customer, admin):
        await book_via_api(client, customer)

        assert len(gateway.sent_to(ADMIN_PHONE)) == 1


class TestReadEndpoints:
    async def test_available_slots(self, client: AsyncClient, customer):
        await book_via_api(client, customer)

        response = await client.get("/api/v1/appointments/slots", params={"date": "2025-03-10"})

        assert response.status_code == 200
        data = response.json()
        assert data["timezone"] == "Europe/Paris"
        assert len(data["slots"]) == 11

    async def test_owner_reads_appointment(self, client: AsyncClient, customer):
        created = await book_via_api(client, customer)

        response = await client.get(f"/api/v1/appointments/{created['id']}", headers=headers(customer))

        assert response.status_code == 200
        assert response.json()["id"] == created["id"]

    async def test_other_customer_cannot_read(self, client: AsyncClient, customer, other_customer):
        created = await book_via_api(client, customer)

        response = await client.get(f"/api/v1/appointments/{created['id']}", headers=headers(other_customer))

        assert response.status_code == 403
        assert response.json()["error"] == "permission_denied"

    async def test_unknown_appointment_is_404(self, client: AsyncClient, customer):
        response = await client.get("/api/v1/appointments/4242", headers=headers(customer))

        assert response.status_code == 404
        assert response.json()["error"] == "appointment_not_found"

    async def test_list_own_appointments(self, client: AsyncClient, customer, other_customer):
        await book_via_api(client, customer)
        await book_via_api(client, other_customer, scheduled_at="2025-03-11T09:00:00Z")

        response = await client.get("/api/v1/appointments", headers=headers(customer))

        assert response.status_code == 200
        assert [item["user_id"] for item in response.json()] == [customer.id]

    async def test_staff_lists_whole_agenda(self, client: AsyncClient, customer, other_customer, admin):
        await book_via_api(client, customer)
        await book_via_api(client, other_customer, scheduled_at="2025-03-11T09:00:00Z")

        response = await client.get("/api/v1/appointments", headers=headers(admin))

        assert len(response.json()) == 2

    async def test_can_modify(self, client: AsyncClient, clock, customer):
        created = await book_via_api(client, customer)
        clock.set(utc(2025, 3, 9, 15, 0))

        response = await client.get(f"/api/v1/appointments/{created['id']}/can-modify", headers=headers(customer))

        assert response.status_code == 200
        assert response.json()["can_modify"] is False


class TestChangeEndpoints:
    async def test_reschedule(self, client: AsyncClient, customer):
        created = await book_via_api(client, customer)

        response = await client.patch(
            f"/api/v1/appointments/{created['id']}",
            json={"scheduled_at": "2025-03-12T09:00:00Z"},
            headers=headers(customer),
        )

        assert response.status_code == 200
        assert response.json()["scheduled_at"].startswith("2025-03-12T09:00:00")

    async def test_cancel_inside_window_is_403(self, client: AsyncClient, clock, customer):
        created = await book_via_api(client, customer)
        clock.set(utc(2025, 3, 10, 14, 0) - timedelta(hours=2))

        response = await client.post(f"/api/v1/appointments/{created['id']}/cancel", headers=headers(customer))

        assert response.status_code == 403
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "within_protected_window"
        assert "contacter le garage" in body["message"]

    async def test_admin_cancels_inside_window(self, client: AsyncClient, clock, customer, admin):
        created = await book_via_api(client, customer)
        clock.set(utc(2025, 3, 10, 13, 0))

        response = await client.post(f"/api/v1/appointments/{created['id']}/cancel", headers=headers(admin))

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    async def test_complete_is_staff_only(self, client: AsyncClient, customer, admin):
        created = await book_via_api(client, customer)

        denied = await client.post(f"/api/v1/appointments/{created['id']}/complete", headers=headers(customer))
        assert denied.status_code == 403

        response = await client.post(f"/api/v1/appointments/{created['id']}/complete", headers=headers(admin))
        assert response.status_code == 200
        data = response.json()
        assert data["appointment"]["status"] == "completed"
        assert data["loyalty_credited"] is True
        assert data["loyalty_points_awarded"] == 10

    async def test_delete(self, client: AsyncClient, customer):
        created = await book_via_api(client, customer)

        response = await client.delete(f"/api/v1/appointments/{created['id']}", headers=headers(customer))
        assert response.status_code == 204

        missing = await client.get(f"/api/v1/appointments/{created['id']}", headers=headers(customer))
        assert missing.status_code == 404


class TestLoyaltyEndpoints:
    async def test_balance_and_history(self, client: AsyncClient, customer, admin):
        created = await book_via_api(client, customer)
        await client.post(f"/api/v1/appointments/{created['id']}/complete", headers=headers(admin))

        balance = await client.get(f"/api/v1/loyalty/{customer.id}", headers=headers(customer))
        history = await client.get(f"/api/v1/loyalty/{customer.id}/transactions", headers=headers(customer))

        assert balance.json() == {"user_id": customer.id, "loyalty_points": 10}
        assert [item["type"] for item in history.json()] == ["appointment_completed"]

    async def test_adjustment_below_zero_is_409(self, client: AsyncClient, customer, admin):
        response = await client.post(
            f"/api/v1/loyalty/{customer.id}/adjustments",
            json={"points": -5, "reason": "Correction"},
            headers=headers(admin),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "insufficient_balance"

    async def test_adjustment_is_staff_only(self, client: AsyncClient, customer):
        response = await client.post(
            f"/api/v1/loyalty/{customer.id}/adjustments",
            json={"points": 500, "reason": "Cadeau"},
            headers=headers(customer),
        )

        assert response.status_code == 403

    async def test_other_customers_balance_is_private(self, client: AsyncClient, customer, other_customer):
        response = await client.get(f"/api/v1/loyalty/{customer.id}", headers=headers(other_customer))

        assert response.status_code == 403

    async def test_recompute(self, client: AsyncClient, services, customer, admin):
        await services.loyalty.award_welcome_bonus(customer.id)

        response = await client.post(f"/api/v1/loyalty/{customer.id}/recompute", headers=headers(admin))

        assert response.json()["loyalty_points"] == 50


class TestInternalAndHealth:
    async def test_reminder_run_with_token(self, client: AsyncClient, clock, gateway, customer):
        await book_via_api(client, customer)
        clock.set(utc(2025, 3, 9, 14, 0))

        response = await client.post("/api/v1/internal/reminders/run", headers={"X-Internal-Token": "cron-secret"})

        assert response.status_code == 200
        assert response.json()["report"]["sent"] == 1

    async def test_reminder_run_requires_authorization(self, client: AsyncClient, customer):
        anonymous = await client.post("/api/v1/internal/reminders/run")
        wrong_token = await client.post(
            "/api/v1/internal/reminders/run", headers={"X-Internal-Token": "guess"}
        )
        customer_call = await client.post("/api/v1/internal/reminders/run", headers=headers(customer))

        assert anonymous.status_code == 403
        assert wrong_token.status_code == 403
        assert customer_call.status_code == 403

    async def test_health(self, client: AsyncClient):
        assert (await client.get("/api/v1/health")).json()["status"] == "healthy"
        assert (await client.get("/api/v1/health/db")).json()["database"] == "connected"
        assert (await client.get("/api/v1/health/redis")).json()["redis"] == "not_configured"
