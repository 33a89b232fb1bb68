"""
Tests for the loyalty ledger.

Each completed appointment is credited exactly once, the balance never goes
below zero, and the cached balance always equals the sum of the log.
"""

import asyncio
from unittest.mock import patch

import pytest
from conftest import START, utc
from garage.exceptions import InsufficientBalanceError, ValidationError
from garage.models.appointment import AppointmentStatus
from garage.models.loyalty import LoyaltyTransaction, LoyaltyTransactionType
from garage.models.user import User
from sqlalchemy import func, select, update

SLOT = utc(2025, 3, 10, 14, 0)


async def ledger_sum(database, user_id) -> int:
    async with database.session_maker() as session:
        result = await session.execute(
            select(func.coalesce(func.sum(LoyaltyTransaction.points), 0)).where(
                LoyaltyTransaction.user_id == user_id
            )
        )
        return int(result.scalar_one())


class TestCompletionCredit:
    async def test_completion_credits_points_once(self, services, database, customer, book):
        appointment = await book(SLOT)

        result = await services.appointments.complete(appointment.id, now=SLOT)

        assert result.appointment.status == AppointmentStatus.COMPLETED
        assert result.loyalty_credited
        assert result.loyalty_transaction.points == 10
        assert await services.loyalty.get_balance(customer.id) == 10

    async def test_completing_twice_does_not_credit_twice(self, services, database, customer, book):
        appointment = await book(SLOT)

        await services.appointments.complete(appointment.id, now=SLOT)
        again = await services.appointments.complete(appointment.id, now=SLOT)

        assert not again.loyalty_credited
        assert again.loyalty_error is None
        assert await services.loyalty.get_balance(customer.id) == 10
        assert len(await services.loyalty.list_transactions(customer.id)) == 1

    async def test_repeated_credit_call_is_a_no_op(self, services, customer, book):
        appointment = await book(SLOT)

        first = await services.loyalty.credit_for_completed_appointment(customer.id, appointment.id)
        second = await services.loyalty.credit_for_completed_appointment(customer.id, appointment.id)

        assert first is not None
        assert second is None
        assert await services.loyalty.get_balance(customer.id) == 10

    async def test_concurrent_credits_for_same_appointment(self, services, database, customer, book):
        appointment = await book(SLOT)

        results = await asyncio.gather(
            *(services.loyalty.credit_for_completed_appointment(customer.id, appointment.id) for _ in range(5))
        )

        assert len([result for result in results if result is not None]) == 1
        assert await services.loyalty.get_balance(customer.id) == 10
        assert await ledger_sum(database, customer.id) == 10

    async def test_credit_failure_keeps_completion(self, services, monkeypatch, customer, book):
        appointment = await book(SLOT)

        async def broken_credit(user_id, appointment_id):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(services.loyalty, "credit_for_completed_appointment", broken_credit)

        result = await services.appointments.complete(appointment.id, now=SLOT)

        assert result.loyalty_error == "ledger unavailable"
        assert not result.loyalty_credited
        assert (await services.appointments.get(appointment.id)).status == AppointmentStatus.COMPLETED
        assert await services.loyalty.get_balance(customer.id) == 0

    async def test_credit_is_retried_on_next_completion_call(self, services, monkeypatch, customer, book):
        appointment = await book(SLOT)
        real_credit = services.loyalty.credit_for_completed_appointment

        async def broken_credit(user_id, appointment_id):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(services.loyalty, "credit_for_completed_appointment", broken_credit)
        await services.appointments.complete(appointment.id, now=SLOT)

        monkeypatch.setattr(services.loyalty, "credit_for_completed_appointment", real_credit)
        retry = await services.appointments.complete(appointment.id, now=SLOT)

        assert retry.loyalty_credited
        assert await services.loyalty.get_balance(customer.id) == 10

    async def test_cancelled_appointment_cannot_be_completed(self, services, customer, book):
        appointment = await book(SLOT)
        await services.appointments.request_cancellation(appointment.id, customer.id, now=START)

        with pytest.raises(ValidationError):
            await services.appointments.complete(appointment.id, now=SLOT)

        assert await services.loyalty.get_balance(customer.id) == 0


class TestAdjustments:
    async def test_manual_credit_and_debit(self, services, customer, admin):
        await services.loyalty.adjust_manually(customer.id, 30, "Geste commercial", actor_id=admin.id)
        transaction = await services.loyalty.adjust_manually(customer.id, -20, "Correction", actor_id=admin.id)

        assert transaction.type == LoyaltyTransactionType.MANUAL_ADJUSTMENT
        assert transaction.created_by == admin.id
        assert await services.loyalty.get_balance(customer.id) == 10

    async def test_debit_below_zero_is_rejected(self, services, database, customer, admin):
        await services.loyalty.adjust_manually(customer.id, 5, "Geste commercial", actor_id=admin.id)

        with pytest.raises(InsufficientBalanceError):
            await services.loyalty.adjust_manually(customer.id, -6, "Correction", actor_id=admin.id)

        assert await services.loyalty.get_balance(customer.id) == 5
        assert await ledger_sum(database, customer.id) == 5

    async def test_debit_to_exactly_zero_is_allowed(self, services, customer, admin):
        await services.loyalty.adjust_manually(customer.id, 5, "Geste commercial", actor_id=admin.id)
        await services.loyalty.adjust_manually(customer.id, -5, "Correction", actor_id=admin.id)

        assert await services.loyalty.get_balance(customer.id) == 0

    async def test_zero_delta_is_rejected(self, services, customer):
        with pytest.raises(ValidationError):
            await services.loyalty.adjust_manually(customer.id, 0, "Rien")

    async def test_reason_is_required(self, services, customer):
        with pytest.raises(ValidationError):
            await services.loyalty.adjust_manually(customer.id, 10, "")


class TestBonusAndRedemption:
    async def test_welcome_bonus(self, services, customer):
        transaction = await services.loyalty.award_welcome_bonus(customer.id)

        assert transaction.points == 50
        assert transaction.type == LoyaltyTransactionType.BONUS
        assert await services.loyalty.get_balance(customer.id) == 50

    async def test_redeem_spends_points(self, services, customer):
        await services.loyalty.award_welcome_bonus(customer.id)

        transaction = await services.loyalty.redeem(customer.id, 40, "lavage-offert", "Lavage offert")

        assert transaction.points == -40
        assert transaction.related_reward_id == "lavage-offert"
        assert await services.loyalty.get_balance(customer.id) == 10

    async def test_redeem_more_than_balance_is_rejected(self, services, customer):
        await services.loyalty.award_welcome_bonus(customer.id)

        with pytest.raises(InsufficientBalanceError):
            await services.loyalty.redeem(customer.id, 60, "vidange", "Vidange offerte")

        assert await services.loyalty.get_balance(customer.id) == 50

    async def test_transactions_are_listed_newest_first(self, services, customer, admin):
        await services.loyalty.award_welcome_bonus(customer.id)
        await services.loyalty.adjust_manually(customer.id, 5, "Parrainage", actor_id=admin.id)

        transactions = await services.loyalty.list_transactions(customer.id)

        assert [t.type for t in transactions] == [
            LoyaltyTransactionType.MANUAL_ADJUSTMENT,
            LoyaltyTransactionType.BONUS,
        ]


class TestLedgerIntegrity:
    async def test_recompute_repairs_drifted_cache(self, services, database, customer):
        await services.loyalty.award_welcome_bonus(customer.id)

        async def _drift(session):
            await session.execute(update(User).where(User.id == customer.id).values(loyalty_points=999))

        await database.run_in_transaction(_drift)

        balance = await services.loyalty.recompute_balance(customer.id)

        assert balance == 50
        assert await services.loyalty.get_balance(customer.id) == 50

    async def test_transactions_cannot_be_edited(self, services, database, customer):
        transaction = await services.loyalty.award_welcome_bonus(customer.id)

        async def _tamper(session):
            row = await session.get(LoyaltyTransaction, transaction.id)
            row.points = 5000
            await session.flush()

        with pytest.raises(RuntimeError):
            await database.run_in_transaction(_tamper)

        assert await ledger_sum(database, customer.id) == 50

    async def test_transactions_cannot_be_deleted(self, services, database, customer):
        transaction = await services.loyalty.award_welcome_bonus(customer.id)

        async def _remove(session):
            row = await session.get(LoyaltyTransaction, transaction.id)
            await session.delete(row)
            await session.flush()

        with pytest.raises(RuntimeError):
            await database.run_in_transaction(_remove)

        assert await ledger_sum(database, customer.id) == 50

    async def test_concurrent_debits_respect_the_floor(self, services, database, customer, admin):
        await services.loyalty.adjust_manually(customer.id, 100, "Geste commercial", actor_id=admin.id)

        results = await asyncio.gather(
            services.loyalty.adjust_manually(customer.id, -60, "Correction", actor_id=admin.id),
            services.loyalty.adjust_manually(customer.id, -60, "Correction", actor_id=admin.id),
            return_exceptions=True,
        )

        assert sum(isinstance(result, InsufficientBalanceError) for result in results) == 1
        assert await services.loyalty.get_balance(customer.id) == 40
        assert await ledger_sum(database, customer.id) == 40

    async def test_balance_changes_lock_the_user_row(self, services, customer, admin):
        with patch.object(services.users, "get_user", wraps=services.users.get_user) as get_user:
            await services.loyalty.adjust_manually(customer.id, 10, "Parrainage", actor_id=admin.id)
            await services.loyalty.redeem(customer.id, 5, "lavage-offert", "Lavage offert")
            await services.loyalty.recompute_balance(customer.id)

        assert get_user.await_count == 3
        for call in get_user.await_args_list:
            assert call.kwargs["for_update"] is True
