"""Loyalty balance and transaction endpoints."""

from typing import List

from fastapi import APIRouter, Depends, Query, status

from garage.bootstrap import Services
from garage.models.user import User
from garage.routes.deps import ensure_self_or_staff, get_acting_user, get_services, require_staff
from garage.schemas import (
    LoyaltyAdjustmentRequest,
    LoyaltyBalanceResponse,
    LoyaltyTransactionResponse,
    RedemptionRequest,
)

router = APIRouter()


@router.get("/{user_id}", response_model=LoyaltyBalanceResponse)
async def get_loyalty_balance(
    user_id: int,
    actor: User = Depends(get_acting_user),
    services: Services = Depends(get_services),
):
    ensure_self_or_staff(actor, user_id)
    balance = await services.loyalty.get_balance(user_id)
    return LoyaltyBalanceResponse(user_id=user_id, loyalty_points=balance)


@router.get("/{user_id}/transactions", response_model=List[LoyaltyTransactionResponse])
async def list_loyalty_transactions(
    user_id: int,
    limit: int = Query(50, ge=1, le=200),
    actor: User = Depends(get_acting_user),
    services: Services = Depends(get_services),
):
    ensure_self_or_staff(actor, user_id)
    return await services.loyalty.list_transactions(user_id, limit=limit)


@router.post(
    "/{user_id}/adjustments",
    response_model=LoyaltyTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def adjust_loyalty_points(
    user_id: int,
    body: LoyaltyAdjustmentRequest,
    staff: User = Depends(require_staff),
    services: Services = Depends(get_services),
):
    """Manual adjustment by staff. 409 when it would take the balance below zero."""
    return await services.loyalty.adjust_manually(user_id, body.points, body.reason, actor_id=staff.id)


@router.post(
    "/{user_id}/redemptions",
    response_model=LoyaltyTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def redeem_reward(
    user_id: int,
    body: RedemptionRequest,
    actor: User = Depends(get_acting_user),
    services: Services = Depends(get_services),
):
    ensure_self_or_staff(actor, user_id)
    return await services.loyalty.redeem(user_id, body.points, body.reward_id, body.description)


@router.post("/{user_id}/recompute", response_model=LoyaltyBalanceResponse)
async def recompute_loyalty_balance(
    user_id: int,
    staff: User = Depends(require_staff),
    services: Services = Depends(get_services),
):
    balance = await services.loyalty.recompute_balance(user_id)
    return LoyaltyBalanceResponse(user_id=user_id, loyalty_points=balance)
