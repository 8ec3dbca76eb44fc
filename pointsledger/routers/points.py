from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from typing import Dict, List

from pointsledger.core.security import Principal, require_awarding_role, verify_token
from pointsledger.models.points import (
    AddPointsRequest,
    AddPointsResult,
    BalanceResponse,
    SpendPointsRequest,
    SpendPointsResult,
    TransactionResponse,
)
from pointsledger.services.gamification_service import GamificationService, get_gamification_service
from pointsledger.services.ledger import INSUFFICIENT_BALANCE
from pointsledger.services.rules import rules_table

router = APIRouter()


@router.post("/award", response_model=AddPointsResult)
def award_points(
    request: AddPointsRequest,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(require_awarding_role),
    service: GamificationService = Depends(get_gamification_service),
):
    """Award points for an action a feature has verified (service callers only)"""
    result = service.add_points(
        request.user_id,
        request.action_type,
        reference_id=request.reference_id,
        reference_type=request.reference_type,
        idempotency_key=request.idempotency_key,
        description=request.description,
        # Badges are evaluated after the response; a failure there never touches the award
        schedule=background_tasks.add_task,
    )
    return result


@router.post("/spend", response_model=SpendPointsResult)
def spend_points(
    request: SpendPointsRequest,
    user_id: str = Depends(verify_token),
    service: GamificationService = Depends(get_gamification_service),
):
    """Spend available points"""
    result = service.spend_points(
        user_id,
        request.points,
        reference_id=request.reference_id,
        reference_type=request.reference_type,
        description=request.description,
        idempotency_key=request.idempotency_key,
    )
    if not result.success and result.error == INSUFFICIENT_BALANCE:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": INSUFFICIENT_BALANCE, "message": "Not enough points", "new_balance": result.new_balance}
        )
    return result


@router.get("/balance", response_model=BalanceResponse)
def get_balance(
    user_id: str = Depends(verify_token),
    service: GamificationService = Depends(get_gamification_service),
):
    return service.get_balance(user_id)


@router.get("/transactions", response_model=List[TransactionResponse])
def get_transactions(
    user_id: str = Depends(verify_token),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    service: GamificationService = Depends(get_gamification_service),
):
    """Point history, newest first"""
    return service.get_transactions(user_id, limit=limit, offset=offset)


@router.get("/today")
def get_today_points(
    user_id: str = Depends(verify_token),
    service: GamificationService = Depends(get_gamification_service),
) -> Dict:
    earned = service.get_today_points(user_id)
    limit = service.settings.daily_point_limit
    return {
        "earned_today": earned,
        "daily_point_limit": limit,
        "remaining_today": max(limit - earned, 0),
    }


@router.get("/rules")
def get_point_rules() -> Dict:
    """What each action is worth, for 'earn points by...' displays"""
    return {"rules": rules_table()}
