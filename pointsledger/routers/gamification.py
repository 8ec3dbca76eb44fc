from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from typing import Dict, List

from pointsledger.core.security import Principal, require_admin, require_awarding_role, verify_token
from pointsledger.models.achievement import (
    BadgeProgress,
    BadgeResponse,
    BadgeStats,
    LeaderboardEntryResponse,
    StreakResponse,
    UnlockBadgeRequest,
    UnlockBadgeResult,
    UpdateStreakResult,
    UserBadgeResponse,
)
from pointsledger.models.points import ProfileUpdate
from pointsledger.services.badges import BADGE_NOT_FOUND
from pointsledger.services.gamification_service import GamificationService, get_gamification_service

router = APIRouter()


@router.get("/profile")
def get_user_game_profile(
    user_id: str = Depends(verify_token),
    service: GamificationService = Depends(get_gamification_service),
) -> Dict:
    """Get complete gamification profile for user"""
    return service.get_profile(user_id)


@router.put("/profile")
def update_user_game_profile(
    update: ProfileUpdate,
    user_id: str = Depends(verify_token),
    service: GamificationService = Depends(get_gamification_service),
) -> Dict:
    """Change the name and avatar shown on the leaderboard"""
    return service.upsert_member(user_id, display_name=update.display_name, avatar_url=update.avatar_url)


@router.post("/streak", response_model=UpdateStreakResult)
def record_login(
    user_id: str = Depends(verify_token),
    service: GamificationService = Depends(get_gamification_service),
):
    """Record today's login and pay any streak points due"""
    return service.update_streak(user_id)


@router.get("/streak", response_model=StreakResponse)
def get_streak(
    user_id: str = Depends(verify_token),
    service: GamificationService = Depends(get_gamification_service),
):
    return service.get_user_streak(user_id)


@router.get("/badges", response_model=List[BadgeResponse])
def get_all_badges(service: GamificationService = Depends(get_gamification_service)):
    """Every active badge, in display order"""
    return service.get_all_badges()


@router.get("/badges/me", response_model=List[UserBadgeResponse])
def get_my_badges(
    user_id: str = Depends(verify_token),
    service: GamificationService = Depends(get_gamification_service),
):
    return service.get_user_badges(user_id)


@router.post("/badges/check", response_model=List[BadgeResponse])
def check_badges(
    user_id: str = Depends(verify_token),
    service: GamificationService = Depends(get_gamification_service),
):
    """Unlock any badges the user now qualifies for"""
    return service.check_and_unlock_badges(user_id)


@router.post("/badges/unlock", response_model=UnlockBadgeResult)
def unlock_badge(
    request: UnlockBadgeRequest,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(require_awarding_role),
    service: GamificationService = Depends(get_gamification_service),
):
    """Grant a badge directly, e.g. for attending an event (service callers only)"""
    result = service.unlock_badge(request.user_id, request.code, schedule=background_tasks.add_task)
    if result.error == BADGE_NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Badge {request.code} not found")
    return result


@router.get("/badges/progress", response_model=List[BadgeProgress])
def get_badge_progress(
    user_id: str = Depends(verify_token),
    service: GamificationService = Depends(get_gamification_service),
):
    """Progress toward badges not yet earned"""
    return service.get_badge_progress(user_id)


@router.get("/badges/stats", response_model=BadgeStats)
def get_badge_stats(
    user_id: str = Depends(verify_token),
    service: GamificationService = Depends(get_gamification_service),
):
    return service.get_badge_stats(user_id)


@router.get("/leaderboard", response_model=List[LeaderboardEntryResponse])
def get_leaderboard(
    limit: int = Query(10, ge=1, le=100),
    service: GamificationService = Depends(get_gamification_service),
):
    """Get global leaderboard"""
    return service.get_leaderboard(limit)


@router.get("/leaderboard/me", response_model=LeaderboardEntryResponse)
def get_my_rank(
    user_id: str = Depends(verify_token),
    service: GamificationService = Depends(get_gamification_service),
):
    entry = service.get_user_rank(user_id)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not ranked yet; the leaderboard refreshes periodically"
        )
    return entry


@router.post("/leaderboard/refresh")
def refresh_leaderboard(
    principal: Principal = Depends(require_admin),
    service: GamificationService = Depends(get_gamification_service),
) -> Dict:
    """Rebuild the leaderboard now instead of waiting for the next scheduled refresh"""
    count = service.refresh_leaderboard()
    return {"message": "Leaderboard refreshed", "entries": count}
