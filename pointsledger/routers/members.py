from fastapi import APIRouter, Depends
from typing import Dict

from pointsledger.core.security import Principal, require_awarding_role
from pointsledger.models.points import MemberUpsert
from pointsledger.services.gamification_service import GamificationService, get_gamification_service

router = APIRouter()


@router.post("")
def upsert_member(
    member: MemberUpsert,
    principal: Principal = Depends(require_awarding_role),
    service: GamificationService = Depends(get_gamification_service),
) -> Dict:
    """Register or update a member's public profile (called by the auth service on signup)"""
    return service.upsert_member(
        member.user_id,
        display_name=member.display_name,
        avatar_url=member.avatar_url,
        role=member.role,
        joined_at=member.joined_at,
    )
