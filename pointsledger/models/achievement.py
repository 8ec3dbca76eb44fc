from pydantic import BaseModel, ConfigDict
from typing import Optional, Dict
from datetime import date, datetime
from enum import Enum

class BadgeCategory(str, Enum):
    LEARNING = "learning"
    WORKSHOP = "workshop"
    COMMUNITY = "community"
    ACHIEVEMENT = "achievement"

class BadgeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    code: str
    name: str
    description: Optional[str] = None
    category: BadgeCategory
    tier: int
    points_reward: int
    # None for badges granted by an event or an admin rather than earned from stats
    requirement_type: Optional[str] = None
    requirement_value: Optional[int] = None

class UserBadgeResponse(BaseModel):
    badge: BadgeResponse
    unlocked_at: datetime

class BadgeProgress(BaseModel):
    badge: BadgeResponse
    progress: int
    requirement: int
    percentage: float

class CategoryStats(BaseModel):
    total: int = 0
    unlocked: int = 0

class BadgeStats(BaseModel):
    total: int
    unlocked: int
    by_category: Dict[str, CategoryStats]

class StreakResponse(BaseModel):
    current_streak: int = 0
    longest_streak: int = 0
    last_login_date: Optional[date] = None
    streak_start_date: Optional[date] = None

class UpdateStreakResult(BaseModel):
    current_streak: int
    longest_streak: int
    points_earned: int = 0
    badge_unlocked: Optional[str] = None

class UnlockBadgeRequest(BaseModel):
    user_id: str
    code: str

class UnlockBadgeResult(BaseModel):
    success: bool
    badge: Optional[BadgeResponse] = None
    points_awarded: int = 0
    # badge_not_found or already_unlocked
    error: Optional[str] = None

class LeaderboardEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rank: int
    user_id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    total_points: int
    level: int
    current_streak: int
    badge_count: int
