from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime


class AddPointsRequest(BaseModel):
    user_id: str
    action_type: str
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    idempotency_key: Optional[str] = None
    description: Optional[str] = None


class SpendPointsRequest(BaseModel):
    points: int = Field(gt=0)
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    idempotency_key: Optional[str] = None
    description: Optional[str] = None


class AddPointsResult(BaseModel):
    awarded: bool
    points_added: int = 0
    new_balance: int
    # Why an award was not made: duplicate, daily_action_limit, rate_limited, daily_point_limit
    reason: Optional[str] = None
    transaction_id: Optional[int] = None


class SpendPointsResult(BaseModel):
    success: bool
    new_balance: int
    error: Optional[str] = None
    duplicate: bool = False
    transaction_id: Optional[int] = None


class BalanceResponse(BaseModel):
    user_id: str
    total_points: int = 0
    available_points: int = 0
    spent_points: int = 0
    level: int = 1
    level_name: str
    points_to_next_level: Optional[int] = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    points: int
    action_type: str
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime


class MemberUpsert(BaseModel):
    user_id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str = "user"
    joined_at: Optional[datetime] = None


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, max_length=120)
    avatar_url: Optional[str] = None
