from datetime import datetime
from typing import Optional

from uuid import UUID

from pydantic import BaseModel


class RedeemRequest(BaseModel):
    membershipId: UUID
    walletPassId: str


class FlagRedemptionRequest(BaseModel):
    reason: str


class LoyaltyRedemptionOut(BaseModel):
    id: UUID
    membership_id: UUID
    program_id: UUID
    business_id: str
    user_wallet_pass_id: str

    reward_description: str
    stamps_deducted: int

    status: str
    consumed_at: datetime
    display_expires_at: datetime

    flagged_at: Optional[datetime] = None
    flagged_reason: Optional[str] = None
    flagged_by: Optional[str] = None

    class Config:
        from_attributes = True
