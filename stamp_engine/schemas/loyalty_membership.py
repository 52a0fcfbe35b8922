from datetime import date, datetime
from typing import Optional

from uuid import UUID

from pydantic import BaseModel


class JoinRequest(BaseModel):
    publicId: str
    walletPassId: str

    firstName: Optional[str] = None
    lastName: Optional[str] = None
    email: Optional[str] = None
    dateOfBirth: Optional[date] = None


class MembershipStatusUpdate(BaseModel):
    status: str


class LoyaltyMembershipOut(BaseModel):
    id: UUID
    program_id: UUID
    user_wallet_pass_id: str

    stamps_balance: int
    points_balance: int
    total_earned: int
    total_redeemed: int

    status: str

    last_earned_at: Optional[datetime] = None
    walletpush_serial: Optional[str] = None
    wallet_sync_pending: bool

    joined_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None

    class Config:
        from_attributes = True
