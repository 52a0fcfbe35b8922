from datetime import datetime
from typing import Any, Dict, Optional

from uuid import UUID

from pydantic import BaseModel


class LoyaltyProgramCreate(BaseModel):
    business_name: str

    program_name: Optional[str] = None
    type: Optional[str] = None
    reward_threshold: Optional[int] = None
    reward_description: Optional[str] = None
    stamp_label: Optional[str] = None
    earn_mode: Optional[str] = None
    points_per_earn: Optional[int] = None
    stamp_icon: Optional[str] = None

    earn_instructions: Optional[str] = None
    redeem_instructions: Optional[str] = None
    terms_and_conditions: Optional[str] = None

    primary_color: Optional[str] = None
    background_color: Optional[str] = None
    logo_url: Optional[str] = None
    logo_description: Optional[str] = None
    strip_image_url: Optional[str] = None
    strip_image_description: Optional[str] = None

    timezone: Optional[str] = None
    max_earns_per_day: Optional[int] = None
    min_gap_minutes: Optional[int] = None


class LoyaltyProgramDraftUpdate(BaseModel):
    program_name: Optional[str] = None
    type: Optional[str] = None
    reward_threshold: Optional[int] = None
    reward_description: Optional[str] = None
    stamp_label: Optional[str] = None
    earn_mode: Optional[str] = None
    points_per_earn: Optional[int] = None
    stamp_icon: Optional[str] = None

    earn_instructions: Optional[str] = None
    redeem_instructions: Optional[str] = None
    terms_and_conditions: Optional[str] = None

    primary_color: Optional[str] = None
    background_color: Optional[str] = None
    logo_url: Optional[str] = None
    logo_description: Optional[str] = None
    strip_image_url: Optional[str] = None
    strip_image_description: Optional[str] = None

    timezone: Optional[str] = None
    max_earns_per_day: Optional[int] = None
    min_gap_minutes: Optional[int] = None


class LoyaltyProgramSelfServiceUpdate(BaseModel):
    """Champs modifiables sans toucher au template du pass wallet."""

    program_name: Optional[str] = None
    earn_instructions: Optional[str] = None
    redeem_instructions: Optional[str] = None
    terms_and_conditions: Optional[str] = None
    max_earns_per_day: Optional[int] = None
    min_gap_minutes: Optional[int] = None

    class Config:
        extra = "forbid"


class LoyaltyEditRequestCreate(BaseModel):
    changes: Dict[str, Any]
    changeDescription: Optional[str] = None


class LoyaltyProgramStatusUpdate(BaseModel):
    status: str


class LoyaltyProgramOut(BaseModel):
    id: UUID
    business_id: str
    business_name: str
    city: str
    public_id: str

    program_name: Optional[str] = None
    type: str
    reward_threshold: int
    reward_description: str
    stamp_label: str
    earn_mode: str
    points_per_earn: int
    stamp_icon: str

    earn_instructions: Optional[str] = None
    redeem_instructions: Optional[str] = None
    terms_and_conditions: Optional[str] = None

    primary_color: Optional[str] = None
    background_color: Optional[str] = None
    logo_url: Optional[str] = None
    logo_description: Optional[str] = None
    strip_image_url: Optional[str] = None
    strip_image_description: Optional[str] = None

    timezone: str
    max_earns_per_day: int
    min_gap_minutes: int

    status: str

    walletpush_template_id: Optional[str] = None
    walletpush_pass_type_id: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
