from datetime import datetime
from typing import Any, Dict, Optional

from uuid import UUID

from pydantic import BaseModel


class WalletPushCredentials(BaseModel):
    walletpush_template_id: str
    walletpush_api_key: str
    walletpush_pass_type_id: str


class LoyaltyPassRequestReject(BaseModel):
    reason: str


class LoyaltyPassRequestOut(BaseModel):
    id: UUID
    program_id: UUID
    business_id: str
    city: str

    request_type: str
    design_spec_json: Dict[str, Any]

    status: str
    rejection_reason: Optional[str] = None

    walletpush_template_id: Optional[str] = None
    walletpush_pass_type_id: Optional[str] = None

    reviewed_by_admin_id: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
